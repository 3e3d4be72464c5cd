"""
Pytest configuration for the template learning engine tests.
"""

import sys
from datetime import date, datetime
from pathlib import Path

import pytest
from faker import Faker

# Add src to the Python path so tests run without installing the package
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from template_learning import (  # noqa: E402
    ConfidenceTier,
    DocumentType,
    EngineConfig,
    ExtractionPipeline,
    InMemoryPatternBackend,
    PatternStore,
    Region,
    Template,
    TemplateField,
    TemplateRegistry,
)

TODAY = date(2025, 3, 14)


def make_field(name: str, tier: str = "usually", priority: int = 0, y: float = 100, **extra) -> TemplateField:
    """Template field with a throwaway region."""
    return TemplateField(
        field_name=name,
        field_label=name.replace('_', ' ').title(),
        region=Region(x=400, y=y, width=120, height=20),
        confidence_tier=ConfidenceTier(tier),
        priority=priority,
        **extra,
    )


def make_raw(**values) -> dict:
    """{field: (value, confidence)} -> the raw guess input shape."""
    return {
        name: {'raw_value': value, 'raw_confidence': confidence}
        for name, (value, confidence) in values.items()
    }


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def acme_template():
    """Acme invoice template: amounts, references and a remittance fallback."""
    return Template(
        id="T1",
        name="Acme Invoice",
        document_type=DocumentType.INVOICE,
        supplier_id="acme",
        supplier_name="Acme Supplies Ltd",
        created_at=datetime(2025, 1, 6, 9, 0),
        updated_at=datetime(2025, 1, 6, 9, 0),
        fields=[
            make_field("invoice_number", "always", 0, y=80),
            make_field("invoice_date", "always", 1, y=106),
            make_field("net_amount", "always", 2, y=640),
            make_field("gross_amount", "always", 3, y=688),
            make_field("due_date", "usually", 0, y=132),
            make_field("vat_amount", "usually", 1, y=664),
            make_field("po_number", "sometimes", 0, y=190),
            make_field("balance_due", "fallback", 0, y=730),
        ],
        supersedes={"gross_amount": ["balance_due"]},
    )


@pytest.fixture
def generic_template():
    return Template(
        id="GEN-INV",
        name="Generic Invoice",
        document_type=DocumentType.INVOICE,
        is_generic=True,
        created_at=datetime(2025, 1, 2, 9, 0),
        updated_at=datetime(2025, 1, 2, 9, 0),
        fields=[
            make_field("invoice_number", "always", 0),
            make_field("gross_amount", "always", 1),
        ],
    )


@pytest.fixture
def registry(acme_template, generic_template):
    registry = TemplateRegistry()
    registry.create_template(acme_template)
    registry.create_template(generic_template)
    return registry


@pytest.fixture
def pattern_backend():
    return InMemoryPatternBackend()


@pytest.fixture
def pattern_store(pattern_backend, config):
    return PatternStore(pattern_backend, config)


@pytest.fixture
def pipeline(registry, pattern_store, config):
    return ExtractionPipeline(registry, pattern_store, config)


@pytest.fixture
def clean_invoice():
    """Raw guesses for an Acme invoice with nothing wrong in it."""
    return make_raw(
        invoice_number=("INV-100", 0.93),
        invoice_date=("10/03/2025", 0.91),
        due_date=("09/04/2025", 0.88),
        net_amount=("100.00", 0.9),
        vat_amount=("20.00", 0.85),
        gross_amount=("120.00", 0.92),
    )


@pytest.fixture
def fake():
    """Seeded Faker for synthetic invoice history."""
    faker = Faker('en_GB')
    faker.seed_instance(4242)
    return faker


@pytest.fixture
def templates_dir():
    return project_root / "templates" / "document_templates"
