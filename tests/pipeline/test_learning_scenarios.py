"""
End-to-end scenarios: validation failures, missing templates and learning
from repeated corrections.
"""

from unittest.mock import Mock

from conftest import TODAY, make_field, make_raw
from template_learning import (
    DocumentType,
    ExtractionPipeline,
    FieldSource,
    PatternKind,
    RequestReason,
    RequestStatus,
    Severity,
    Template,
    TemplateRegistry,
)


def test_scenario_a_gross_mismatch_routes_for_review():
    registry = TemplateRegistry()
    registry.create_template(Template(
        id="T1", name="Acme totals", document_type=DocumentType.INVOICE, supplier_id="Acme",
        fields=[
            make_field("net_amount", "always", 0),
            make_field("gross_amount", "always", 1),
            make_field("vat_amount", "usually", 0),
        ],
    ))
    pipeline = ExtractionPipeline(registry)
    raw = make_raw(net_amount=("100.00", 0.9), vat_amount=("20.00", 0.8), gross_amount=("125.00", 0.9))

    outcome = pipeline.process_document("doc-a", raw, DocumentType.INVOICE, supplier_id="Acme", today=TODAY)

    extraction = outcome.extraction
    assert extraction.template_id == "T1"
    assert all(r.source is FieldSource.RAW for r in extraction.fields.values())
    assert extraction.get_all_values() == {"net_amount": "100.00", "gross_amount": "125.00", "vat_amount": "20.00"}

    high = outcome.validation.high_severity
    assert [v.rule for v in high] == ["amount_consistency"]
    assert high[0].message.startswith("gross_amount != net_amount+vat_amount")
    assert high[0].severity is Severity.HIGH

    # the document is still committed
    assert pipeline.detector.history.to_dataframe()["document_id"].tolist() == ["doc-a"]
    assert registry.get_performance("T1")["usage_count"] == 1

    assert outcome.request is not None
    assert outcome.request.reason is RequestReason.VALIDATION_FAILURE
    assert pipeline.queue.pending() == [outcome.request]


def test_scenario_b_no_template_skips_resolver(registry, clean_invoice):
    pipeline = ExtractionPipeline(registry)
    pipeline.resolver = Mock(wraps=pipeline.resolver)

    outcome = pipeline.process_document(
        "doc-b", clean_invoice, DocumentType.RECEIPT, supplier_id="Unknown Co", today=TODAY,
    )

    assert not outcome.selection.found
    assert outcome.selection.reason == "no_template_found"
    pipeline.resolver.resolve.assert_not_called()
    assert outcome.extraction.template_id is None
    assert outcome.extraction.value_of("gross_amount") == "120.00"
    assert pipeline.get_stats()["no_template"] == 1


def test_scenario_c_three_corrections_make_a_pattern_trusted(pipeline, clean_invoice):
    raw = dict(clean_invoice, **make_raw(invoice_number=("1NV-001", 0.5)))

    for n in range(1, 4):
        outcome = pipeline.process_document(f"doc-{n}", raw, "invoice", supplier_id="acme", today=TODAY)
        resolution = outcome.extraction.fields["invoice_number"]
        assert resolution.source is None
        assert outcome.request.reason is RequestReason.VALIDATION_FAILURE
        assert "invoice_number" in outcome.request.field_names
        if n > 1:
            assert resolution.suggested_value == "INV-001"

        [correction] = pipeline.queue.resolve(outcome.request.id, {"invoice_number": "INV-001"})
        assert correction.trusted == (n == 3)

    pattern = pipeline.pattern_store.get_pattern("T1", "invoice_number", PatternKind.VALUE_NORMALIZATION)
    assert pattern.payload["mappings"] == {"1NV-001": {"INV-001": 3}}

    fourth = pipeline.process_document("doc-4", raw, "invoice", supplier_id="acme", today=TODAY)

    resolution = fourth.extraction.fields["invoice_number"]
    assert resolution.resolved_value == "INV-001"
    assert resolution.source is FieldSource.PATTERN
    assert fourth.validation.passed
    assert fourth.request is None
    assert pipeline.queue.for_document("doc-4") == []


def test_reprocessing_after_learning_needs_no_new_request(pipeline, clean_invoice):
    raw = dict(clean_invoice, **make_raw(invoice_number=("1NV-001", 0.5)))
    first = pipeline.process_document("doc-1", raw, "invoice", supplier_id="acme", today=TODAY)
    pipeline.queue.resolve(first.request.id, {"invoice_number": "INV-001"})
    for n in (2, 3):
        outcome = pipeline.process_document(f"doc-{n}", raw, "invoice", supplier_id="acme", today=TODAY)
        pipeline.queue.resolve(outcome.request.id, {"invoice_number": "INV-001"})

    again = pipeline.process_document("doc-1", raw, "invoice", supplier_id="acme", today=TODAY)

    assert again.extraction.value_of("invoice_number") == "INV-001"
    assert again.request is None
    assert [r.status for r in pipeline.queue.for_document("doc-1")] == [RequestStatus.RESOLVED]


def test_regex_hint_generalises_to_new_references(pipeline, clean_invoice):
    for n in range(1, 4):
        raw = dict(clean_invoice, **make_raw(invoice_number=(f"1NV-00{n}", 0.5)))
        outcome = pipeline.process_document(f"doc-{n}", raw, "invoice", supplier_id="acme", today=TODAY)
        pipeline.queue.resolve(outcome.request.id, {"invoice_number": f"INV-00{n}"})

    raw = dict(clean_invoice, **make_raw(invoice_number=("1NV-777", 0.5)))
    outcome = pipeline.process_document("doc-new", raw, "invoice", supplier_id="acme", today=TODAY)

    resolution = outcome.extraction.fields["invoice_number"]
    assert resolution.resolved_value == "INV-777"
    assert resolution.pattern_kind is PatternKind.REGEX_HINT
    assert outcome.request is None


def test_supplier_template_preferred_in_pipeline(pipeline, clean_invoice):
    acme = pipeline.process_document("doc-1", clean_invoice, "invoice", supplier_id="acme", today=TODAY)
    other = pipeline.process_document("doc-2", clean_invoice, "invoice", supplier_id="bolt", today=TODAY)

    assert acme.extraction.template_id == "T1"
    assert other.extraction.template_id == "GEN-INV"
    assert other.selection.reason == "generic_fallback"
