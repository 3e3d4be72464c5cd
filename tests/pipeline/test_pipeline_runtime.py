"""
Pipeline runtime behaviour: cancellation, batches, stats and persistence.
"""

import json
from datetime import date

import pytest

from conftest import TODAY, make_raw
from template_learning import (
    CancellationToken,
    ConfidenceTier,
    ExtractionPipeline,
    JsonPatternBackend,
    PatternKind,
    PatternStore,
    PipelineCancelled,
    RequestReason,
    Severity,
    TemplateRegistry,
)


def mismatched(clean_invoice):
    return dict(clean_invoice, **make_raw(gross_amount=("125.00", 0.9)))


def cancel_during(monkeypatch, target, method, token):
    """Make `target.method` cancel the token as soon as it has run."""
    original = getattr(target, method)

    def wrapper(*args, **kwargs):
        result = original(*args, **kwargs)
        token.cancel()
        return result

    monkeypatch.setattr(target, method, wrapper)


def assert_nothing_committed(pipeline):
    assert pipeline.detector.history.audit_trail() == []
    assert pipeline.registry.get_performance("T1")["usage_count"] == 0
    assert pipeline.queue.requests == {}
    assert pipeline.stats['documents_processed'] == 0
    assert pipeline.stats['documents_cancelled'] == 1


def test_cancelled_before_start(pipeline, clean_invoice):
    token = CancellationToken()
    token.cancel()

    with pytest.raises(PipelineCancelled) as exc_info:
        pipeline.process_document("doc-1", mismatched(clean_invoice), "invoice",
                                  supplier_id="acme", cancel_token=token, today=TODAY)

    assert exc_info.value.stage == "select"
    assert exc_info.value.document_id == "doc-1"
    assert_nothing_committed(pipeline)


@pytest.mark.parametrize("component, method, stage", [
    ("registry", "snapshot", "resolve"),
    ("resolver", "resolve", "validate"),
    ("validator", "validate", "score"),
    ("detector", "score", "route"),
    ("queue", "assess", "commit"),
])
def test_cancelled_between_stages(monkeypatch, pipeline, clean_invoice, component, method, stage):
    token = CancellationToken()
    cancel_during(monkeypatch, getattr(pipeline, component), method, token)

    with pytest.raises(PipelineCancelled) as exc_info:
        pipeline.process_document("doc-1", mismatched(clean_invoice), "invoice",
                                  supplier_id="acme", cancel_token=token, today=TODAY)

    assert exc_info.value.stage == stage
    assert_nothing_committed(pipeline)


def test_commit_records_usage_history_and_request(pipeline, clean_invoice):
    outcome = pipeline.process_document("doc-1", mismatched(clean_invoice), "invoice",
                                        supplier_id="acme", today=TODAY)

    performance = pipeline.registry.get_performance("T1")
    assert performance["usage_count"] == 1
    # balance_due is superseded, po_number has no guess
    assert performance["avg_match_rate"] == pytest.approx(6 / 7 * 100)
    assert [row['document_id'] for row in pipeline.detector.history.audit_trail()] == ["doc-1"]
    assert outcome.needs_review
    assert pipeline.queue.get(outcome.request.id) is outcome.request


def test_reprocessing_keeps_one_open_request(pipeline, clean_invoice):
    first = pipeline.process_document("doc-1", mismatched(clean_invoice), "invoice",
                                      supplier_id="acme", today=TODAY)
    second = pipeline.process_document("doc-1", mismatched(clean_invoice), "invoice",
                                       supplier_id="acme", today=TODAY)

    assert second.request is first.request
    assert len(pipeline.queue.pending()) == 1
    assert "duplicate_reference" not in [s.signal for s in second.anomaly.reasons]


def test_identical_input_gives_identical_result(pipeline, clean_invoice):
    first = pipeline.process_document("doc-1", clean_invoice, "invoice", supplier_id="acme", today=TODAY)
    second = pipeline.process_document("doc-1", clean_invoice, "invoice", supplier_id="acme", today=TODAY)

    assert first.extraction == second.extraction
    assert first.validation == second.validation


@pytest.mark.parametrize("gross", ["NaN", "1000000000000000000000000000000.00"])
def test_unusable_amounts_are_committed_with_format_violation(pipeline, clean_invoice, gross):
    raw = dict(clean_invoice, **make_raw(gross_amount=(gross, 0.9)))

    outcome = pipeline.process_document("doc-1", raw, "invoice", supplier_id="acme", today=TODAY)

    assert [(v.rule, v.field, v.severity) for v in outcome.validation.violations] == [
        ("amount_format", "gross_amount", Severity.MEDIUM),
    ]
    assert pipeline.detector.history.amounts("T1", "gross_amount") == []
    assert pipeline.stats["documents_processed"] == 1


def test_reviewed_corrections_draft_a_supplier_template(pipeline, clean_invoice):
    outcomes = [
        pipeline.process_document(f"doc-{n}", mismatched(clean_invoice), "invoice",
                                  supplier_id="acme", today=TODAY)
        for n in range(5)
    ]
    for outcome in outcomes:
        pipeline.queue.resolve(outcome.request.id, {"gross_amount": "120.00"})

    assert {c.supplier_id for c in pipeline.pattern_store.corrections()} == {"acme"}
    template = pipeline.registry.generate_from_corrections(pipeline.pattern_store, "acme")

    [gross] = template.fields
    assert gross.field_name == "gross_amount"
    assert gross.confidence_tier is ConfidenceTier.USUALLY
    assert gross.region == pipeline.registry.get_template("T1").get_field("gross_amount").region
    assert template.description == "Auto-generated from 5 corrections"


def synthetic_documents(fake, count):
    documents = []
    for n in range(count):
        invoice_date = fake.date_between(start_date=date(2025, 2, 1), end_date=date(2025, 3, 10))
        net = fake.random_int(50, 500)
        documents.append({
            'document_id': f"batch-{n}",
            'document_type': "invoice",
            'supplier_id': "acme",
            'raw_fields': make_raw(
                invoice_number=(f"INV-{fake.unique.random_int(1000, 9999)}", 0.9),
                invoice_date=(invoice_date.strftime("%d/%m/%Y"), 0.9),
                net_amount=(f"{net:.2f}", 0.9),
                vat_amount=(f"{net * 0.2:.2f}", 0.9),
                gross_amount=(f"{net * 1.2:.2f}", 0.9),
            ),
        })
    return documents


def test_batch_preserves_order_and_isolates_failures(pipeline, fake):
    documents = synthetic_documents(fake, 8)
    documents.insert(3, {'document_id': "bad", 'document_type': "letter", 'raw_fields': {}})

    outcomes = pipeline.process_batch(documents, max_workers=4, today=TODAY)

    assert len(outcomes) == 9
    assert outcomes[3] is None
    assert [o.document_id for o in outcomes if o is not None] == [d['document_id'] for d in documents if d['document_id'] != "bad"]
    stats = pipeline.get_stats()
    assert stats['documents_processed'] == 8
    assert stats['documents_failed'] == 1
    assert pipeline.registry.get_performance("T1")["usage_count"] == 8


def test_batch_with_cancelled_token(pipeline, fake):
    token = CancellationToken()
    token.cancel()

    outcomes = pipeline.process_batch(synthetic_documents(fake, 4), cancel_token=token, today=TODAY)

    assert outcomes == [None, None, None, None]
    assert pipeline.stats['documents_cancelled'] == 4
    assert pipeline.detector.history.audit_trail() == []


def test_get_stats(pipeline, clean_invoice):
    outcome = pipeline.process_document("doc-1", mismatched(clean_invoice), "invoice",
                                        supplier_id="acme", today=TODAY)
    stats = pipeline.get_stats()
    assert stats['review_requests'] == 1
    assert stats['pending_reviews'] == 1
    assert stats['active_patterns'] == 0

    pipeline.queue.resolve(outcome.request.id, {"gross_amount": "120.00"})

    stats = pipeline.get_stats()
    assert stats['pending_reviews'] == 0
    assert stats['active_patterns'] >= 1


def test_outcome_serialises_to_json(pipeline, clean_invoice):
    outcome = pipeline.process_document("doc-1", mismatched(clean_invoice), "invoice",
                                        supplier_id="acme", today=TODAY)

    data = json.loads(json.dumps(outcome.to_dict()))

    assert data['template_id'] == "T1"
    assert data['selection_reason'] == "supplier_match"
    assert data['review_request']['reasons'] == ["validation_failure"]
    assert data['extraction']['extracted_fields']['gross_amount'] == "125.00"


def test_template_files_and_json_patterns_end_to_end(templates_dir, tmp_path):
    registry = TemplateRegistry(templates_dir)
    patterns_path = tmp_path / "patterns.json"
    pipeline = ExtractionPipeline(registry, PatternStore(JsonPatternBackend(patterns_path)))
    with open(templates_dir.parent.parent / "inputs" / "raw_guesses" / "acme_0001.json") as f:
        document = json.load(f)

    outcome = pipeline.process_document(today=TODAY, **document)

    assert outcome.extraction.template_id == "acme_invoice_v1"
    assert outcome.extraction.fields["balance_due"].skipped
    assert [v.rule for v in outcome.validation.high_severity] == ["amount_consistency"]
    assert "reference_format" in [v.rule for v in outcome.validation.violations]
    assert outcome.request.reason is RequestReason.VALIDATION_FAILURE

    corrections = pipeline.queue.resolve(outcome.request.id, {
        "invoice_number": "INV-001",
        "gross_amount": "120.00",
    })
    assert len(corrections) == 2

    reloaded = PatternStore(JsonPatternBackend(patterns_path))
    pattern = reloaded.get_pattern("acme_invoice_v1", "invoice_number", PatternKind.VALUE_NORMALIZATION)
    assert pattern.payload["mappings"] == {"1NV-001": {"INV-001": 1}}
    assert pattern.observed_count == 1
