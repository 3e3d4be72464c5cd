"""
Tests for the pattern store: learning, trust, persistence and isolation.
"""

import threading

import pytest

from template_learning import (
    Correction,
    EngineConfig,
    InMemoryPatternBackend,
    JsonPatternBackend,
    PatternKind,
    PatternPersistenceError,
    PatternStore,
    Region,
)
from template_learning.patterns import ocr_token_substitutions


class FlakyBackend(InMemoryPatternBackend):
    """In-memory backend that fails while `failing` is set."""

    def __init__(self):
        super().__init__()
        self.failing = False

    def save(self, patterns):
        if self.failing:
            raise OSError("disk full")
        super().save(patterns)


def correction(original="1NV-001", corrected="INV-001", field_name="invoice_number", **extra):
    return Correction(
        document_id=extra.pop("document_id", "doc-1"),
        template_id=extra.pop("template_id", "T1"),
        field_name=field_name,
        corrected_value=corrected,
        original_value=original,
        **extra,
    )


def test_value_normalization_counts_each_mapping(pattern_store):
    pattern_store.apply_correction(correction())
    pattern_store.apply_correction(correction())
    pattern_store.apply_correction(correction(original="1NV-002", corrected="INV-002"))

    pattern = pattern_store.get_pattern("T1", "invoice_number", PatternKind.VALUE_NORMALIZATION)
    assert pattern.observed_count == 3
    assert pattern.payload["mappings"] == {
        "1NV-001": {"INV-001": 2},
        "1NV-002": {"INV-002": 1},
    }


def test_pattern_trusted_after_threshold(pattern_store):
    outcomes = [pattern_store.apply_correction(correction()) for _ in range(3)]

    assert [o.trusted for o in outcomes] == [False, False, True]
    match = pattern_store.snapshot().match("T1", "invoice_number", "1NV-001")
    assert match.trusted
    assert match.value == "INV-001"
    assert match.count == 3


def test_regex_hint_generalises_ocr_substitution(pattern_store):
    for n in range(1, 4):
        pattern_store.apply_correction(correction(original=f"1NV-00{n}", corrected=f"INV-00{n}"))

    hint = pattern_store.get_pattern("T1", "invoice_number", PatternKind.REGEX_HINT)
    assert hint.payload["rules"] == {
        "0/3:1NV=>INV": {"find": "1NV", "replace": "INV", "index": 0, "tokens": 3, "count": 3},
    }

    match = pattern_store.snapshot().match("T1", "invoice_number", "1NV-917")
    assert match.kind is PatternKind.REGEX_HINT
    assert match.value == "INV-917"
    assert match.trusted


def test_trusted_normalization_beats_trusted_regex(pattern_store):
    for n in range(1, 4):
        pattern_store.apply_correction(correction(original=f"1NV-00{n}", corrected=f"INV-00{n}"))
    for _ in range(3):
        pattern_store.apply_correction(correction(original="1NV-005", corrected="INV-0O5"))

    match = pattern_store.snapshot().match("T1", "invoice_number", "1NV-005")
    assert match.kind is PatternKind.VALUE_NORMALIZATION
    assert match.value == "INV-0O5"


def test_ocr_token_substitutions():
    assert ocr_token_substitutions("1NV-001", "INV-001") == [(0, "1NV", "INV")]
    assert ocr_token_substitutions("£1,2O0.00", "£1,200.00") == [(3, "2O0", "200")]
    assert ocr_token_substitutions("INV-1", "INV-0001") == []
    assert ocr_token_substitutions("ACME LTD", "ACME-LTD") == []
    assert ocr_token_substitutions("same", "same") == []
    assert ocr_token_substitutions("10/03/2025", "10/08/2025") == []


def test_digit_corrections_do_not_rewrite_other_values(pattern_store):
    for _ in range(3):
        pattern_store.apply_correction(correction(
            original="10/03/2025", corrected="10/08/2025", field_name="invoice_date",
        ))

    assert pattern_store.get_pattern("T1", "invoice_date", PatternKind.REGEX_HINT) is None
    snapshot = pattern_store.snapshot()
    assert snapshot.match("T1", "invoice_date", "03/10/2025") is None
    assert snapshot.match("T1", "invoice_date", "10/03/2025").value == "10/08/2025"


def test_regex_hint_only_applies_at_learned_position(pattern_store):
    for n in range(1, 4):
        pattern_store.apply_correction(correction(original=f"1NV-00{n}", corrected=f"INV-00{n}"))
    snapshot = pattern_store.snapshot()

    assert snapshot.match("T1", "invoice_number", "REF-1NV") is None
    assert snapshot.match("T1", "invoice_number", "1NV-001-A") is None
    assert snapshot.match("T1", "invoice_number", "1NV-042").value == "INV-042"


def test_correction_without_original_value_only_learns_region(pattern_store):
    outcome = pattern_store.apply_correction(correction(
        original=None, corrected="PO-7", field_name="po_number",
        region=Region(x=60, y=220, width=150, height=20), page_number=1,
    ))

    assert [p.pattern_kind for p in outcome.updated] == [PatternKind.ALTERNATE_REGION]
    assert pattern_store.get_pattern("T1", "po_number", PatternKind.VALUE_NORMALIZATION) is None


def test_overlapping_regions_are_widened(pattern_store):
    first = Region(x=60, y=220, width=150, height=20)
    overlapping = Region(x=100, y=225, width=150, height=20)
    elsewhere = Region(x=60, y=500, width=150, height=20)
    for region, page in ((first, 1), (overlapping, 1), (elsewhere, 1), (first, 2)):
        pattern_store.apply_correction(correction(
            original=None, corrected="PO-7", field_name="po_number", region=region, page_number=page,
        ))

    regions = pattern_store.get_pattern("T1", "po_number", PatternKind.ALTERNATE_REGION).payload["regions"]
    assert regions == [
        {"page": 1, "count": 2, "x": 60, "y": 220, "width": 190, "height": 25},
        {"page": 1, "count": 1, "x": 60, "y": 500, "width": 150, "height": 20},
        {"page": 2, "count": 1, "x": 60, "y": 220, "width": 150, "height": 20},
    ]


def test_failed_persistence_rolls_back():
    backend = FlakyBackend()
    store = PatternStore(backend)
    store.apply_correction(correction())
    before = store.snapshot()

    backend.failing = True
    with pytest.raises(PatternPersistenceError) as exc_info:
        store.apply_correction(correction())

    assert exc_info.value.field_name == "invoice_number"
    assert isinstance(exc_info.value.__cause__, OSError)
    pattern = store.get_pattern("T1", "invoice_number", PatternKind.VALUE_NORMALIZATION)
    assert pattern.observed_count == 1
    assert store.stats["corrections_failed"] == 1

    # the key lock was released, so a retry goes through
    backend.failing = False
    store.apply_correction(correction())
    assert store.get_pattern("T1", "invoice_number", PatternKind.VALUE_NORMALIZATION).observed_count == 2
    assert before.match("T1", "invoice_number", "1NV-001").count == 1


def test_staged_correction_invisible_until_commit(pattern_store):
    staged = pattern_store.stage_correction(correction())
    assert pattern_store.get_pattern("T1", "invoice_number", PatternKind.VALUE_NORMALIZATION) is None

    staged.commit()
    assert pattern_store.get_pattern("T1", "invoice_number", PatternKind.VALUE_NORMALIZATION) is not None


def test_rolled_back_stage_changes_nothing(pattern_store, pattern_backend):
    with pattern_store.stage_correction(correction()):
        pass

    assert pattern_store.list_patterns() == []
    assert pattern_backend.save_calls == 0


def test_snapshot_unchanged_by_later_corrections(pattern_store):
    pattern_store.apply_correction(correction())
    snapshot = pattern_store.snapshot()

    pattern_store.apply_correction(correction())
    pattern_store.apply_correction(correction())

    assert not snapshot.match("T1", "invoice_number", "1NV-001").trusted
    assert pattern_store.snapshot().match("T1", "invoice_number", "1NV-001").trusted


def test_concurrent_corrections_for_same_field_are_serialised(pattern_store):
    def worker():
        for _ in range(10):
            pattern_store.apply_correction(correction())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    pattern = pattern_store.get_pattern("T1", "invoice_number", PatternKind.VALUE_NORMALIZATION)
    assert pattern.observed_count == 80
    assert pattern.payload["mappings"]["1NV-001"]["INV-001"] == 80


def test_stats_count_concurrent_corrections_across_fields(pattern_store):
    fields = ["invoice_number", "po_number", "supplier_reference", "account_number"]

    def worker(field_name):
        for _ in range(25):
            pattern_store.apply_correction(correction(field_name=field_name))

    threads = [threading.Thread(target=worker, args=(name,)) for name in fields]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert pattern_store.stats["corrections_applied"] == 100
    assert len(pattern_store.corrections()) == 100


def test_corrections_filtered_by_supplier_and_template(pattern_store):
    pattern_store.apply_correction(correction(supplier_id="SUP-ACME"))
    pattern_store.apply_correction(correction(supplier_id="SUP-OTHER", template_id="T2"))
    pattern_store.apply_correction(correction(supplier_id="SUP-ACME", field_name="po_number"))

    acme = pattern_store.corrections(supplier_id="SUP-ACME")
    assert [c.field_name for c in acme] == ["invoice_number", "po_number"]
    assert [c.supplier_id for c in pattern_store.corrections(template_id="T2")] == ["SUP-OTHER"]
    assert pattern_store.corrections(supplier_id="SUP-NONE") == []


def test_retired_pattern_is_kept_and_replaced(pattern_store):
    for _ in range(3):
        pattern_store.apply_correction(correction())
    retired = pattern_store.retire_pattern("T1", "invoice_number", PatternKind.VALUE_NORMALIZATION)

    assert not retired.is_active
    assert pattern_store.snapshot().match("T1", "invoice_number", "1NV-001").kind is PatternKind.REGEX_HINT

    pattern_store.apply_correction(correction())
    fresh = pattern_store.get_pattern("T1", "invoice_number", PatternKind.VALUE_NORMALIZATION)
    assert fresh.id != retired.id
    assert fresh.observed_count == 1

    everything = pattern_store.list_patterns(include_retired=True)
    assert retired.id in [p.id for p in everything]
    assert retired.id not in [p.id for p in pattern_store.list_patterns()]


def test_retire_unknown_pattern_returns_none(pattern_store):
    assert pattern_store.retire_pattern("T1", "invoice_number", PatternKind.REGEX_HINT) is None


def test_json_backend_persists_across_restarts(tmp_path):
    path = tmp_path / "patterns.json"
    store = PatternStore(JsonPatternBackend(path))
    for _ in range(3):
        store.apply_correction(correction())
    store.retire_pattern("T1", "invoice_number", PatternKind.REGEX_HINT)

    reloaded = PatternStore(JsonPatternBackend(path))

    match = reloaded.snapshot().match("T1", "invoice_number", "1NV-001")
    assert match.trusted
    assert match.value == "INV-001"
    assert reloaded.get_pattern("T1", "invoice_number", PatternKind.REGEX_HINT) is None
    assert len(reloaded.list_patterns(include_retired=True)) == 2
    assert not (tmp_path / "patterns.json.tmp").exists()


def test_trusted_threshold_is_configurable():
    store = PatternStore(config=EngineConfig(trusted_threshold=1))
    outcome = store.apply_correction(correction())

    assert outcome.trusted
    assert store.snapshot().match("T1", "invoice_number", "1NV-001").confidence == pytest.approx(0.7)
