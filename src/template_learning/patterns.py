"""
Pattern store: learning patterns derived from human corrections.

Corrections are applied in two phases. A staged correction merges into a
private copy of the (template, field) patterns while holding that key's lock;
commit persists the copy through the backend and only then swaps it into the
committed view. A backend failure rolls the stage back and raises
PatternPersistenceError.
"""

import copy
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .config import EngineConfig
from .exceptions import PatternPersistenceError
from .models import Correction, LearningPattern, PatternKind, Region
from .normalizers import is_alnum_token, is_blank, tokenize

logger = logging.getLogger(__name__)

PatternKey = Tuple[str, str]


# ----------------------------------------------------------------------
# Backends
# ----------------------------------------------------------------------

class PatternBackend(ABC):
    """Persistence boundary for learning patterns."""

    @abstractmethod
    def load_all(self) -> List[LearningPattern]:
        pass

    @abstractmethod
    def save(self, patterns: List[LearningPattern]) -> None:
        """Persist the given patterns atomically, replacing rows with the same id."""
        pass


class InMemoryPatternBackend(PatternBackend):
    """Keeps patterns in process memory; used in tests and for ephemeral runs."""

    def __init__(self):
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.save_calls = 0

    def load_all(self) -> List[LearningPattern]:
        return [LearningPattern.from_dict(row) for row in self.rows.values()]

    def save(self, patterns: List[LearningPattern]) -> None:
        self.save_calls += 1
        for pattern in patterns:
            self.rows[pattern.id] = copy.deepcopy(pattern.to_dict())


class JsonPatternBackend(PatternBackend):
    """Stores all patterns in a single JSON file, rewritten atomically."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        with open(self.path, 'r') as f:
            data = json.load(f)
        return {row['id']: row for row in data.get('patterns', [])}

    def load_all(self) -> List[LearningPattern]:
        with self._lock:
            return [LearningPattern.from_dict(row) for row in self._read().values()]

    def save(self, patterns: List[LearningPattern]) -> None:
        with self._lock:
            rows = self._read()
            for pattern in patterns:
                rows[pattern.id] = pattern.to_dict()

            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
            with open(tmp_path, 'w') as f:
                json.dump({
                    'updated_at': datetime.now().isoformat(),
                    'patterns': list(rows.values()),
                }, f, indent=2)
            os.replace(tmp_path, self.path)


# ----------------------------------------------------------------------
# Matching
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class PatternMatch:
    """A pattern whose context matches a raw value."""
    value: str
    kind: PatternKind
    count: int
    trusted: bool
    confidence: float


def _best_mapping(candidates: Dict[str, int]) -> Tuple[str, int]:
    # most observed wins; ties go to the lexically smallest value
    return min(candidates.items(), key=lambda item: (-item[1], item[0]))


def match_value_normalization(pattern: LearningPattern, raw_value: str) -> Optional[Tuple[str, int]]:
    candidates = pattern.payload.get('mappings', {}).get(raw_value.strip())
    if not candidates:
        return None
    return _best_mapping(candidates)


def match_regex_hint(pattern: LearningPattern,
                     raw_value: str,
                     min_count: int = 1) -> Optional[Tuple[str, int]]:
    """
    Rewrite learned OCR tokens; returns the new value and the weakest rule count used.

    A rule only applies at the token position it was learned at, and only to
    values with the same number of tokens.
    """
    tokens = tokenize(raw_value.strip())
    replacements = {}
    rules = sorted(pattern.payload.get('rules', {}).values(), key=lambda r: (-r['count'], r['find']))
    for rule in rules:
        if rule['count'] < min_count or rule.get('tokens') != len(tokens):
            continue
        index = rule['index']
        if tokens[index] == rule['find']:
            replacements.setdefault(index, rule)
    if not replacements:
        return None

    for index, rule in replacements.items():
        tokens[index] = rule['replace']
    return ''.join(tokens), min(rule['count'] for rule in replacements.values())


def ocr_token_substitutions(original: str, corrected: str) -> List[Tuple[int, str, str]]:
    """
    Token substitutions that look like OCR misreads, as (index, old, new).

    Only same-shape corrections qualify: equal token counts, and every
    differing token alphanumeric and of equal length. Digit-for-digit swaps
    change the value itself and are not learned.
    """
    before = tokenize(original.strip())
    after = tokenize(corrected.strip())
    if len(before) != len(after):
        return []

    substitutions = []
    for index, (old, new) in enumerate(zip(before, after)):
        if old == new:
            continue
        if not (is_alnum_token(old) and is_alnum_token(new)) or len(old) != len(new):
            return []
        if old.isdigit() and new.isdigit():
            continue
        substitutions.append((index, old, new))
    return substitutions


class PatternSnapshot:
    """Read-only view of committed patterns for one pipeline run."""

    def __init__(self,
                 patterns: Dict[PatternKey, Dict[PatternKind, LearningPattern]],
                 config: Optional[EngineConfig] = None):
        self._patterns = patterns
        self.config = config or EngineConfig()

    def __len__(self) -> int:
        return sum(len(kinds) for kinds in self._patterns.values())

    def get(self, template_id: str, field_name: str, kind: PatternKind) -> Optional[LearningPattern]:
        pattern = self._patterns.get((template_id, field_name), {}).get(kind)
        if pattern is None or not pattern.is_active:
            return None
        return pattern

    def pattern_confidence(self, count: int) -> float:
        return round(min(
            self.config.pattern_max_confidence,
            self.config.pattern_base_confidence + self.config.pattern_confidence_step * count,
        ), 4)

    def match(self, template_id: str, field_name: str, raw_value: Optional[str]) -> Optional[PatternMatch]:
        """
        Best pattern for a raw value.

        Trusted matches come first (exact normalization over OCR token
        rules); an untrusted match is returned only when nothing is trusted.
        """
        if is_blank(raw_value):
            return None

        threshold = self.config.trusted_threshold
        found = []

        normalization = self.get(template_id, field_name, PatternKind.VALUE_NORMALIZATION)
        if normalization is not None:
            hit = match_value_normalization(normalization, raw_value)
            if hit is not None:
                found.append((PatternKind.VALUE_NORMALIZATION, hit))

        hint = self.get(template_id, field_name, PatternKind.REGEX_HINT)
        if hint is not None:
            trusted_hit = match_regex_hint(hint, raw_value, min_count=threshold)
            hit = trusted_hit or match_regex_hint(hint, raw_value)
            if hit is not None:
                found.append((PatternKind.REGEX_HINT, hit))

        matches = []
        for kind, (value, count) in found:
            if value == raw_value.strip():
                continue
            matches.append(PatternMatch(
                value=value,
                kind=kind,
                count=count,
                trusted=count >= threshold,
                confidence=self.pattern_confidence(count),
            ))

        trusted = [m for m in matches if m.trusted]
        if trusted:
            return trusted[0]
        return matches[0] if matches else None

    def region_hints(self, template_id: str, field_name: str) -> List[Dict[str, Any]]:
        pattern = self.get(template_id, field_name, PatternKind.ALTERNATE_REGION)
        if pattern is None:
            return []
        regions = pattern.payload.get('regions', [])
        return [
            dict(region, trusted=region['count'] >= self.config.trusted_threshold)
            for region in sorted(regions, key=lambda r: (-r['count'], r['page'], r['y'], r['x']))
        ]


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------

@dataclass
class CorrectionOutcome:
    """What a committed correction changed."""
    correction: Correction
    updated: List[LearningPattern] = field(default_factory=list)
    trusted: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.updated)


class StagedCorrection:
    """
    A correction merged into a private copy of the patterns, not yet visible.

    Holds the (template, field) lock until `commit()` or `rollback()`.
    """

    def __init__(self, store: 'PatternStore', correction: Correction,
                 lock: threading.Lock, tentative: Dict[PatternKind, LearningPattern],
                 changed: List[PatternKind]):
        self.store = store
        self.correction = correction
        self._lock = lock
        self._tentative = tentative
        self._changed = changed
        self._open = True

    @property
    def key(self) -> PatternKey:
        return (self.correction.template_id, self.correction.field_name)

    def commit(self) -> CorrectionOutcome:
        if not self._open:
            raise RuntimeError("Staged correction already finished")
        try:
            updated = [self._tentative[kind] for kind in self._changed]
            if updated:
                try:
                    self.store.backend.save(updated)
                except Exception as e:
                    logger.error(
                        "Failed to persist correction for %s/%s: %s",
                        self.correction.template_id, self.correction.field_name, e,
                    )
                    raise PatternPersistenceError(
                        f"Correction for {self.correction.field_name} was not persisted: {e}",
                        template_id=self.correction.template_id,
                        field_name=self.correction.field_name,
                    ) from e
                self.store._publish(self.key, self._tentative)
            return CorrectionOutcome(
                correction=self.correction,
                updated=[copy.deepcopy(p) for p in updated],
                trusted=self.store._is_trusted(self._tentative, self.correction),
            )
        finally:
            self._release()

    def rollback(self) -> None:
        if self._open:
            logger.debug("Rolled back staged correction for %s/%s", *self.key)
            self._release()

    def _release(self) -> None:
        self._open = False
        self._lock.release()

    def __enter__(self) -> 'StagedCorrection':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.rollback()


class PatternStore:
    """
    Learning patterns keyed by (template_id, field_name, pattern_kind).

    Writers for the same (template_id, field_name) are serialised by a
    per-key lock. Readers work from `snapshot()`, which is never mutated.
    """

    def __init__(self, backend: Optional[PatternBackend] = None, config: Optional[EngineConfig] = None):
        self.backend = backend or InMemoryPatternBackend()
        self.config = config or EngineConfig()
        self._committed: Dict[PatternKey, Dict[PatternKind, LearningPattern]] = {}
        self._retired: List[LearningPattern] = []
        self._publish_lock = threading.Lock()
        self._key_locks: Dict[PatternKey, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()
        self._stats_lock = threading.Lock()
        self._history: List[Correction] = []
        self.stats = {
            'corrections_applied': 0,
            'corrections_failed': 0,
            'patterns_trusted': 0,
        }
        self._load()

    def _load(self) -> None:
        for pattern in self.backend.load_all():
            if not pattern.is_active:
                self._retired.append(pattern)
                continue
            kinds = self._committed.setdefault((pattern.template_id, pattern.field_name), {})
            existing = kinds.get(pattern.pattern_kind)
            if existing is not None:
                logger.warning(
                    "Duplicate active %s pattern for %s/%s, keeping the most recent",
                    pattern.pattern_kind.value, pattern.template_id, pattern.field_name,
                )
                if existing.last_seen >= pattern.last_seen:
                    continue
            kinds[pattern.pattern_kind] = pattern
        logger.info("Loaded %d active learning patterns", len(self.snapshot()))

    def _key_lock(self, key: PatternKey) -> threading.Lock:
        with self._key_locks_guard:
            return self._key_locks.setdefault(key, threading.Lock())

    def snapshot(self) -> PatternSnapshot:
        with self._publish_lock:
            return PatternSnapshot(self._committed, self.config)

    def _publish(self, key: PatternKey,
                 patterns: Dict[PatternKind, LearningPattern],
                 retired: Optional[List[LearningPattern]] = None) -> None:
        # copy-on-write so earlier snapshots keep their view
        with self._publish_lock:
            committed = dict(self._committed)
            committed[key] = patterns
            self._committed = committed
            self._retired.extend(retired or [])

    # ------------------------------------------------------------------
    # Corrections
    # ------------------------------------------------------------------

    def stage_correction(self, correction: Correction) -> StagedCorrection:
        """Merge a correction into a private copy; call commit() or rollback()."""
        key = (correction.template_id, correction.field_name)
        lock = self._key_lock(key)
        lock.acquire()
        try:
            with self._publish_lock:
                current = self._committed.get(key, {})
            tentative = {kind: copy.deepcopy(p) for kind, p in current.items()}
            changed = self._merge(tentative, correction, datetime.now())
        except Exception:
            lock.release()
            raise
        return StagedCorrection(self, correction, lock, tentative, changed)

    def apply_correction(self, correction: Correction) -> CorrectionOutcome:
        """
        Learn from one correction.

        Returns:
            CorrectionOutcome listing the updated patterns

        Raises:
            PatternPersistenceError: if the backend could not persist the update
        """
        staged = self.stage_correction(correction)
        try:
            outcome = staged.commit()
        except PatternPersistenceError:
            self._bump('corrections_failed')
            raise
        with self._stats_lock:
            self._history.append(correction)
            self.stats['corrections_applied'] += 1
            if outcome.trusted:
                self.stats['patterns_trusted'] += 1
        logger.info(
            "Applied correction %s/%s: %r -> %r (trusted=%s)",
            correction.template_id, correction.field_name,
            correction.original_value, correction.corrected_value, outcome.trusted,
        )
        return outcome

    def _bump(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1

    def corrections(self,
                    supplier_id: Optional[str] = None,
                    template_id: Optional[str] = None) -> List[Correction]:
        """Committed corrections in the order they were applied, optionally filtered."""
        with self._stats_lock:
            history = list(self._history)
        if supplier_id is not None:
            history = [c for c in history if c.supplier_id == supplier_id]
        if template_id is not None:
            history = [c for c in history if c.template_id == template_id]
        return history

    def _merge(self, patterns: Dict[PatternKind, LearningPattern],
               correction: Correction, now: datetime) -> List[PatternKind]:
        changed = []
        original = correction.original_value
        corrected = correction.corrected_value.strip()

        if not is_blank(original) and original.strip() != corrected:
            pattern = self._pattern_for(patterns, correction, PatternKind.VALUE_NORMALIZATION, now)
            mappings = pattern.payload.setdefault('mappings', {})
            targets = mappings.setdefault(original.strip(), {})
            targets[corrected] = targets.get(corrected, 0) + 1
            _touch(pattern, now)
            changed.append(PatternKind.VALUE_NORMALIZATION)

            substitutions = ocr_token_substitutions(original, corrected)
            if substitutions:
                pattern = self._pattern_for(patterns, correction, PatternKind.REGEX_HINT, now)
                rules = pattern.payload.setdefault('rules', {})
                token_count = len(tokenize(corrected))
                for index, old, new in substitutions:
                    rule = rules.setdefault(f"{index}/{token_count}:{old}=>{new}", {
                        'find': old,
                        'replace': new,
                        'index': index,
                        'tokens': token_count,
                        'count': 0,
                    })
                    rule['count'] += 1
                _touch(pattern, now)
                changed.append(PatternKind.REGEX_HINT)

        if correction.region is not None:
            pattern = self._pattern_for(patterns, correction, PatternKind.ALTERNATE_REGION, now)
            _merge_region(pattern.payload.setdefault('regions', []),
                          correction.page_number or 1, correction.region)
            _touch(pattern, now)
            changed.append(PatternKind.ALTERNATE_REGION)

        return changed

    def _pattern_for(self, patterns: Dict[PatternKind, LearningPattern],
                     correction: Correction, kind: PatternKind, now: datetime) -> LearningPattern:
        pattern = patterns.get(kind)
        if pattern is None:
            pattern = LearningPattern(
                template_id=correction.template_id,
                field_name=correction.field_name,
                pattern_kind=kind,
                first_seen=now,
                last_seen=now,
            )
            patterns[kind] = pattern
        return pattern

    def _is_trusted(self, patterns: Dict[PatternKind, LearningPattern], correction: Correction) -> bool:
        if is_blank(correction.original_value):
            return False
        snapshot = PatternSnapshot({(correction.template_id, correction.field_name): patterns}, self.config)
        found = snapshot.match(correction.template_id, correction.field_name, correction.original_value)
        return bool(found and found.trusted and found.value == correction.corrected_value.strip())

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def retire_pattern(self, template_id: str, field_name: str, kind: PatternKind) -> Optional[LearningPattern]:
        """Deactivate a pattern; the next correction for the key starts a fresh one."""
        key = (template_id, field_name)
        lock = self._key_lock(key)
        with lock:
            with self._publish_lock:
                current = self._committed.get(key, {})
            pattern = current.get(kind)
            if pattern is None or not pattern.is_active:
                return None
            retired = copy.deepcopy(pattern)
            retired.is_active = False
            try:
                self.backend.save([retired])
            except Exception as e:
                raise PatternPersistenceError(
                    f"Could not retire {kind.value} pattern for {field_name}: {e}",
                    template_id=template_id, field_name=field_name,
                ) from e
            remaining = {k: p for k, p in current.items() if k is not kind}
            self._publish(key, remaining, [retired])
            logger.info("Retired %s pattern for %s/%s", kind.value, template_id, field_name)
            return retired

    def get_pattern(self, template_id: str, field_name: str, kind: PatternKind) -> Optional[LearningPattern]:
        pattern = self.snapshot().get(template_id, field_name, kind)
        return copy.deepcopy(pattern) if pattern else None

    def list_patterns(self, template_id: Optional[str] = None, include_retired: bool = False) -> List[LearningPattern]:
        with self._publish_lock:
            committed = self._committed
            retired = list(self._retired)
        patterns = [p for kinds in committed.values() for p in kinds.values()]
        if include_retired:
            patterns.extend(retired)
        if template_id is not None:
            patterns = [p for p in patterns if p.template_id == template_id]
        return sorted(
            (copy.deepcopy(p) for p in patterns),
            key=lambda p: (p.template_id, p.field_name, p.pattern_kind.value, p.first_seen),
        )


def _touch(pattern: LearningPattern, now: datetime) -> None:
    pattern.observed_count += 1
    pattern.last_seen = now


def _merge_region(regions: List[Dict[str, Any]], page: int, region: Region) -> None:
    """Widen an overlapping region on the same page, or add a new one."""
    for existing in regions:
        if existing['page'] != page:
            continue
        current = Region(existing['x'], existing['y'], existing['width'], existing['height'])
        if current.overlaps(region):
            widened = current.union(region)
            existing.update(widened.to_dict())
            existing['count'] += 1
            return
    entry = {'page': page, 'count': 1}
    entry.update(region.to_dict())
    regions.append(entry)
