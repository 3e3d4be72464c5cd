"""
Anomaly scoring against per-template history.

`AnomalyDetector.score` is read-only; the pipeline calls `record` only when a
run commits, so cancelled or failed runs never shift the baselines.
"""

import logging
import re
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

import numpy as np
import pandas as pd

from .config import EngineConfig
from .models import AnomalyDetection, AnomalySignal, ExtractionResult, Template, ValidationResult
from .normalizers import FieldNormalizer

logger = logging.getLogger(__name__)

SIGNAL_WEIGHTS = {
    'amount_deviation': 0.5,
    'payment_terms_deviation': 0.3,
    'supplier_mismatch': 0.4,
    'duplicate_reference': 0.8,
    'missing_critical_fields': 0.3,
    'low_confidence': 0.2,
    'validation_failures': 0.1,
    'round_amount': 0.15,
    'weekend_date': 0.1,
}


def history_key(result: ExtractionResult) -> str:
    """Baselines are per template; template-free documents group by supplier."""
    if result.template_id is not None:
        return result.template_id
    return f"{result.document_type.value}:{result.supplier_id or '-'}"


def deviation_factor(value: float, samples: List[float]) -> float:
    """
    Scaled z-score in [0, 1]: 0 within one standard deviation, 1 at three.

    A constant baseline counts any different value as fully deviant.
    Non-finite values and samples are ignored.
    """
    values = np.asarray(samples, dtype=float)
    values = values[np.isfinite(values)]
    if not np.isfinite(value) or values.size == 0:
        return 0.0
    mean = float(np.mean(values))
    std = float(np.std(values))
    if std == 0:
        return 0.0 if value == mean else 1.0
    z = abs(value - mean) / std
    return float(np.clip((z - 1.0) / 2.0, 0.0, 1.0))


class HistoryStore:
    """Rolling per-template baselines, seen references and the audit trail."""

    def __init__(self, window: int = 50):
        self.window = window
        self._lock = threading.Lock()
        self._amounts: Dict[Tuple[str, str], Deque[float]] = {}
        self._payment_terms: Dict[str, Deque[float]] = {}
        self._references: Dict[str, Dict[str, Set[str]]] = {}
        self._audit: List[Dict[str, Any]] = []

    def amounts(self, key: str, field_name: str) -> List[float]:
        with self._lock:
            return list(self._amounts.get((key, field_name), ()))

    def payment_terms(self, key: str) -> List[float]:
        with self._lock:
            return list(self._payment_terms.get(key, ()))

    def has_reference(self, key: str, reference: str, document_id: Optional[str] = None) -> bool:
        """True if another document with this reference was committed under the key."""
        with self._lock:
            seen = self._references.get(key, {}).get(reference, set())
            return bool(seen - {document_id})

    def add(self,
            key: str,
            amounts: Dict[str, float],
            payment_days: Optional[float],
            reference: Optional[str],
            document_id: str,
            audit_row: Dict[str, Any]) -> None:
        with self._lock:
            for field_name, value in amounts.items():
                self._amounts.setdefault((key, field_name), deque(maxlen=self.window)).append(value)
            if payment_days is not None:
                self._payment_terms.setdefault(key, deque(maxlen=self.window)).append(payment_days)
            if reference is not None:
                self._references.setdefault(key, {}).setdefault(reference, set()).add(document_id)
            self._audit.append(audit_row)

    def audit_trail(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._audit)

    def to_dataframe(self) -> pd.DataFrame:
        """Audit trail as a DataFrame, one row per committed document."""
        columns = ['document_id', 'template_id', 'history_key', 'anomaly_score',
                   'flagged', 'signals', 'detected_at']
        return pd.DataFrame(self.audit_trail(), columns=columns)


class AnomalyDetector:
    """Score extraction results for unusual values against history."""

    def __init__(self, history: Optional[HistoryStore] = None, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self.history = history or HistoryStore(window=self.config.history_window)
        self.normalizer = FieldNormalizer(self.config)

    def score(self,
              result: ExtractionResult,
              validation: Optional[ValidationResult] = None,
              template: Optional[Template] = None) -> AnomalyDetection:
        """
        Score a document without touching history.

        Args:
            result: Resolved fields
            validation: Validation outcome for the same result
            template: Selected template, for the supplier check

        Returns:
            AnomalyDetection with the contributing signals in evaluation order
        """
        key = history_key(result)
        signals: List[AnomalySignal] = []

        signals.extend(self._amount_deviation(result, key))
        signals.extend(self._payment_terms_deviation(result, key))
        signals.extend(self._supplier_mismatch(result, template))
        signals.extend(self._duplicate_reference(result, key))
        signals.extend(self._missing_critical_fields(result))

        if result.overall_confidence < self.config.low_confidence_floor:
            signals.append(AnomalySignal(
                signal='low_confidence',
                description=f"Overall confidence {result.overall_confidence:.2f} is below {self.config.low_confidence_floor}",
                weight=SIGNAL_WEIGHTS['low_confidence'],
            ))

        if validation is not None:
            for violation in validation.high_severity:
                signals.append(AnomalySignal(
                    signal='validation_failures',
                    description=violation.message,
                    weight=SIGNAL_WEIGHTS['validation_failures'],
                    field=violation.field,
                ))

        signals.extend(self._round_amount(result))
        signals.extend(self._weekend_date(result))

        score = round(min(1.0, sum((s.weight for s in signals), 0.0)), 4)
        detection = AnomalyDetection(
            document_id=result.document_id,
            template_id=result.template_id,
            anomaly_score=score,
            reasons=signals,
            flagged=score > self.config.anomaly_threshold,
        )
        if detection.flagged:
            logger.info(
                "Document %s flagged (score %.2f): %s",
                result.document_id, score, ", ".join(s.signal for s in signals),
            )
        return detection

    def record(self, result: ExtractionResult, detection: AnomalyDetection) -> None:
        """Add a committed document to the baselines and audit trail."""
        key = history_key(result)
        amounts = {}
        for field_name in self.config.amount_fields:
            amount = self.normalizer.parse_amount(result.value_of(field_name))
            if amount is not None and np.isfinite(float(amount)):
                amounts[field_name] = float(amount)

        self.history.add(
            key,
            amounts=amounts,
            payment_days=self._payment_days(result),
            reference=self.normalizer.normalize_reference(result.value_of('invoice_number')),
            document_id=result.document_id,
            audit_row={
                'document_id': result.document_id,
                'template_id': result.template_id,
                'history_key': key,
                'anomaly_score': detection.anomaly_score,
                'flagged': detection.flagged,
                'signals': [s.signal for s in detection.reasons],
                'detected_at': detection.detected_at,
            },
        )

    def _payment_days(self, result: ExtractionResult) -> Optional[float]:
        invoice_date = self.normalizer.parse_date(result.value_of('invoice_date'))
        due_date = self.normalizer.parse_date(result.value_of('due_date'))
        if invoice_date is None or due_date is None:
            return None
        return float((due_date - invoice_date).days)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _amount_deviation(self, result: ExtractionResult, key: str) -> List[AnomalySignal]:
        signals = []
        for field_name in self.config.amount_fields:
            amount = self.normalizer.parse_amount(result.value_of(field_name))
            if amount is None:
                continue
            samples = self.history.amounts(key, field_name)
            if len(samples) < self.config.min_history:
                continue
            factor = deviation_factor(float(amount), samples)
            if factor:
                signals.append(AnomalySignal(
                    signal='amount_deviation',
                    description=f"{field_name} {amount} is unusual (mean {np.mean(samples):.2f})",
                    weight=round(SIGNAL_WEIGHTS['amount_deviation'] * factor, 4),
                    field=field_name,
                ))
        return signals

    def _payment_terms_deviation(self, result: ExtractionResult, key: str) -> List[AnomalySignal]:
        days = self._payment_days(result)
        if days is None:
            return []
        samples = self.history.payment_terms(key)
        if len(samples) < self.config.min_history:
            return []
        factor = deviation_factor(days, samples)
        if not factor:
            return []
        return [AnomalySignal(
            signal='payment_terms_deviation',
            description=f"Payment terms of {days:.0f} days differ from usual {np.mean(samples):.0f}",
            weight=round(SIGNAL_WEIGHTS['payment_terms_deviation'] * factor, 4),
            field='due_date',
        )]

    def _supplier_mismatch(self, result: ExtractionResult, template: Optional[Template]) -> List[AnomalySignal]:
        if template is None or template.is_generic:
            return []

        if result.supplier_id is not None and result.supplier_id != template.supplier_id:
            description = (f"Document supplier {result.supplier_id} does not match "
                           f"template supplier {template.supplier_id}")
        elif (result.supplier_name and template.supplier_name
              and _supplier_name_key(result.supplier_name) != _supplier_name_key(template.supplier_name)):
            description = (f"Document supplier name {result.supplier_name!r} does not match "
                           f"template supplier name {template.supplier_name!r}")
        else:
            return []
        return [AnomalySignal(
            signal='supplier_mismatch',
            description=description,
            weight=SIGNAL_WEIGHTS['supplier_mismatch'],
        )]

    def _duplicate_reference(self, result: ExtractionResult, key: str) -> List[AnomalySignal]:
        reference = self.normalizer.normalize_reference(result.value_of('invoice_number'))
        if reference is None or not self.history.has_reference(key, reference, result.document_id):
            return []
        return [AnomalySignal(
            signal='duplicate_reference',
            description=f"invoice_number {reference} has already been processed",
            weight=SIGNAL_WEIGHTS['duplicate_reference'],
            field='invoice_number',
        )]

    def _missing_critical_fields(self, result: ExtractionResult) -> List[AnomalySignal]:
        return [
            AnomalySignal(
                signal='missing_critical_fields',
                description=f"{field_name} is missing",
                weight=SIGNAL_WEIGHTS['missing_critical_fields'],
                field=field_name,
            )
            for field_name in self.config.critical_fields
            if result.value_of(field_name) is None
        ]

    def _round_amount(self, result: ExtractionResult) -> List[AnomalySignal]:
        gross = self.normalizer.parse_amount(result.value_of('gross_amount'))
        if gross is None or gross <= 500 or gross % 100 != 0:
            return []
        return [AnomalySignal(
            signal='round_amount',
            description=f"gross_amount {gross} is a round figure",
            weight=SIGNAL_WEIGHTS['round_amount'],
            field='gross_amount',
        )]

    def _weekend_date(self, result: ExtractionResult) -> List[AnomalySignal]:
        invoice_date = self.normalizer.parse_date(result.value_of('invoice_date'))
        if invoice_date is None or invoice_date.weekday() < 5:
            return []
        return [AnomalySignal(
            signal='weekend_date',
            description=f"invoice_date {invoice_date.isoformat()} falls on a weekend",
            weight=SIGNAL_WEIGHTS['weekend_date'],
            field='invoice_date',
        )]


def _supplier_name_key(name: str) -> str:
    return ' '.join(re.sub(r'[^a-z0-9 ]', ' ', name.lower()).split())
