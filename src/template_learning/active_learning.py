"""
Active learning queue: routes uncertain documents to a human and turns the
answers into corrections for the pattern store.
"""

import itertools
import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from .config import EngineConfig
from .exceptions import InvalidTransitionError, PatternPersistenceError, RequestNotFoundError
from .models import (
    ActiveLearningRequest, AnomalyDetection, Correction, ExtractionResult,
    RequestReason, RequestStatus, ValidationResult,
)
from .normalizers import is_blank
from .patterns import CorrectionOutcome, PatternStore

logger = logging.getLogger(__name__)

CorrectionInput = Union[str, Dict[str, Any]]


class ActiveLearningQueue:
    """
    Pending review requests, at most one open request per document.

    `assess` only builds a request; `enqueue` makes it visible. The pipeline
    enqueues on commit so a cancelled run leaves the queue untouched.
    """

    def __init__(self, pattern_store: Optional[PatternStore] = None, config: Optional[EngineConfig] = None):
        self.pattern_store = pattern_store
        self.config = config or EngineConfig()
        self.requests: Dict[str, ActiveLearningRequest] = {}
        self._open_by_document: Dict[str, str] = {}
        self._order: Dict[str, int] = {}
        self._sequence = itertools.count()
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def assess(self,
               result: ExtractionResult,
               validation: ValidationResult,
               anomaly: AnomalyDetection) -> Optional[ActiveLearningRequest]:
        """Build a review request if the document needs one; nothing is queued."""
        reasons = []
        if result.overall_confidence < self.config.review_threshold:
            reasons.append(RequestReason.LOW_CONFIDENCE)
        if validation.high_severity:
            reasons.append(RequestReason.VALIDATION_FAILURE)
        if anomaly.flagged:
            reasons.append(RequestReason.ANOMALY)
        if not reasons:
            return None

        field_names = []
        for name, resolution in result.fields.items():
            if resolution.skipped:
                continue
            if name in result.resolution_gaps:
                field_names.append(name)
            elif not is_blank(resolution.raw_value) and resolution.confidence_score < self.config.review_threshold:
                field_names.append(name)
        for name in validation.fields_in_violation() + anomaly.fields_in_question():
            if name not in field_names:
                field_names.append(name)

        # values for every field, so a reviewer's unchanged answers can be told apart
        names = [n for n, r in result.fields.items() if not r.skipped]
        names += [n for n in field_names if n not in names]
        return ActiveLearningRequest(
            id=str(uuid.uuid4()),
            document_id=result.document_id,
            template_id=result.template_id,
            field_names=field_names,
            reasons=reasons,
            confidence=result.overall_confidence,
            supplier_id=result.supplier_id,
            extracted_values={name: result.value_of(name) for name in names},
            raw_values={
                name: result.fields[name].raw_value if name in result.fields else None
                for name in names
            },
            sources={
                name: result.fields[name].source if name in result.fields else None
                for name in names
            },
        )

    def enqueue(self, request: ActiveLearningRequest) -> ActiveLearningRequest:
        """
        Queue a request; returns the already-open request if the document has one.
        """
        with self._lock:
            open_id = self._open_by_document.get(request.document_id)
            if open_id is not None:
                logger.debug("Document %s already has open request %s", request.document_id, open_id)
                return self.requests[open_id]
            self.requests[request.id] = request
            self._open_by_document[request.document_id] = request.id
            self._order[request.id] = next(self._sequence)
        logger.info(
            "Queued review for %s (%s, confidence %.2f): %s",
            request.document_id, ", ".join(r.value for r in request.reasons),
            request.confidence, request.field_names,
        )
        return request

    def evaluate(self,
                 result: ExtractionResult,
                 validation: ValidationResult,
                 anomaly: AnomalyDetection) -> Optional[ActiveLearningRequest]:
        request = self.assess(result, validation, anomaly)
        if request is None:
            return None
        return self.enqueue(request)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, request_id: str) -> ActiveLearningRequest:
        with self._lock:
            request = self.requests.get(request_id)
        if request is None:
            raise RequestNotFoundError(f"Request not found: {request_id}")
        return request

    def for_document(self, document_id: str) -> List[ActiveLearningRequest]:
        with self._lock:
            matches = [r for r in self.requests.values() if r.document_id == document_id]
            return sorted(matches, key=lambda r: self._order[r.id])

    def pending(self, limit: Optional[int] = None) -> List[ActiveLearningRequest]:
        """Open requests, lowest confidence first, then oldest."""
        with self._lock:
            open_requests = [r for r in self.requests.values() if r.status is RequestStatus.PENDING]
            open_requests.sort(key=lambda r: (r.confidence, r.created_at, self._order[r.id]))
        return open_requests[:limit] if limit is not None else open_requests

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def resolve(self, request_id: str, corrections: Dict[str, CorrectionInput]) -> List[CorrectionOutcome]:
        """
        Resolve a request with human-supplied values.

        Args:
            request_id: Request to resolve
            corrections: field_name -> corrected value, or a dict with
                `value` and optional `region` / `page_number`

        Returns:
            One CorrectionOutcome per correction sent to the pattern store

        Raises:
            InvalidTransitionError: if the request is no longer pending
            PatternPersistenceError: if a correction could not be persisted;
                the request stays pending and a retry skips fields already saved
        """
        with self._lock:
            request = self.get(request_id)
            _ensure_pending(request, "resolve")

            outcomes = []
            values = {}
            for field_name, entry in corrections.items():
                correction = self._build_correction(request, field_name, entry)
                values[field_name] = correction.corrected_value
                if field_name in request.applied_fields:
                    continue
                if not self._should_learn(request, correction):
                    continue
                try:
                    outcomes.append(self.pattern_store.apply_correction(correction))
                except PatternPersistenceError:
                    logger.warning(
                        "Request %s stays pending: %s could not be persisted",
                        request_id, field_name,
                    )
                    raise
                request.applied_fields.append(field_name)

            request.resolution.update(values)
            request.status = RequestStatus.RESOLVED
            request.resolved_at = datetime.now()
            self._open_by_document.pop(request.document_id, None)

        logger.info("Resolved request %s with %d corrections", request_id, len(outcomes))
        return outcomes

    def dismiss(self, request_id: str, note: Optional[str] = None) -> ActiveLearningRequest:
        with self._lock:
            request = self.get(request_id)
            _ensure_pending(request, "dismiss")
            request.status = RequestStatus.DISMISSED
            request.note = note
            request.resolved_at = datetime.now()
            self._open_by_document.pop(request.document_id, None)
        logger.info("Dismissed request %s%s", request_id, f": {note}" if note else "")
        return request

    def _build_correction(self, request: ActiveLearningRequest,
                          field_name: str, entry: CorrectionInput) -> Correction:
        if isinstance(entry, dict):
            value = entry['value']
            region = entry.get('region')
            page_number = entry.get('page_number')
        else:
            value, region, page_number = entry, None, None

        original = request.raw_values.get(field_name)
        if original is None:
            original = request.extracted_values.get(field_name)
        return Correction(
            document_id=request.document_id,
            template_id=request.template_id,
            field_name=field_name,
            corrected_value=str(value),
            original_value=original,
            original_source=request.sources.get(field_name),
            page_number=page_number,
            region=region,
            supplier_id=request.supplier_id,
        )

    def _should_learn(self, request: ActiveLearningRequest, correction: Correction) -> bool:
        if request.template_id is None or self.pattern_store is None:
            return False
        if correction.region is not None:
            return True
        shown = request.extracted_values.get(correction.field_name)
        if shown is None:
            shown = correction.original_value
        return correction.corrected_value.strip() != (shown or '').strip()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def to_dataframe(self) -> pd.DataFrame:
        with self._lock:
            rows = [
                {
                    'request_id': r.id,
                    'document_id': r.document_id,
                    'template_id': r.template_id,
                    'status': r.status.value,
                    'reason': r.reason.value,
                    'confidence': r.confidence,
                    'field_names': list(r.field_names),
                    'created_at': r.created_at,
                }
                for r in self.requests.values()
            ]
        columns = ['request_id', 'document_id', 'template_id', 'status', 'reason',
                   'confidence', 'field_names', 'created_at']
        return pd.DataFrame(rows, columns=columns)

    def insights(self, top: int = 5) -> Dict[str, Any]:
        """Queue totals and the fields that most often need review."""
        df = self.to_dataframe()
        if df.empty:
            return {
                'total_requests': 0,
                'by_status': {},
                'by_reason': {},
                'avg_pending_confidence': None,
                'problem_fields': {},
            }

        pending = df[df['status'] == RequestStatus.PENDING.value]
        fields = df['field_names'].explode().dropna()
        return {
            'total_requests': int(len(df)),
            'by_status': {k: int(v) for k, v in df['status'].value_counts().items()},
            'by_reason': {k: int(v) for k, v in df['reason'].value_counts().items()},
            'avg_pending_confidence': float(pending['confidence'].mean()) if not pending.empty else None,
            'problem_fields': {k: int(v) for k, v in fields.value_counts().head(top).items()},
        }


def _ensure_pending(request: ActiveLearningRequest, action: str) -> None:
    if request.status.is_terminal:
        raise InvalidTransitionError(
            f"Cannot {action} request {request.id}: already {request.status.value}"
        )
