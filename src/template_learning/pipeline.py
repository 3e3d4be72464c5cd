"""
Extraction pipeline.

Orchestrates one document through the engine:
1. Template selection
2. Field resolution
3. Validation
4. Anomaly scoring
5. Review routing

Templates and patterns are read from snapshots taken when the run starts.
History, template usage and the review queue are only written once every
stage has finished, so a cancelled run leaves no trace.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Union

from .active_learning import ActiveLearningQueue
from .anomaly import AnomalyDetector, HistoryStore
from .config import EngineConfig
from .exceptions import PipelineCancelled
from .models import (
    ActiveLearningRequest, AnomalyDetection, DocumentType, ExtractionResult, ValidationResult,
)
from .patterns import PatternStore
from .registry import TemplateRegistry
from .resolver import FieldResolver, resolve_without_template
from .selector import SelectionOutcome, TemplateSelector
from .validator import Validator

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag checked between pipeline stages."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, document_id: str, stage: str) -> None:
        if self._event.is_set():
            raise PipelineCancelled(document_id, stage)


@dataclass
class PipelineOutcome:
    """Everything the engine produced for one document."""
    document_id: str
    selection: SelectionOutcome
    extraction: ExtractionResult
    validation: ValidationResult
    anomaly: AnomalyDetection
    request: Optional[ActiveLearningRequest] = None
    processing_time: float = 0.0

    @property
    def needs_review(self) -> bool:
        return self.request is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'document_id': self.document_id,
            'template_id': self.extraction.template_id,
            'selection_reason': self.selection.reason,
            'extraction': self.extraction.to_dict(),
            'validation': self.validation.to_dict(),
            'anomaly': self.anomaly.to_dict(),
            'review_request': self.request.to_dict() if self.request else None,
            'processing_time': self.processing_time,
        }


class ExtractionPipeline:
    """
    Template-driven extraction with confidence learning.

    The stores are injected so several pipelines (or threads) can share one
    registry, pattern store, history and queue.
    """

    def __init__(self,
                 registry: TemplateRegistry,
                 pattern_store: Optional[PatternStore] = None,
                 config: Optional[EngineConfig] = None,
                 history: Optional[HistoryStore] = None,
                 queue: Optional[ActiveLearningQueue] = None):
        self.config = config or EngineConfig()
        self.registry = registry
        self.pattern_store = pattern_store or PatternStore(config=self.config)
        self.resolver = FieldResolver(self.config)
        self.validator = Validator(self.config)
        self.detector = AnomalyDetector(history or HistoryStore(self.config.history_window), self.config)
        self.queue = queue or ActiveLearningQueue(self.pattern_store, self.config)

        self._stats_lock = threading.Lock()
        self.stats = {
            'documents_processed': 0,
            'documents_cancelled': 0,
            'documents_failed': 0,
            'no_template': 0,
            'review_requests': 0,
            'flagged': 0,
        }

    def process_document(self,
                         document_id: str,
                         raw_fields: Dict[str, Any],
                         document_type: Union[DocumentType, str],
                         supplier_id: Optional[str] = None,
                         supplier_name: Optional[str] = None,
                         cancel_token: Optional[CancellationToken] = None,
                         today: Optional[date] = None) -> PipelineOutcome:
        """
        Process one document's raw field guesses.

        Args:
            document_id: Caller's document identifier
            raw_fields: {field_name: {raw_value, raw_confidence}}
            document_type: Document type of the incoming document
            supplier_id: Supplier identity, if known
            supplier_name: Supplier display name
            cancel_token: Checked before each stage
            today: Reference date for date validation

        Returns:
            PipelineOutcome with the extraction, validation and anomaly results

        Raises:
            PipelineCancelled: if the token was cancelled; nothing is committed
        """
        start_time = time.time()
        token = cancel_token or CancellationToken()
        if isinstance(document_type, str):
            document_type = DocumentType(document_type)

        try:
            token.check(document_id, "select")
            templates = self.registry.snapshot()
            patterns = self.pattern_store.snapshot()
            selection = TemplateSelector(templates.values()).select(document_type, supplier_id)

            token.check(document_id, "resolve")
            if selection.found:
                extraction = self.resolver.resolve(
                    selection.template, raw_fields, patterns,
                    document_id=document_id, supplier_id=supplier_id, supplier_name=supplier_name,
                )
            else:
                extraction = resolve_without_template(
                    document_id, document_type, raw_fields, self.config,
                    supplier_id=supplier_id, supplier_name=supplier_name,
                )

            token.check(document_id, "validate")
            validation = self.validator.validate(extraction, selection.template, today=today)

            token.check(document_id, "score")
            anomaly = self.detector.score(extraction, validation, selection.template)

            token.check(document_id, "route")
            request = self.queue.assess(extraction, validation, anomaly)

            token.check(document_id, "commit")
        except PipelineCancelled as e:
            logger.info("Cancelled %s before %s", document_id, e.stage)
            self._bump('documents_cancelled')
            raise

        request = self._commit(selection, extraction, anomaly, request)

        outcome = PipelineOutcome(
            document_id=document_id,
            selection=selection,
            extraction=extraction,
            validation=validation,
            anomaly=anomaly,
            request=request,
            processing_time=time.time() - start_time,
        )
        logger.info(
            "Processed %s with %s: confidence %.2f, %d violations, anomaly %.2f%s",
            document_id, extraction.template_id or "no template",
            extraction.overall_confidence, len(validation.violations), anomaly.anomaly_score,
            ", queued for review" if request else "",
        )
        return outcome

    def _commit(self,
                selection: SelectionOutcome,
                extraction: ExtractionResult,
                anomaly: AnomalyDetection,
                request: Optional[ActiveLearningRequest]) -> Optional[ActiveLearningRequest]:
        self.detector.record(extraction, anomaly)

        if selection.found:
            considered = [r for r in extraction.fields.values() if not r.skipped]
            resolved = [r for r in considered if r.resolved]
            self.registry.record_usage(
                selection.template.id,
                fields_matched=len(resolved),
                fields_total=len(considered),
                avg_confidence=extraction.overall_confidence,
            )
        else:
            self._bump('no_template')

        if request is not None:
            request = self.queue.enqueue(request)
            self._bump('review_requests')
        if anomaly.flagged:
            self._bump('flagged')
        self._bump('documents_processed')
        return request

    def process_batch(self,
                      documents: List[Dict[str, Any]],
                      max_workers: Optional[int] = None,
                      cancel_token: Optional[CancellationToken] = None,
                      today: Optional[date] = None) -> List[Optional[PipelineOutcome]]:
        """
        Process several documents concurrently.

        Args:
            documents: Dicts with the keyword arguments of `process_document`
            max_workers: Thread count, defaults to the configured max_workers
            cancel_token: Shared token; cancelled documents yield None
            today: Reference date for date validation

        Returns:
            Outcomes in input order; None for documents that failed or were cancelled
        """
        workers = max_workers or self.config.max_workers
        logger.info("Processing batch of %d documents with %d workers", len(documents), workers)

        def run(document: Dict[str, Any]) -> Optional[PipelineOutcome]:
            try:
                return self.process_document(cancel_token=cancel_token, today=today, **document)
            except PipelineCancelled:
                return None
            except Exception as e:
                logger.error("Failed to process %s: %s", document.get('document_id'), e)
                self._bump('documents_failed')
                return None

        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(run, documents))

    def _bump(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self.stats)
        stats['pending_reviews'] = len(self.queue.pending())
        stats['active_patterns'] = len(self.pattern_store.snapshot())
        return stats
