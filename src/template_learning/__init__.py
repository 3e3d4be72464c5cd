"""
Template-driven field extraction with confidence learning.

This package resolves raw per-field guesses against spatial templates,
validates and scores the results, and learns from human corrections.
"""

from .active_learning import ActiveLearningQueue
from .anomaly import AnomalyDetector, HistoryStore
from .config import EngineConfig
from .exceptions import (
    InvalidTransitionError,
    PatternPersistenceError,
    PipelineCancelled,
    RequestNotFoundError,
    TemplateLearningError,
    TemplateNotFoundError,
    TemplateValidationError,
)
from .models import (
    ActiveLearningRequest,
    ConfidenceTier,
    Correction,
    DocumentType,
    ExtractionResult,
    FieldSource,
    PatternKind,
    RawFieldGuess,
    Region,
    RequestReason,
    RequestStatus,
    Severity,
    Template,
    TemplateField,
)
from .patterns import InMemoryPatternBackend, JsonPatternBackend, PatternStore
from .pipeline import CancellationToken, ExtractionPipeline, PipelineOutcome
from .registry import TemplateRegistry
from .resolver import FieldResolver
from .selector import TemplateSelector
from .validator import Validator

__all__ = [
    'ActiveLearningQueue',
    'ActiveLearningRequest',
    'AnomalyDetector',
    'CancellationToken',
    'ConfidenceTier',
    'Correction',
    'DocumentType',
    'EngineConfig',
    'ExtractionPipeline',
    'ExtractionResult',
    'FieldResolver',
    'FieldSource',
    'HistoryStore',
    'InMemoryPatternBackend',
    'InvalidTransitionError',
    'JsonPatternBackend',
    'PatternKind',
    'PatternPersistenceError',
    'PatternStore',
    'PipelineCancelled',
    'PipelineOutcome',
    'RawFieldGuess',
    'Region',
    'RequestNotFoundError',
    'RequestReason',
    'RequestStatus',
    'Severity',
    'Template',
    'TemplateField',
    'TemplateLearningError',
    'TemplateNotFoundError',
    'TemplateRegistry',
    'TemplateSelector',
    'TemplateValidationError',
    'Validator',
]
