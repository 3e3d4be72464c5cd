"""
Exceptions raised by the template learning engine.
"""

from typing import List, Optional


class TemplateLearningError(Exception):
    """Base class for all engine errors."""


class TemplateValidationError(TemplateLearningError):
    """A template write would break a store invariant."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class TemplateNotFoundError(TemplateLearningError):
    pass


class PatternPersistenceError(TemplateLearningError):
    """
    A correction could not be persisted.

    The pattern store has rolled back to its last committed state; the caller
    must retry, since dropping a human correction regresses learning.
    """

    def __init__(self, message: str, template_id: Optional[str] = None, field_name: Optional[str] = None):
        self.template_id = template_id
        self.field_name = field_name
        super().__init__(message)


class RequestNotFoundError(TemplateLearningError):
    pass


class InvalidTransitionError(TemplateLearningError):
    """An active learning request was moved out of a terminal state."""


class PipelineCancelled(TemplateLearningError):
    """The caller cancelled a pipeline run; nothing was committed."""

    def __init__(self, document_id: str, stage: str):
        self.document_id = document_id
        self.stage = stage
        super().__init__(f"Pipeline for {document_id} cancelled before {stage}")
