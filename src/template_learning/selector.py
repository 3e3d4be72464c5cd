"""
Template selection for incoming documents.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union

from .models import DocumentType, Template
from .registry import TemplateRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectionOutcome:
    """
    Result of template selection.

    `template` is None when nothing matched; callers fall back to
    template-free extraction in that case.
    """
    template: Optional[Template]
    reason: str
    supplier_match: bool = False
    candidates: int = 0

    @property
    def found(self) -> bool:
        return self.template is not None


class TemplateSelector:
    """Pick the single best active template for a document."""

    def __init__(self, templates: Union[TemplateRegistry, Dict[str, Template], Iterable[Template]]):
        """
        Args:
            templates: A registry (read through a fresh snapshot per call) or
                a fixed collection of templates
        """
        self._registry = templates if isinstance(templates, TemplateRegistry) else None
        if self._registry is None:
            values = templates.values() if isinstance(templates, dict) else templates
            self._templates = list(values)
        else:
            self._templates = []

    def _current(self) -> List[Template]:
        if self._registry is not None:
            return list(self._registry.snapshot().values())
        return self._templates

    def select(self,
               document_type: Union[DocumentType, str],
               supplier_id: Optional[str] = None) -> SelectionOutcome:
        """
        Select a template for a document.

        Args:
            document_type: Type of the incoming document
            supplier_id: Supplier identity, if known

        Returns:
            SelectionOutcome with the chosen template, or no template
        """
        if isinstance(document_type, str):
            document_type = DocumentType(document_type)

        active = [
            t for t in self._current()
            if t.is_active and t.document_type is document_type
        ]

        if supplier_id is not None:
            supplier_matches = [t for t in active if t.supplier_id == supplier_id]
            if supplier_matches:
                chosen = _break_ties(supplier_matches)
                if len(supplier_matches) > 1:
                    logger.warning(
                        "%d active %s templates for supplier %s, chose %s",
                        len(supplier_matches), document_type.value, supplier_id, chosen.id,
                    )
                return SelectionOutcome(
                    template=chosen,
                    reason="supplier_match",
                    supplier_match=True,
                    candidates=len(supplier_matches),
                )

        generics = [t for t in active if t.is_generic]
        if generics:
            chosen = _break_ties(generics)
            return SelectionOutcome(
                template=chosen,
                reason="generic_fallback",
                candidates=len(generics),
            )

        logger.info(
            "No template for %s (supplier=%s)", document_type.value, supplier_id or "-"
        )
        return SelectionOutcome(template=None, reason="no_template_found")


def _break_ties(candidates: List[Template]) -> Template:
    """Most recently updated first, then lowest id."""
    latest = max(t.updated_at for t in candidates)
    newest = [t for t in candidates if t.updated_at == latest]
    return min(newest, key=lambda t: t.id)
