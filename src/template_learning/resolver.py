"""
Field resolution through the tiered confidence policy.

For each template field, in tier order:
1. a trusted learning pattern matching the raw value is applied
2. otherwise the raw guess is accepted when its confidence clears the tier minimum
3. a fallback field superseded by a resolved higher-tier field is skipped
"""

import logging
from typing import Any, Dict, Iterable, Optional

from .config import EngineConfig
from .models import (
    ConfidenceTier, DocumentType, ExtractionResult, FieldResolution,
    FieldSource, RawFieldGuess, Template, TemplateField, parse_raw_fields,
)
from .normalizers import is_blank
from .patterns import PatternSnapshot

logger = logging.getLogger(__name__)


def overall_confidence(resolutions: Iterable[FieldResolution], config: EngineConfig) -> float:
    """Tier-weighted mean confidence over resolved fields; 0.0 when none resolved."""
    weighted = 0.0
    total_weight = 0.0
    for resolution in resolutions:
        if not resolution.resolved:
            continue
        weight = config.tier_weight(resolution.tier)
        weighted += weight * resolution.confidence_score
        total_weight += weight
    if total_weight == 0:
        return 0.0
    return round(weighted / total_weight, 4)


def accept_raw(guess: Optional[RawFieldGuess], tier: ConfidenceTier, config: EngineConfig) -> bool:
    if guess is None or is_blank(guess.raw_value):
        return False
    minimum = config.tier_minimum(tier)
    return minimum is None or guess.raw_confidence > minimum


class FieldResolver:
    """Resolve raw field guesses against a template and the learned patterns."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def resolve(self,
                template: Template,
                raw_fields: Dict[str, Any],
                patterns: Optional[PatternSnapshot] = None,
                document_id: str = "",
                supplier_id: Optional[str] = None,
                supplier_name: Optional[str] = None) -> ExtractionResult:
        """
        Resolve every template field.

        Args:
            template: Selected template
            raw_fields: {field_name: RawFieldGuess or {raw_value, raw_confidence}}
            patterns: Committed learning patterns to apply
            document_id: Document being processed
            supplier_id: Supplier identity from the caller
            supplier_name: Supplier display name from the caller

        Returns:
            ExtractionResult with fields in resolution order
        """
        guesses = parse_raw_fields(raw_fields)
        if patterns is None:
            patterns = PatternSnapshot({}, self.config)

        result = ExtractionResult(
            document_id=document_id,
            template_id=template.id,
            document_type=template.document_type,
            supplier_id=supplier_id,
            supplier_name=supplier_name,
        )

        for template_field in template.ordered_fields():
            resolution = self._resolve_field(
                template, template_field, guesses.get(template_field.field_name), patterns, result,
            )
            result.add_field(resolution)

            hints = patterns.region_hints(template.id, template_field.field_name)
            if hints:
                result.region_hints[template_field.field_name] = hints

            if template_field.confidence_tier is ConfidenceTier.FALLBACK:
                superseding = template.superseded_by(template_field.field_name)
                if superseding:
                    result.logical_names[template_field.field_name] = superseding[0]

        unknown = sorted(set(guesses) - {f.field_name for f in template.fields})
        if unknown:
            logger.debug("Ignoring guesses for fields not in template %s: %s", template.id, unknown)

        result.resolution_gaps = [
            f.field_name for f in template.ordered_fields()
            if f.confidence_tier is ConfidenceTier.ALWAYS and result.value_of(f.field_name) is None
        ]
        result.overall_confidence = overall_confidence(result.fields.values(), self.config)

        logger.debug(
            "Resolved %s against %s: %d/%d fields, confidence %.2f",
            document_id, template.id,
            sum(1 for r in result.fields.values() if r.resolved), len(result.fields),
            result.overall_confidence,
        )
        return result

    def _resolve_field(self,
                       template: Template,
                       template_field: TemplateField,
                       guess: Optional[RawFieldGuess],
                       patterns: PatternSnapshot,
                       partial: ExtractionResult) -> FieldResolution:
        tier = template_field.confidence_tier
        resolution = FieldResolution(
            field_name=template_field.field_name,
            tier=tier,
            raw_value=guess.raw_value if guess else None,
            raw_confidence=guess.raw_confidence if guess else 0.0,
        )

        if tier is ConfidenceTier.FALLBACK:
            resolved_above = [
                name for name in template.superseded_by(template_field.field_name)
                if name in partial.fields and partial.fields[name].resolved
            ]
            if resolved_above:
                resolution.skipped = True
                resolution.notes.append(f"superseded by {', '.join(resolved_above)}")
                return resolution

        if guess is None or is_blank(guess.raw_value):
            resolution.notes.append("no raw value")
            return resolution

        match = patterns.match(template.id, template_field.field_name, guess.raw_value)
        if match is not None and match.trusted:
            resolution.resolved_value = match.value
            resolution.confidence_score = round(max(guess.raw_confidence, match.confidence), 4)
            resolution.tier_used = tier
            resolution.source = FieldSource.PATTERN
            resolution.pattern_kind = match.kind
            resolution.notes.append(f"{match.kind.value} pattern applied ({match.count} observations)")
            return resolution

        if match is not None:
            resolution.suggested_value = match.value
            resolution.notes.append(f"untrusted {match.kind.value} suggestion ({match.count} observations)")

        if accept_raw(guess, tier, self.config):
            resolution.resolved_value = guess.raw_value.strip()
            resolution.confidence_score = guess.raw_confidence
            resolution.tier_used = tier
            resolution.source = FieldSource.FALLBACK if tier is ConfidenceTier.FALLBACK else FieldSource.RAW
        else:
            resolution.notes.append(
                f"raw confidence {guess.raw_confidence:.2f} below {tier.value} minimum"
            )
        return resolution


def resolve_without_template(document_id: str,
                             document_type: DocumentType,
                             raw_fields: Dict[str, Any],
                             config: Optional[EngineConfig] = None,
                             supplier_id: Optional[str] = None,
                             supplier_name: Optional[str] = None) -> ExtractionResult:
    """
    Template-free result built straight from the raw guesses.

    Every guess is treated as a usually-tier field; no patterns apply since
    patterns are keyed by template.
    """
    config = config or EngineConfig()
    guesses = parse_raw_fields(raw_fields)
    result = ExtractionResult(
        document_id=document_id,
        template_id=None,
        document_type=document_type,
        supplier_id=supplier_id,
        supplier_name=supplier_name,
    )
    for field_name in sorted(guesses):
        guess = guesses[field_name]
        resolution = FieldResolution(
            field_name=field_name,
            tier=ConfidenceTier.USUALLY,
            raw_value=guess.raw_value,
            raw_confidence=guess.raw_confidence,
        )
        if accept_raw(guess, ConfidenceTier.USUALLY, config):
            resolution.resolved_value = guess.raw_value.strip()
            resolution.confidence_score = guess.raw_confidence
            resolution.tier_used = ConfidenceTier.USUALLY
            resolution.source = FieldSource.RAW
        result.add_field(resolution)
    result.overall_confidence = overall_confidence(result.fields.values(), config)
    return result
