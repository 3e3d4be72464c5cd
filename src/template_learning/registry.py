"""
Template registry for managing document templates.
"""

import json
import logging
import threading
import uuid
from collections import Counter
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import TemplateNotFoundError, TemplateValidationError
from .models import ConfidenceTier, Correction, DocumentType, Region, Template, TemplateField
from .patterns import PatternStore

logger = logging.getLogger(__name__)


class TemplateRegistry:
    """
    Store for templates and their fields.

    Writes go through `validate_template` so the store invariants hold at the
    write boundary. Readers get copies via `snapshot()` and never see a
    half-applied update.
    """

    def __init__(self, templates_dir: Optional[Path] = None):
        """
        Initialize the registry.

        Args:
            templates_dir: Directory of template JSON files to load on start
        """
        self.templates_dir = Path(templates_dir) if templates_dir else None
        self.templates: Dict[str, Template] = {}
        self.usage_log: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        if self.templates_dir is not None:
            self._load_all_templates()

    def _load_all_templates(self) -> None:
        """Load every template file in the templates directory."""
        if not self.templates_dir.exists():
            logger.warning("Templates directory not found: %s", self.templates_dir)
            return

        for template_file in sorted(self.templates_dir.glob("*.json")):
            template = self.load_template_from_file(template_file)
            if template is None:
                continue
            try:
                self.create_template(template)
            except TemplateValidationError as e:
                logger.error("Rejected template %s: %s", template_file.name, e)
            else:
                logger.info("Loaded template: %s v%s", template.id, template.version)

    def load_template_from_file(self, template_path: Path) -> Optional[Template]:
        """
        Load a template from a JSON file.

        Args:
            template_path: Path to the template JSON file

        Returns:
            Template object or None if loading failed
        """
        try:
            with open(template_path, 'r') as f:
                data = json.load(f)

            required = ['id', 'name', 'document_type']
            for key in required:
                if key not in data:
                    raise ValueError(f"Missing required field: {key}")

            return Template.from_dict(data)

        except (OSError, ValueError, TypeError, KeyError) as e:
            logger.error("Error loading template from %s: %s", template_path, e)
            return None

    def save_template_to_file(self, template_id: str, directory: Optional[Path] = None) -> Path:
        """Write a template back out in the file format it was loaded from."""
        template = self.get_template(template_id)
        target_dir = Path(directory or self.templates_dir or Path("templates/document_templates"))
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / f"{template.id}.json"
        with open(path, 'w') as f:
            json.dump(template.to_dict(), f, indent=2)
        return path

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_template(self, template_id: str) -> Template:
        with self._lock:
            template = self.templates.get(template_id)
            if template is None:
                raise TemplateNotFoundError(f"Template not found: {template_id}")
            return _copy_template(template)

    def find_template(self, template_id: str) -> Optional[Template]:
        with self._lock:
            template = self.templates.get(template_id)
            return _copy_template(template) if template else None

    def list_templates(self,
                       document_type: Optional[DocumentType] = None,
                       supplier_id: Optional[str] = None,
                       is_generic: Optional[bool] = None,
                       is_active: Optional[bool] = None) -> List[Template]:
        """List templates matching all given filters, newest first."""
        with self._lock:
            matches = []
            for template in self.templates.values():
                if document_type is not None and template.document_type is not document_type:
                    continue
                if supplier_id is not None and template.supplier_id != supplier_id:
                    continue
                if is_generic is not None and template.is_generic != is_generic:
                    continue
                if is_active is not None and template.is_active != is_active:
                    continue
                matches.append(_copy_template(template))
        return sorted(matches, key=lambda t: (t.created_at, t.id), reverse=True)

    def snapshot(self) -> Dict[str, Template]:
        """Independent copy of all templates for a single pipeline run."""
        with self._lock:
            return {tid: _copy_template(t) for tid, t in self.templates.items()}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_template(self, template: Template) -> Template:
        """
        Add a new template.

        Args:
            template: Template to add; a missing id is generated

        Returns:
            The stored template

        Raises:
            TemplateValidationError: if the template breaks a store invariant
        """
        with self._lock:
            if not template.id:
                template = replace(template, id=str(uuid.uuid4()))
            if template.id in self.templates:
                raise TemplateValidationError([f"Duplicate template id: {template.id}"])
            self._check(template)
            self.templates[template.id] = _copy_template(template)
            logger.debug("Created template %s (%s)", template.id, template.document_type.value)
            return _copy_template(template)

    def update_template(self, template_id: str, **updates: Any) -> Template:
        """Update template attributes; bumps version and updated_at."""
        with self._lock:
            current = self.get_template(template_id)
            if 'id' in updates:
                raise TemplateValidationError(["Template id cannot be changed"])
            if isinstance(updates.get('document_type'), str):
                updates['document_type'] = DocumentType(updates['document_type'])
            updated = replace(
                current,
                version=current.version + 1,
                updated_at=_later_than(current.updated_at),
                **updates,
            )
            self._check(updated)
            self.templates[template_id] = _copy_template(updated)
            return _copy_template(updated)

    def deactivate_template(self, template_id: str) -> Template:
        """Retire a template; it stays in the store for history references."""
        logger.info("Deactivating template %s", template_id)
        return self.update_template(template_id, is_active=False)

    def save_fields(self, template_id: str, fields: Iterable[Any]) -> Template:
        """Replace all fields of a template with the markup tool's output."""
        new_fields = [
            f if isinstance(f, TemplateField) else TemplateField.from_dict(f)
            for f in fields
        ]
        current = self.get_template(template_id)
        supersedes = {
            higher: [fb for fb in fallbacks if any(f.field_name == fb for f in new_fields)]
            for higher, fallbacks in current.supersedes.items()
            if any(f.field_name == higher for f in new_fields)
        }
        return self.update_template(
            template_id,
            fields=new_fields,
            supersedes={k: v for k, v in supersedes.items() if v},
        )

    def add_field(self, template_id: str, template_field: TemplateField) -> Template:
        current = self.get_template(template_id)
        return self.update_template(template_id, fields=current.fields + [template_field])

    def remove_field(self, template_id: str, field_name: str) -> Template:
        current = self.get_template(template_id)
        if current.get_field(field_name) is None:
            raise TemplateValidationError([f"Field {field_name} not in template {template_id}"])
        supersedes = {}
        for higher, fallbacks in current.supersedes.items():
            if higher == field_name:
                continue
            remaining = [fb for fb in fallbacks if fb != field_name]
            if remaining:
                supersedes[higher] = remaining
        return self.update_template(
            template_id,
            fields=[f for f in current.fields if f.field_name != field_name],
            supersedes=supersedes,
        )

    def duplicate_template(self, template_id: str, new_name: str) -> Template:
        """Copy a template and its fields under a new id.

        A copy of a generic template starts inactive so the one-generic-per-type
        invariant still holds.
        """
        source = self.get_template(template_id)
        now = datetime.now()
        duplicate = replace(
            source,
            id=str(uuid.uuid4()),
            name=new_name,
            is_active=source.is_active and not source.is_generic,
            version=1,
            created_at=now,
            updated_at=now,
            usage_count=0,
            match_rate=0.0,
        )
        return self.create_template(duplicate)

    def generate_from_corrections(self,
                                  pattern_store: PatternStore,
                                  supplier_id: str,
                                  document_type: DocumentType = DocumentType.INVOICE,
                                  min_samples: int = 5,
                                  supplier_name: Optional[str] = None) -> Optional[Template]:
        """
        Draft a supplier template from the fields reviewers keep correcting.

        Fields corrected at least three times become template fields; their
        tier follows how often they were corrected (10+ always, 5+ usually,
        otherwise sometimes). Each field takes its region from the learned
        alternate regions of the template it was corrected on, then from that
        template's own field, then from the region the reviewer marked.

        Args:
            pattern_store: Store holding the committed corrections
            supplier_id: Supplier the template is for
            document_type: Document type of the new template
            min_samples: Corrections needed before a template is drafted
            supplier_name: Display name; defaults to the supplier id

        Returns:
            The stored template, or None if the corrections are too few or
            carry no usable regions
        """
        if isinstance(document_type, str):
            document_type = DocumentType(document_type)

        corrections = pattern_store.corrections(supplier_id=supplier_id)
        if len(corrections) < min_samples:
            logger.info(
                "Not enough corrections for %s (%d < %d) to generate a template",
                supplier_id, len(corrections), min_samples,
            )
            return None

        by_field: Dict[str, List[Correction]] = {}
        for correction in corrections:
            by_field.setdefault(correction.field_name, []).append(correction)
        frequent = sorted(
            ((name, corrs) for name, corrs in by_field.items() if len(corrs) >= 3),
            key=lambda item: (-len(item[1]), item[0]),
        )
        if not frequent:
            logger.info("No frequently corrected fields for %s", supplier_id)
            return None

        snapshot = pattern_store.snapshot()
        fields = []
        for priority, (field_name, corrs) in enumerate(frequent):
            placement = self._learned_placement(snapshot, field_name, corrs)
            if placement is None:
                logger.debug("No region for %s on %s; skipping field", field_name, supplier_id)
                continue
            region, page_number, source_field = placement
            fields.append(TemplateField(
                field_name=field_name,
                field_label=source_field.field_label if source_field else field_name.replace('_', ' ').title(),
                region=region,
                page_number=page_number,
                confidence_tier=_tier_for_count(len(corrs)),
                priority=priority,
                notes=f"Corrected {len(corrs)} times",
                validation_regex=source_field.validation_regex if source_field else None,
                expected_format=source_field.expected_format if source_field else None,
            ))
        if not fields:
            logger.info("Corrections for %s carry no regions; no template generated", supplier_id)
            return None

        template = Template(
            id=f"{supplier_id}_{document_type.value}_auto_{uuid.uuid4().hex[:8]}",
            name=f"{supplier_name or supplier_id} {document_type.value} (auto-generated)",
            document_type=document_type,
            supplier_id=supplier_id,
            supplier_name=supplier_name,
            page_count=max(f.page_number for f in fields),
            fields=fields,
            description=f"Auto-generated from {len(corrections)} corrections",
        )
        logger.info("Generating template %r with %d fields", template.name, len(fields))
        return self.create_template(template)

    def _learned_placement(self, snapshot, field_name: str, corrections: List[Correction]):
        source_id = Counter(c.template_id for c in corrections).most_common(1)[0][0]

        source = self.find_template(source_id)
        source_field = source.get_field(field_name) if source else None

        hints = snapshot.region_hints(source_id, field_name)
        if hints:
            hint = hints[0]
            region = Region(x=hint['x'], y=hint['y'], width=hint['width'], height=hint['height'])
            return region, hint['page'], source_field
        if source_field is not None:
            return replace(source_field.region), source_field.page_number, source_field
        for correction in reversed(corrections):
            if correction.region is not None:
                return replace(correction.region), correction.page_number or 1, None
        return None

    def record_usage(self,
                     template_id: str,
                     fields_matched: int,
                     fields_total: int,
                     avg_confidence: float) -> Template:
        """
        Record one extraction against a template.

        Keeps usage_count and the rolling average match rate (percentage of
        template fields resolved).
        """
        with self._lock:
            template = self.templates.get(template_id)
            if template is None:
                raise TemplateNotFoundError(f"Template not found: {template_id}")
            match_rate = (fields_matched / fields_total * 100) if fields_total else 0.0
            count = template.usage_count + 1
            template.match_rate = template.match_rate + (match_rate - template.match_rate) / count
            template.usage_count = count
            self.usage_log.setdefault(template_id, []).append({
                'used_at': datetime.now().isoformat(),
                'match_rate': match_rate,
                'fields_matched': fields_matched,
                'fields_total': fields_total,
                'avg_confidence': avg_confidence,
            })
            return _copy_template(template)

    def get_performance(self, template_id: str) -> Dict[str, Any]:
        """Usage statistics for a template."""
        with self._lock:
            template = self.templates.get(template_id)
            if template is None:
                raise TemplateNotFoundError(f"Template not found: {template_id}")
            usage = list(self.usage_log.get(template_id, []))
        confidences = [u['avg_confidence'] for u in usage]
        return {
            'usage_count': template.usage_count,
            'avg_match_rate': template.match_rate,
            'avg_confidence': sum(confidences) / len(confidences) if confidences else 0.0,
            'recent_uses': usage[-10:][::-1],
        }

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    def _check(self, template: Template) -> None:
        errors = self.validate_template(template)
        if errors:
            raise TemplateValidationError(errors)

    def validate_template(self, template: Template) -> List[str]:
        """
        Validate a template against the store invariants.

        Args:
            template: Template to validate

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not template.id:
            errors.append("Missing template id")
        if not template.name:
            errors.append("Missing template name")
        if not template.is_generic and not template.supplier_id:
            errors.append(f"Template {template.id} is not generic but has no supplier_id")
        if template.page_count < 1:
            errors.append(f"Template {template.id} page_count must be at least 1")

        if template.is_generic and template.is_active:
            for other in self.templates.values():
                if (other.id != template.id and other.is_generic and other.is_active
                        and other.document_type is template.document_type):
                    errors.append(
                        f"Generic template already active for {template.document_type.value}: {other.id}"
                    )

        field_names = set()
        for template_field in template.fields:
            name = template_field.field_name
            if not name:
                errors.append("Field missing field_name")
            elif name in field_names:
                errors.append(f"Duplicate field_name: {name}")
            else:
                field_names.add(name)

            region = template_field.region
            if region.x < 0 or region.y < 0:
                errors.append(f"Field {name} region origin must be non-negative")
            if region.width <= 0 or region.height <= 0:
                errors.append(f"Field {name} region must have positive width and height")
            if template_field.page_number < 1 or template_field.page_number > template.page_count:
                errors.append(f"Field {name} page_number {template_field.page_number} outside template pages")

        for higher, fallbacks in template.supersedes.items():
            higher_field = template.get_field(higher)
            if higher_field is None:
                errors.append(f"Supersedes references unknown field: {higher}")
                continue
            if higher_field.confidence_tier is ConfidenceTier.FALLBACK:
                errors.append(f"Superseding field {higher} must not be fallback tier")
            for fallback_name in fallbacks:
                fallback_field = template.get_field(fallback_name)
                if fallback_field is None:
                    errors.append(f"Supersedes references unknown field: {fallback_name}")
                elif fallback_field.confidence_tier is not ConfidenceTier.FALLBACK:
                    errors.append(f"Superseded field {fallback_name} must be fallback tier")

        return errors

    def get_required_fields(self, template_id: str) -> List[TemplateField]:
        """Fields in the always tier."""
        template = self.get_template(template_id)
        return [f for f in template.fields if f.confidence_tier is ConfidenceTier.ALWAYS]


def _copy_template(template: Template) -> Template:
    return replace(
        template,
        fields=[replace(f) for f in template.fields],
        supersedes={k: list(v) for k, v in template.supersedes.items()},
    )


def _later_than(previous: datetime) -> datetime:
    return max(datetime.now(), previous)


def _tier_for_count(count: int) -> ConfidenceTier:
    if count >= 10:
        return ConfidenceTier.ALWAYS
    if count >= 5:
        return ConfidenceTier.USUALLY
    return ConfidenceTier.SOMETIMES
