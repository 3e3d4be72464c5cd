"""
Data models for template-driven extraction and confidence learning.
"""

from typing import Dict, List, Any, Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum
import uuid
from datetime import datetime


class DocumentType(Enum):
    INVOICE = "invoice"
    POD = "pod"
    QUOTE = "quote"
    RECEIPT = "receipt"
    TIMESHEET = "timesheet"
    CUSTOM = "custom"


class ConfidenceTier(Enum):
    """How reliably a template region holds its field, strongest first."""
    ALWAYS = "always"
    USUALLY = "usually"
    SOMETIMES = "sometimes"
    FALLBACK = "fallback"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    @classmethod
    def ordered(cls) -> List['ConfidenceTier']:
        return sorted(cls, key=lambda tier: tier.rank)


_TIER_RANK = {
    ConfidenceTier.ALWAYS: 0,
    ConfidenceTier.USUALLY: 1,
    ConfidenceTier.SOMETIMES: 2,
    ConfidenceTier.FALLBACK: 3,
}


class PatternKind(Enum):
    VALUE_NORMALIZATION = "value_normalization"
    ALTERNATE_REGION = "alternate_region"
    REGEX_HINT = "regex_hint"


class FieldSource(Enum):
    RAW = "raw"
    PATTERN = "pattern"
    FALLBACK = "fallback"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RequestReason(Enum):
    LOW_CONFIDENCE = "low_confidence"
    ANOMALY = "anomaly"
    VALIDATION_FAILURE = "validation_failure"


class RequestStatus(Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


@dataclass(frozen=True)
class Region:
    """Bounding box of a field on a page, in pixels."""
    x: float
    y: float
    width: float
    height: float

    def overlaps(self, other: 'Region') -> bool:
        return not (
            self.x + self.width < other.x or
            other.x + other.width < self.x or
            self.y + self.height < other.y or
            other.y + other.height < self.y
        )

    def union(self, other: 'Region') -> 'Region':
        x = min(self.x, other.x)
        y = min(self.y, other.y)
        right = max(self.x + self.width, other.x + other.width)
        bottom = max(self.y + self.height, other.y + other.height)
        return Region(x=x, y=y, width=right - x, height=bottom - y)

    def to_dict(self) -> Dict[str, float]:
        return {'x': self.x, 'y': self.y, 'width': self.width, 'height': self.height}


@dataclass
class TemplateField:
    """One expected field within a template."""
    field_name: str
    field_label: str
    region: Region
    page_number: int = 1
    confidence_tier: ConfidenceTier = ConfidenceTier.USUALLY
    priority: int = 0
    notes: Optional[str] = None
    validation_regex: Optional[str] = None
    expected_format: Optional[str] = None

    def __post_init__(self):
        # Accept the markup tool's flat shape (x/y/width/height, tier strings)
        if isinstance(self.region, dict):
            self.region = Region(**self.region)
        if isinstance(self.confidence_tier, str):
            self.confidence_tier = ConfidenceTier(self.confidence_tier)

    @property
    def sort_key(self) -> Tuple[int, int, str]:
        return (self.confidence_tier.rank, self.priority, self.field_name)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TemplateField':
        data = dict(data)
        if 'region' not in data:
            data['region'] = Region(
                x=data.pop('x'),
                y=data.pop('y'),
                width=data.pop('width'),
                height=data.pop('height'),
            )
        if 'confidence_level' in data:
            data['confidence_tier'] = data.pop('confidence_level')
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'field_name': self.field_name,
            'field_label': self.field_label,
            'page_number': self.page_number,
            'confidence_tier': self.confidence_tier.value,
            'priority': self.priority,
            'notes': self.notes,
            'validation_regex': self.validation_regex,
            'expected_format': self.expected_format,
        }
        data.update(self.region.to_dict())
        return data


@dataclass
class Template:
    """A reusable definition of where fields live on a class of document."""
    id: str
    name: str
    document_type: DocumentType
    supplier_id: Optional[str] = None
    is_generic: bool = False
    is_active: bool = True
    page_count: int = 1
    fields: List[TemplateField] = field(default_factory=list)
    # higher-tier field name -> fallback field names it supersedes
    supersedes: Dict[str, List[str]] = field(default_factory=dict)
    description: Optional[str] = None
    supplier_name: Optional[str] = None
    version: int = 1
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    usage_count: int = 0
    match_rate: float = 0.0

    def __post_init__(self):
        if isinstance(self.document_type, str):
            self.document_type = DocumentType(self.document_type)
        if self.fields and isinstance(self.fields[0], dict):
            self.fields = [TemplateField.from_dict(f) for f in self.fields]
        for attr in ('created_at', 'updated_at'):
            value = getattr(self, attr)
            if isinstance(value, str):
                setattr(self, attr, datetime.fromisoformat(value))

    def get_field(self, field_name: str) -> Optional[TemplateField]:
        for template_field in self.fields:
            if template_field.field_name == field_name:
                return template_field
        return None

    def ordered_fields(self) -> List[TemplateField]:
        """Fields in resolution order: tier, then priority."""
        return sorted(self.fields, key=lambda f: f.sort_key)

    def superseded_by(self, field_name: str) -> List[str]:
        """Higher-tier fields that supersede the given fallback field."""
        return sorted(
            higher for higher, fallbacks in self.supersedes.items()
            if field_name in fallbacks
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Template':
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'document_type': self.document_type.value,
            'supplier_id': self.supplier_id,
            'supplier_name': self.supplier_name,
            'is_generic': self.is_generic,
            'is_active': self.is_active,
            'page_count': self.page_count,
            'description': self.description,
            'version': self.version,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'usage_count': self.usage_count,
            'match_rate': self.match_rate,
            'supersedes': {k: list(v) for k, v in self.supersedes.items()},
            'fields': [f.to_dict() for f in self.fields],
        }


@dataclass(frozen=True)
class RawFieldGuess:
    """First-pass guess for a field from the external extractor."""
    raw_value: Optional[str]
    raw_confidence: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RawFieldGuess':
        value = data.get('raw_value')
        return cls(
            raw_value=None if value is None else str(value),
            raw_confidence=float(data.get('raw_confidence', 0.0)),
        )


def parse_raw_fields(data: Dict[str, Any]) -> Dict[str, RawFieldGuess]:
    """Convert the external `{field: {raw_value, raw_confidence}}` shape."""
    guesses = {}
    for field_name, guess in data.items():
        if isinstance(guess, RawFieldGuess):
            guesses[field_name] = guess
        else:
            guesses[field_name] = RawFieldGuess.from_dict(guess)
    return guesses


@dataclass
class LearningPattern:
    """A refinement learned from human corrections."""
    template_id: str
    field_name: str
    pattern_kind: PatternKind
    payload: Dict[str, Any] = field(default_factory=dict)
    observed_count: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    first_seen: datetime = field(default_factory=datetime.now)
    last_seen: datetime = field(default_factory=datetime.now)
    is_active: bool = True

    @property
    def key(self) -> Tuple[str, str, PatternKind]:
        return (self.template_id, self.field_name, self.pattern_kind)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'template_id': self.template_id,
            'field_name': self.field_name,
            'pattern_kind': self.pattern_kind.value,
            'payload': self.payload,
            'observed_count': self.observed_count,
            'first_seen': self.first_seen.isoformat(),
            'last_seen': self.last_seen.isoformat(),
            'is_active': self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LearningPattern':
        return cls(
            id=data['id'],
            template_id=data['template_id'],
            field_name=data['field_name'],
            pattern_kind=PatternKind(data['pattern_kind']),
            payload=data.get('payload', {}),
            observed_count=data.get('observed_count', 0),
            first_seen=datetime.fromisoformat(data['first_seen']),
            last_seen=datetime.fromisoformat(data['last_seen']),
            is_active=data.get('is_active', True),
        )


@dataclass
class Correction:
    """A human-supplied value for one field of one document."""
    document_id: str
    template_id: str
    field_name: str
    corrected_value: str
    original_value: Optional[str] = None
    original_source: Optional[FieldSource] = None
    page_number: Optional[int] = None
    region: Optional[Region] = None
    supplier_id: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.original_source, str):
            self.original_source = FieldSource(self.original_source)
        if isinstance(self.region, dict):
            self.region = Region(**self.region)


@dataclass
class FieldResolution:
    """Outcome of resolving a single template field."""
    field_name: str
    tier: ConfidenceTier
    raw_value: Optional[str] = None
    raw_confidence: float = 0.0
    resolved_value: Optional[str] = None
    confidence_score: float = 0.0
    tier_used: Optional[ConfidenceTier] = None
    source: Optional[FieldSource] = None
    pattern_kind: Optional[PatternKind] = None
    suggested_value: Optional[str] = None
    skipped: bool = False
    notes: List[str] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.source is not None and self.resolved_value is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'field_name': self.field_name,
            'tier': self.tier.value,
            'raw_value': self.raw_value,
            'raw_confidence': self.raw_confidence,
            'resolved_value': self.resolved_value,
            'confidence_score': self.confidence_score,
            'tier_used': self.tier_used.value if self.tier_used else None,
            'source': self.source.value if self.source else None,
            'pattern_kind': self.pattern_kind.value if self.pattern_kind else None,
            'suggested_value': self.suggested_value,
            'skipped': self.skipped,
            'notes': list(self.notes),
        }


@dataclass
class ExtractionResult:
    """Resolved field values for one document."""
    document_id: str
    template_id: Optional[str]
    document_type: DocumentType
    supplier_id: Optional[str] = None
    supplier_name: Optional[str] = None
    fields: Dict[str, FieldResolution] = field(default_factory=dict)
    # fallback field -> the logical field it stands in for
    logical_names: Dict[str, str] = field(default_factory=dict)
    overall_confidence: float = 0.0
    resolution_gaps: List[str] = field(default_factory=list)
    region_hints: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    processed_at: str = field(default_factory=lambda: datetime.now().isoformat(), compare=False)

    def add_field(self, resolution: FieldResolution) -> None:
        self.fields[resolution.field_name] = resolution

    def value_of(self, logical_name: str) -> Optional[str]:
        """
        Resolved value for a logical field.

        The field of that name wins when it resolved; otherwise a fallback
        field standing in for it provides the value.
        """
        resolution = self.resolution_for(logical_name)
        if resolution is None or not resolution.resolved:
            return None
        return resolution.resolved_value

    def resolution_for(self, logical_name: str) -> Optional[FieldResolution]:
        """The resolution that supplies a logical field's value, if any."""
        own = self.fields.get(logical_name)
        if own is not None and own.resolved:
            return own
        for field_name, logical in self.logical_names.items():
            if logical == logical_name and self.fields[field_name].resolved:
                return self.fields[field_name]
        return own

    def get_all_values(self) -> Dict[str, Any]:
        values = {}
        for field_name, resolution in self.fields.items():
            if resolution.resolved:
                values[self.logical_names.get(field_name, field_name)] = resolution.resolved_value
        return values

    def get_confidence_scores(self) -> Dict[str, float]:
        return {name: r.confidence_score for name, r in self.fields.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'document_id': self.document_id,
            'template_id': self.template_id,
            'document_type': self.document_type.value,
            'supplier_id': self.supplier_id,
            'overall_confidence': self.overall_confidence,
            'extracted_fields': self.get_all_values(),
            'confidence_scores': self.get_confidence_scores(),
            'field_details': {name: r.to_dict() for name, r in self.fields.items()},
            'resolution_gaps': list(self.resolution_gaps),
            'region_hints': self.region_hints,
            'processed_at': self.processed_at,
        }


@dataclass(frozen=True)
class Violation:
    rule: str
    field: Optional[str]
    message: str
    severity: Severity

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rule': self.rule,
            'field': self.field,
            'message': self.message,
            'severity': self.severity.value,
        }


@dataclass
class ValidationResult:
    violations: List[Violation] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.high_severity

    @property
    def high_severity(self) -> List[Violation]:
        return [v for v in self.violations if v.severity is Severity.HIGH]

    def fields_in_violation(self) -> List[str]:
        names = []
        for violation in self.violations:
            if violation.field and violation.field not in names:
                names.append(violation.field)
        return names

    def to_dict(self) -> Dict[str, Any]:
        return {
            'passed': self.passed,
            'violations': [v.to_dict() for v in self.violations],
        }


@dataclass(frozen=True)
class AnomalySignal:
    signal: str
    description: str
    weight: float
    field: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'signal': self.signal,
            'field': self.field,
            'description': self.description,
            'weight': self.weight,
        }


@dataclass
class AnomalyDetection:
    document_id: str
    template_id: Optional[str]
    anomaly_score: float = 0.0
    reasons: List[AnomalySignal] = field(default_factory=list)
    flagged: bool = False
    detected_at: str = field(default_factory=lambda: datetime.now().isoformat(), compare=False)

    def fields_in_question(self) -> List[str]:
        names = []
        for reason in self.reasons:
            if reason.field and reason.field not in names:
                names.append(reason.field)
        return names

    def to_dict(self) -> Dict[str, Any]:
        return {
            'document_id': self.document_id,
            'template_id': self.template_id,
            'anomaly_score': self.anomaly_score,
            'flagged': self.flagged,
            'reasons': [r.to_dict() for r in self.reasons],
            'detected_at': self.detected_at,
        }


@dataclass
class ActiveLearningRequest:
    """A document routed to a human for adjudication."""
    id: str
    document_id: str
    template_id: Optional[str]
    field_names: List[str]
    reasons: List[RequestReason]
    confidence: float
    supplier_id: Optional[str] = None
    extracted_values: Dict[str, Optional[str]] = field(default_factory=dict)
    raw_values: Dict[str, Optional[str]] = field(default_factory=dict)
    sources: Dict[str, Optional[FieldSource]] = field(default_factory=dict)
    status: RequestStatus = RequestStatus.PENDING
    resolution: Dict[str, str] = field(default_factory=dict)
    applied_fields: List[str] = field(default_factory=list)
    note: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    resolved_at: Optional[datetime] = None

    @property
    def reason(self) -> RequestReason:
        """Primary reason, the first condition that routed the document."""
        return self.reasons[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'document_id': self.document_id,
            'template_id': self.template_id,
            'supplier_id': self.supplier_id,
            'field_names': list(self.field_names),
            'reasons': [r.value for r in self.reasons],
            'confidence': self.confidence,
            'extracted_values': dict(self.extracted_values),
            'status': self.status.value,
            'resolution': dict(self.resolution),
            'created_at': self.created_at.isoformat(),
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
        }
