"""
Cross-field validation of resolved extraction results.
"""

import logging
import re
from datetime import date
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

from .config import EngineConfig
from .models import ExtractionResult, Severity, Template, ValidationResult, Violation
from .normalizers import FieldNormalizer

logger = logging.getLogger(__name__)

DEFAULT_RULES = (
    'required_fields',
    'amount_format',
    'amount_consistency',
    'vat_rate',
    'date_order',
    'date_sanity',
    'reference_format',
)

DATE_FIELDS = ('invoice_date', 'due_date')


class Validator:
    """
    Apply validation rules to an ExtractionResult.

    Rules run in the configured order and each appends its violations, so
    the violation list is deterministic for the same input. A rule that
    cannot evaluate (missing or unparseable inputs) adds nothing.
    """

    def __init__(self, config: Optional[EngineConfig] = None, rules: Optional[Sequence[str]] = None):
        self.config = config or EngineConfig()
        self.normalizer = FieldNormalizer(self.config)
        self._rules: Dict[str, Callable[..., List[Violation]]] = {
            'required_fields': self._required_fields,
            'amount_format': self._amount_format,
            'amount_consistency': self._amount_consistency,
            'vat_rate': self._vat_rate,
            'date_order': self._date_order,
            'date_sanity': self._date_sanity,
            'reference_format': self._reference_format,
        }
        self.rule_order = list(rules or DEFAULT_RULES)
        unknown = [name for name in self.rule_order if name not in self._rules]
        if unknown:
            raise ValueError(f"Unknown validation rules: {unknown}")

    def validate(self,
                 result: ExtractionResult,
                 template: Optional[Template] = None,
                 today: Optional[date] = None) -> ValidationResult:
        """
        Validate an extraction result.

        Args:
            result: Resolved fields for one document
            template: Template the result was resolved against, for field regexes
            today: Reference date for date sanity checks

        Returns:
            ValidationResult with violations in rule order
        """
        today = today or date.today()
        validation = ValidationResult()
        for name in self.rule_order:
            validation.violations.extend(self._rules[name](result, template, today))

        if validation.violations:
            logger.debug(
                "Document %s: %d violations (%d high)",
                result.document_id, len(validation.violations), len(validation.high_severity),
            )
        return validation

    def _amount(self, result: ExtractionResult, field_name: str) -> Optional[Decimal]:
        return self.normalizer.parse_amount(result.value_of(field_name))

    def _date(self, result: ExtractionResult, field_name: str) -> Optional[date]:
        return self.normalizer.parse_date(result.value_of(field_name))

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _required_fields(self, result, template, today) -> List[Violation]:
        return [
            Violation(
                rule='required_fields',
                field=field_name,
                message=f"{field_name} is required but was not extracted",
                severity=Severity.HIGH,
            )
            for field_name in result.resolution_gaps
        ]

    def _amount_format(self, result, template, today) -> List[Violation]:
        violations = []
        for field_name in self.config.amount_fields:
            value = result.value_of(field_name)
            if value is not None and self.normalizer.parse_amount(value) is None:
                violations.append(Violation(
                    rule='amount_format',
                    field=field_name,
                    message=f"{field_name} is not a valid amount: {value!r}",
                    severity=Severity.MEDIUM,
                ))
        return violations

    def _amount_consistency(self, result, template, today) -> List[Violation]:
        net = self._amount(result, 'net_amount')
        vat = self._amount(result, 'vat_amount')
        gross = self._amount(result, 'gross_amount')
        if net is None or vat is None or gross is None:
            return []

        expected = net + vat
        if abs(gross - expected) <= Decimal(str(self.config.rounding_tolerance)):
            return []
        return [Violation(
            rule='amount_consistency',
            field='gross_amount',
            message=f"gross_amount != net_amount+vat_amount ({gross:.2f} != {expected:.2f})",
            severity=Severity.HIGH,
        )]

    def _vat_rate(self, result, template, today) -> List[Violation]:
        net = self._amount(result, 'net_amount')
        vat = self._amount(result, 'vat_amount')
        if net is None or vat is None or net == 0:
            return []

        rate = float(vat / net * 100)
        if any(abs(rate - allowed) <= self.config.vat_rate_tolerance for allowed in self.config.allowed_vat_rates):
            return []
        return [Violation(
            rule='vat_rate',
            field='vat_amount',
            message=f"VAT rate {rate:.1f}% is not one of {list(self.config.allowed_vat_rates)}",
            severity=Severity.LOW,
        )]

    def _date_order(self, result, template, today) -> List[Violation]:
        invoice_date = self._date(result, 'invoice_date')
        due_date = self._date(result, 'due_date')
        if invoice_date is None or due_date is None or due_date >= invoice_date:
            return []
        return [Violation(
            rule='date_order',
            field='due_date',
            message=f"due_date {due_date.isoformat()} is before invoice_date {invoice_date.isoformat()}",
            severity=Severity.HIGH,
        )]

    def _date_sanity(self, result, template, today) -> List[Violation]:
        violations = []
        for field_name in DATE_FIELDS:
            value = result.value_of(field_name)
            if value is not None and self.normalizer.parse_date(value) is None:
                violations.append(Violation(
                    rule='date_sanity',
                    field=field_name,
                    message=f"{field_name} is not a recognised date: {value!r}",
                    severity=Severity.MEDIUM,
                ))

        invoice_date = self._date(result, 'invoice_date')
        if invoice_date is None:
            return violations

        days_ahead = (invoice_date - today).days
        if days_ahead > self.config.max_future_days:
            violations.append(Violation(
                rule='date_sanity',
                field='invoice_date',
                message=f"invoice_date is {days_ahead} days in the future",
                severity=Severity.HIGH,
            ))
        elif -days_ahead > self.config.max_age_days:
            violations.append(Violation(
                rule='date_sanity',
                field='invoice_date',
                message=f"invoice_date is {-days_ahead} days old",
                severity=Severity.LOW,
            ))
        return violations

    def _reference_format(self, result, template, today) -> List[Violation]:
        violations = []
        reference = self.normalizer.normalize_reference(result.value_of('invoice_number'))
        if reference is not None and len(reference) < self.config.min_reference_length:
            violations.append(Violation(
                rule='reference_format',
                field='invoice_number',
                message=f"invoice_number {reference!r} is shorter than {self.config.min_reference_length} characters",
                severity=Severity.HIGH,
            ))

        if template is None:
            return violations

        for template_field in template.ordered_fields():
            if not template_field.validation_regex:
                continue
            resolution = result.fields.get(template_field.field_name)
            if resolution is None or not resolution.resolved:
                continue
            try:
                matched = re.fullmatch(template_field.validation_regex, resolution.resolved_value)
            except re.error as e:
                logger.warning(
                    "Invalid validation_regex on %s.%s: %s",
                    template.id, template_field.field_name, e,
                )
                continue
            if matched is None:
                violations.append(Violation(
                    rule='reference_format',
                    field=template_field.field_name,
                    message=f"{template_field.field_name} {resolution.resolved_value!r} does not match {template_field.validation_regex}",
                    severity=Severity.MEDIUM,
                ))
        return violations
