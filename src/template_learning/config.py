"""
Engine configuration.

All thresholds can be overridden through environment variables (loaded from a
.env file if present) or an explicit dict.
"""

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv

from .models import ConfidenceTier


DEFAULT_TIER_MINIMUMS = {
    ConfidenceTier.ALWAYS: 0.6,
    ConfidenceTier.USUALLY: 0.5,
    ConfidenceTier.SOMETIMES: 0.35,
    ConfidenceTier.FALLBACK: None,
}

DEFAULT_TIER_WEIGHTS = {
    ConfidenceTier.ALWAYS: 1.0,
    ConfidenceTier.USUALLY: 1.0,
    ConfidenceTier.SOMETIMES: 1.0,
    ConfidenceTier.FALLBACK: 0.3,
}

DEFAULT_AMOUNT_FIELDS = ('net_amount', 'vat_amount', 'gross_amount')
DEFAULT_CRITICAL_FIELDS = ('invoice_number', 'invoice_date', 'gross_amount')


@dataclass
class EngineConfig:
    """Thresholds and policy knobs for the extraction engine."""

    # Field resolution
    tier_minimums: Dict[ConfidenceTier, Optional[float]] = field(
        default_factory=lambda: dict(DEFAULT_TIER_MINIMUMS))
    tier_weights: Dict[ConfidenceTier, float] = field(
        default_factory=lambda: dict(DEFAULT_TIER_WEIGHTS))

    # Learning
    trusted_threshold: int = 3
    pattern_base_confidence: float = 0.6
    pattern_confidence_step: float = 0.1
    pattern_max_confidence: float = 0.95

    # Validation
    rounding_tolerance: float = 0.01
    # digits before the decimal point; longer values are OCR run-ons
    max_amount_digits: int = 15
    allowed_vat_rates: Tuple[float, ...] = (20.0, 5.0, 0.0)
    vat_rate_tolerance: float = 0.5
    max_future_days: int = 31
    max_age_days: int = 365
    min_reference_length: int = 3
    amount_fields: Tuple[str, ...] = DEFAULT_AMOUNT_FIELDS
    date_formats: Tuple[str, ...] = (
        "%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y",
        "%d/%m/%y", "%d %B %Y", "%d %b %Y", "%B %d, %Y", "%b %d, %Y",
    )

    # Anomaly detection
    anomaly_threshold: float = 0.75
    history_window: int = 50
    min_history: int = 5
    critical_fields: Tuple[str, ...] = DEFAULT_CRITICAL_FIELDS
    low_confidence_floor: float = 0.4

    # Active learning
    review_threshold: float = 0.7

    # Pipeline
    max_workers: int = 4

    def tier_minimum(self, tier: ConfidenceTier) -> Optional[float]:
        return self.tier_minimums.get(tier)

    def tier_weight(self, tier: ConfidenceTier) -> float:
        return self.tier_weights.get(tier, 1.0)

    @classmethod
    def from_dict(cls, overrides: Dict[str, Any]) -> 'EngineConfig':
        config = cls()
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in overrides.items():
            if key not in known:
                raise ValueError(f"Unknown config option: {key}")
            if key in ('tier_minimums', 'tier_weights'):
                merged = dict(getattr(config, key))
                merged.update({ConfidenceTier(k) if isinstance(k, str) else k: v for k, v in value.items()})
                value = merged
            elif isinstance(value, list):
                value = tuple(value)
            values[key] = value
        return replace(config, **values)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> 'EngineConfig':
        """
        Build a config from EXTRACTION_* environment variables.

        Args:
            env_file: Optional path to a .env file; defaults to ./.env

        Returns:
            EngineConfig with environment overrides applied
        """
        load_dotenv(env_file)

        overrides: Dict[str, Any] = {}
        floats = {
            'EXTRACTION_ANOMALY_THRESHOLD': 'anomaly_threshold',
            'EXTRACTION_REVIEW_THRESHOLD': 'review_threshold',
            'EXTRACTION_ROUNDING_TOLERANCE': 'rounding_tolerance',
            'EXTRACTION_LOW_CONFIDENCE_FLOOR': 'low_confidence_floor',
        }
        ints = {
            'EXTRACTION_TRUSTED_THRESHOLD': 'trusted_threshold',
            'EXTRACTION_HISTORY_WINDOW': 'history_window',
            'EXTRACTION_MIN_HISTORY': 'min_history',
            'EXTRACTION_MAX_WORKERS': 'max_workers',
        }
        for env_name, option in floats.items():
            value = os.getenv(env_name)
            if value:
                overrides[option] = float(value)
        for env_name, option in ints.items():
            value = os.getenv(env_name)
            if value:
                overrides[option] = int(value)

        tier_minimums = {}
        for tier in ConfidenceTier:
            value = os.getenv(f"EXTRACTION_MIN_CONFIDENCE_{tier.name}")
            if value:
                tier_minimums[tier] = float(value)
        if tier_minimums:
            overrides['tier_minimums'] = tier_minimums

        vat_rates = os.getenv("EXTRACTION_VAT_RATES")
        if vat_rates:
            overrides['allowed_vat_rates'] = _parse_float_list(vat_rates)

        return cls.from_dict(overrides)


def _parse_float_list(value: str) -> List[float]:
    return [float(part) for part in value.split(',') if part.strip()]
