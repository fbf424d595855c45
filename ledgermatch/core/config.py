"""
Matching Configuration

Tunable constants for the matching engine:
- Scorer tolerances (amount bands, date window)
- Default confidence thresholds and feature weights
- Candidate search windows per document type
- Calibration limits
- Orchestrator concurrency, timeouts and retries

Every value has a sane default and can be overridden with a
``LEDGERMATCH_*`` environment variable. Per-tenant thresholds and weights
live in the calibration profile; the values here are only the starting
point a new tenant gets.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

FEATURES: Tuple[str, ...] = ("amount", "date", "text", "currency")

DEFAULT_WEIGHTS: Dict[str, float] = {
    "amount": 0.40,
    "text": 0.25,
    "date": 0.25,
    "currency": 0.10,
}

# (days before anchor, days after anchor)
DEFAULT_SEARCH_WINDOWS: Dict[str, Tuple[int, int]] = {
    "expense": (93, 10),    # receipts arrive after the card payment
    "invoice": (10, 123),   # invoices are paid up to ~4 months later
    "default": (60, 30),
}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %s", name, raw, default)
        return default


@dataclass
class ScoringSettings:
    """
    Tolerances used by the similarity scorers.

    - amount_tolerance_pct: relative difference still scored 0.8-1.0
    - amount_epsilon_minor: absolute rounding slack in minor units
    - amount_falloff_pct: relative difference at which the amount score hits 0
    - fx_tolerance_pct: tolerance band after currency conversion
    - date_window_days: days over which the date score decays to 0
    """
    amount_tolerance_pct: float = 0.01
    amount_epsilon_minor: int = 2
    amount_falloff_pct: float = 0.15
    fx_tolerance_pct: float = 0.03
    date_window_days: int = 30
    currency_conversion_score: float = 0.5

    def __post_init__(self):
        if not (0 < self.amount_tolerance_pct < self.amount_falloff_pct):
            raise ValueError("Amount bands must be: 0 < tolerance < falloff")
        if not (0 < self.fx_tolerance_pct < self.amount_falloff_pct):
            raise ValueError("FX tolerance must be: 0 < fx_tolerance < falloff")
        if self.date_window_days <= 0:
            raise ValueError("date_window_days must be positive")
        if not (0.0 <= self.currency_conversion_score <= 1.0):
            raise ValueError("currency_conversion_score must be within [0, 1]")


@dataclass
class ThresholdDefaults:
    """
    Thresholds for automated decision-making.

    - auto_match: confidence at or above = confirmed without review
    - high_confidence: labelled high-confidence suggestion
    - suggest: confidence at or above = surfaced for human review
    - ambiguity_margin: top candidate must lead the runner-up by this much
      to be auto-matched
    """
    auto_match: float = 0.90
    high_confidence: float = 0.72
    suggest: float = 0.60
    ambiguity_margin: float = 0.05
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))

    def __post_init__(self):
        if not (0.0 <= self.suggest <= self.high_confidence <= self.auto_match <= 1.0):
            raise ValueError("Thresholds must be: suggest <= high_confidence <= auto_match")
        if not (0.0 <= self.ambiguity_margin < 1.0):
            raise ValueError("ambiguity_margin must be within [0, 1)")
        unknown = set(self.weights) - set(FEATURES)
        if unknown:
            raise ValueError(f"Unknown feature weights: {sorted(unknown)}")
        if any(w < 0 for w in self.weights.values()) or sum(self.weights.values()) <= 0:
            raise ValueError("Feature weights must be non-negative with a positive sum")


@dataclass
class SearchSettings:
    """Candidate search bounds."""
    max_candidates: int = 100
    max_suggestions: int = 5
    windows: Dict[str, Tuple[int, int]] = field(
        default_factory=lambda: dict(DEFAULT_SEARCH_WINDOWS)
    )

    def window_for(self, document_type: Optional[str]) -> Tuple[int, int]:
        return self.windows.get(document_type or "default", self.windows["default"])


@dataclass
class CalibrationSettings:
    """Limits for per-tenant threshold and weight calibration."""
    min_samples: int = 5
    min_samples_conservative: int = 8
    lookback_days: int = 90
    max_adjustment: float = 0.03
    suggest_bounds: Tuple[float, float] = (0.55, 0.85)
    auto_bounds: Tuple[float, float] = (0.85, 0.95)
    max_weight_shift: float = 0.10
    min_weight: float = 0.05

    def __post_init__(self):
        if self.min_samples < 1:
            raise ValueError("min_samples must be at least 1")


@dataclass
class OrchestratorSettings:
    """Batch execution limits."""
    max_concurrency: int = 4
    item_timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 5.0
    max_batch_size: int = 50
    reverse_chunk_size: int = 10
    reverse_limit: int = 50

    def __post_init__(self):
        self.max_concurrency = max(1, self.max_concurrency)
        self.max_attempts = max(1, self.max_attempts)
        if self.item_timeout_seconds <= 0:
            raise ValueError("item_timeout_seconds must be positive")


@dataclass
class MatchingSettings:
    """All engine settings in one place."""
    scoring: ScoringSettings = field(default_factory=ScoringSettings)
    thresholds: ThresholdDefaults = field(default_factory=ThresholdDefaults)
    search: SearchSettings = field(default_factory=SearchSettings)
    calibration: CalibrationSettings = field(default_factory=CalibrationSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    db_path: str = "ledgermatch.db"

    @classmethod
    def from_env(cls) -> "MatchingSettings":
        scoring = ScoringSettings(
            amount_tolerance_pct=_env_float("LEDGERMATCH_AMOUNT_TOLERANCE_PCT", 0.01),
            amount_epsilon_minor=_env_int("LEDGERMATCH_AMOUNT_EPSILON_MINOR", 2),
            amount_falloff_pct=_env_float("LEDGERMATCH_AMOUNT_FALLOFF_PCT", 0.15),
            fx_tolerance_pct=_env_float("LEDGERMATCH_FX_TOLERANCE_PCT", 0.03),
            date_window_days=_env_int("LEDGERMATCH_DATE_WINDOW_DAYS", 30),
        )
        thresholds = ThresholdDefaults(
            auto_match=_env_float("LEDGERMATCH_AUTO_MATCH_THRESHOLD", 0.90),
            high_confidence=_env_float("LEDGERMATCH_HIGH_CONFIDENCE_THRESHOLD", 0.72),
            suggest=_env_float("LEDGERMATCH_SUGGEST_THRESHOLD", 0.60),
            ambiguity_margin=_env_float("LEDGERMATCH_AMBIGUITY_MARGIN", 0.05),
        )
        search = SearchSettings(
            max_candidates=_env_int("LEDGERMATCH_MAX_CANDIDATES", 100),
            max_suggestions=_env_int("LEDGERMATCH_MAX_SUGGESTIONS", 5),
        )
        calibration = CalibrationSettings(
            min_samples=_env_int("LEDGERMATCH_CALIBRATION_MIN_SAMPLES", 5),
            lookback_days=_env_int("LEDGERMATCH_CALIBRATION_LOOKBACK_DAYS", 90),
        )
        orchestrator = OrchestratorSettings(
            max_concurrency=_env_int("LEDGERMATCH_MAX_CONCURRENCY", 4),
            item_timeout_seconds=_env_float("LEDGERMATCH_ITEM_TIMEOUT_SECONDS", 30.0),
            max_attempts=_env_int("LEDGERMATCH_MAX_ATTEMPTS", 3),
            max_batch_size=_env_int("LEDGERMATCH_MAX_BATCH_SIZE", 50),
        )
        return cls(
            scoring=scoring,
            thresholds=thresholds,
            search=search,
            calibration=calibration,
            orchestrator=orchestrator,
            db_path=os.getenv("LEDGERMATCH_DB_PATH", "ledgermatch.db"),
        )


_SETTINGS: Optional[MatchingSettings] = None


def get_settings() -> MatchingSettings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = MatchingSettings.from_env()
    return _SETTINGS


def reset_settings() -> None:
    """Drop cached settings so the next call re-reads the environment."""
    global _SETTINGS
    _SETTINGS = None
