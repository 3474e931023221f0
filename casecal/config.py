"""Runtime settings and the canonical threshold table for the engine."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent


def _sanitize_environment(value: str) -> str:
    cleaned = value.strip().lower()
    return "".join(ch if ch.isalnum() or ch in {"-", "_"} else "-" for ch in cleaned) or "development"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, raw)
        return default


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


ENVIRONMENT = _sanitize_environment(os.getenv("CASECAL_ENVIRONMENT", "development"))
DEFAULT_SQLITE_PATH = BASE_DIR / f"casecal_{ENVIRONMENT}.db"
DEFAULT_DATABASE_URL = os.getenv("CASECAL_DATABASE_URL", f"sqlite:///{DEFAULT_SQLITE_PATH}")
CACHE_ENABLED = _env_flag("CASECAL_CACHE_ENABLED", True)
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CASECAL_ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]
TEMPLATES_PATH = Path(os.getenv("CASECAL_TEMPLATES_PATH", BASE_DIR / "data" / "angle_templates.json"))


@dataclass(frozen=True)
class TextGateThresholds:
    min_raw_chars: int = 800
    scanned_max_json_chars: int = 400


TEXT_GATE_THRESHOLDS = TextGateThresholds(
    min_raw_chars=_env_int("CASECAL_MIN_RAW_CHARS", 800),
    scanned_max_json_chars=_env_int("CASECAL_SCANNED_MAX_JSON_CHARS", 400),
)


@dataclass(frozen=True)
class VisibilityThreshold:
    """Below ``min_completeness`` or above ``max_critical_missing`` numbers are hidden."""

    min_completeness: int
    max_critical_missing: int


VISIBILITY_THRESHOLDS: Mapping[str, VisibilityThreshold] = {
    "criminal": VisibilityThreshold(min_completeness=50, max_critical_missing=2),
    "housing": VisibilityThreshold(min_completeness=40, max_critical_missing=2),
    "personal_injury": VisibilityThreshold(min_completeness=40, max_critical_missing=2),
    "family": VisibilityThreshold(min_completeness=40, max_critical_missing=2),
}


@dataclass(frozen=True)
class DampingBand:
    """Scale probabilities by ``factor`` once strength reaches ``minimum``, never below ``floor``."""

    minimum: int
    factor: float
    floor: int


HIGH_STRENGTH_BAND = DampingBand(minimum=70, factor=0.4, floor=20)
MODERATE_STRENGTH_BAND = DampingBand(minimum=60, factor=0.6, floor=30)

# Applied on top of the general band when the matching directive is set.
TYPE_OVERRIDE_BANDS: Mapping[str, DampingBand] = {
    "PACE_BREACH_EXCLUSION": DampingBand(minimum=0, factor=0.5, floor=15),
    "DISCLOSURE_FAILURE_STAY": DampingBand(minimum=0, factor=0.6, floor=15),
}

# (minimum overall strength, level), checked top down.
STRENGTH_LEVELS: tuple[tuple[int, str], ...] = (
    (80, "VERY_STRONG"),
    (60, "STRONG"),
    (40, "MODERATE"),
    (20, "WEAK"),
)
FACTOR_WEIGHTS: Mapping[str, float] = {
    "identification": 0.25,
    "forensics": 0.25,
    "witnesses": 0.20,
    "pace": 0.10,
    "medical": 0.10,
    "disclosure": 0.10,
}
DISCLOSURE_STAY_DOWNGRADE_AT = 60
PACE_DOWNGRADE_AT = 50
PLEA_FOCUS_AT = 70
CONSERVATIVE_TONE_AT = 70
MODERATE_TONE_AT = 40

SEVERITY_WEIGHTS: Mapping[str, int] = {"CRITICAL": 4, "HIGH": 3, "MEDIUM": 2, "LOW": 1}
CRITICAL_PROBABILITY_BAR = 70
CRITICAL_ANGLE_LIMIT = 5
SUPPORTING_PROBABILITY_BAR = 60
SUPPORTING_ANGLE_LIMIT = 3
COMBINATION_DAMPENING = 0.3
PROBABILITY_CAP = 95
NEUTRAL_PROBABILITY = 50


def threshold_table() -> dict[str, object]:
    """Serialisable view of every canonical cut point."""

    return {
        "text_gate": {
            "min_raw_chars": TEXT_GATE_THRESHOLDS.min_raw_chars,
            "scanned_max_json_chars": TEXT_GATE_THRESHOLDS.scanned_max_json_chars,
        },
        "probability_visibility": {
            area: {
                "min_completeness": threshold.min_completeness,
                "max_critical_missing": threshold.max_critical_missing,
            }
            for area, threshold in VISIBILITY_THRESHOLDS.items()
        },
        "calibration": {
            "high": {
                "minimum": HIGH_STRENGTH_BAND.minimum,
                "factor": HIGH_STRENGTH_BAND.factor,
                "floor": HIGH_STRENGTH_BAND.floor,
            },
            "moderate": {
                "minimum": MODERATE_STRENGTH_BAND.minimum,
                "factor": MODERATE_STRENGTH_BAND.factor,
                "floor": MODERATE_STRENGTH_BAND.floor,
            },
            "type_overrides": {
                angle_type: {"factor": band.factor, "floor": band.floor}
                for angle_type, band in TYPE_OVERRIDE_BANDS.items()
            },
        },
        "strength_levels": [{"minimum": minimum, "level": level} for minimum, level in STRENGTH_LEVELS],
        "ranking": {
            "critical_probability_bar": CRITICAL_PROBABILITY_BAR,
            "critical_angle_limit": CRITICAL_ANGLE_LIMIT,
            "supporting_probability_bar": SUPPORTING_PROBABILITY_BAR,
            "supporting_angle_limit": SUPPORTING_ANGLE_LIMIT,
            "combination_dampening": COMBINATION_DAMPENING,
            "probability_cap": PROBABILITY_CAP,
            "neutral_probability": NEUTRAL_PROBABILITY,
        },
    }


__all__ = [
    "ALLOWED_ORIGINS",
    "CACHE_ENABLED",
    "DEFAULT_DATABASE_URL",
    "DampingBand",
    "TEMPLATES_PATH",
    "TEXT_GATE_THRESHOLDS",
    "TextGateThresholds",
    "VISIBILITY_THRESHOLDS",
    "VisibilityThreshold",
    "threshold_table",
]
