"""Damp raw angle probabilities against the strength of the opposing case."""
from __future__ import annotations

import logging
import re
from typing import Mapping, Sequence

from .config import (
    HIGH_STRENGTH_BAND,
    MODERATE_STRENGTH_BAND,
    NEUTRAL_PROBABILITY,
    PROBABILITY_CAP,
    SEVERITY_WEIGHTS,
    TYPE_OVERRIDE_BANDS,
    DampingBand,
)
from .rounding import clamp_percent, round_half_up
from .schemas import DefenseAngle, EvidenceStrengthResult

logger = logging.getLogger(__name__)

STAY_CAVEAT = "Consider stay/abuse of process only if disclosure failures persist after a clear chase trail"

_STAY = re.compile(r"\bstay\b", re.IGNORECASE)
_ABUSE_OF_PROCESS = re.compile(r"\babuse of process\b", re.IGNORECASE)

_FRAMING_RULES: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), replacement)
    for pattern, replacement in (
        (
            r"\b(It is|This is|The case is|The evidence is|The facts are)\s+"
            r"(clear|obvious|certain|definite|proven|established|confirmed)\b",
            "Based on the current documents, this suggests",
        ),
        (
            r"\b(We|The evidence|The facts|The case)\s+(proves|shows|demonstrates|establishes|confirms)\b",
            "Based on the current documents, this suggests",
        ),
        (
            r"\b(There is|There are)\s+(clear|definite|conclusive|strong)\s+(evidence|proof|indication)\b",
            "Based on the current documents, there appears to be",
        ),
        (
            r"\b(It|This|The evidence|The case)\s+(clearly|obviously|definitely|certainly|undoubtedly)\b",
            "Based on the current documents, this",
        ),
        (
            r"\b(The|This)\s+(risk|danger|threat|issue|problem)\s+(is|will be|must be)\s+"
            r"(critical|severe|high|significant)\b",
            "Based on the current documents, this appears to be",
        ),
    )
)
_QUALIFIED = re.compile(
    r"\b(Based on|According to|In light of|Given the)\s+(the\s+)?(current|available|provided)\s+"
    r"(documents|evidence|information|materials)\b",
    re.IGNORECASE,
)


def damp(probability: int, band: DampingBand) -> int:
    """Scale down by the band factor without dropping under its floor or rising."""

    return min(probability, max(band.floor, round_half_up(probability * band.factor)))


def frame_with_confidence(text: str) -> str:
    """Replace overconfident phrasing with document-qualified wording."""

    if not text.strip():
        return text
    framed = text
    for pattern, replacement in _FRAMING_RULES:
        framed = pattern.sub(replacement, framed)
    if not _QUALIFIED.search(framed) and len(framed) > 50:
        framed = f"Based on the current documents, {framed[0].lower()}{framed[1:]}"
    return framed


def soften_stay_argument(argument: str) -> str:
    if STAY_CAVEAT.lower() in argument.lower():
        return argument
    softened = _ABUSE_OF_PROCESS.sub("procedural leverage", argument)
    return _STAY.sub("disclosure directions", softened)


def _general_band(overall_strength: int) -> DampingBand | None:
    for band in (HIGH_STRENGTH_BAND, MODERATE_STRENGTH_BAND):
        if overall_strength >= band.minimum:
            return band
    return None


class CalibrationEngine:
    def __init__(self, overrides: Mapping[str, DampingBand] | None = None) -> None:
        self._overrides = overrides or TYPE_OVERRIDE_BANDS

    def calibrate(self, angles: Sequence[DefenseAngle], strength: EvidenceStrengthResult) -> list[DefenseAngle]:
        band = _general_band(strength.overall_strength)
        directives = strength.calibration
        conservative = directives.language_tone == "CONSERVATIVE"
        calibrated: list[DefenseAngle] = []
        for angle in angles:
            update: dict[str, object] = {}
            probability = angle.win_probability
            if probability is not None:
                original = probability
                if band is not None:
                    probability = damp(probability, band)
                override = self._overrides.get(angle.angle_type)
                if override is not None and directives.should_downgrade.get(angle.angle_type):
                    probability = damp(probability, override)
                probability = max(0, min(original, probability))
                if probability != original:
                    logger.debug("Calibrated %s from %s to %s", angle.id, original, probability)
                update["win_probability"] = probability
            if angle.angle_type == "DISCLOSURE_FAILURE_STAY" and directives.should_downgrade_disclosure_stay:
                update["specific_arguments"] = [soften_stay_argument(text) for text in angle.specific_arguments]
            if conservative:
                update["why_this_matters"] = frame_with_confidence(angle.why_this_matters)
            calibrated.append(angle.model_copy(update=update))
        return calibrated


def overall_from_angles(angles: Sequence[DefenseAngle]) -> int:
    """Severity-weighted mean of the given angles, capped; neutral when empty."""

    scored = [angle for angle in angles if angle.win_probability is not None]
    if not scored:
        return NEUTRAL_PROBABILITY
    total_weight = sum(SEVERITY_WEIGHTS[angle.severity] for angle in scored)
    weighted = sum(angle.win_probability * SEVERITY_WEIGHTS[angle.severity] for angle in scored)
    return clamp_percent(weighted / total_weight, PROBABILITY_CAP)


__all__ = [
    "CalibrationEngine",
    "STAY_CAVEAT",
    "damp",
    "frame_with_confidence",
    "overall_from_angles",
    "soften_stay_argument",
]
