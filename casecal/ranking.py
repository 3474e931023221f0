from __future__ import annotations

import logging
from typing import Sequence

from .config import (
    COMBINATION_DAMPENING,
    CRITICAL_ANGLE_LIMIT,
    CRITICAL_PROBABILITY_BAR,
    PROBABILITY_CAP,
    SUPPORTING_ANGLE_LIMIT,
    SUPPORTING_PROBABILITY_BAR,
)
from .rounding import clamp_percent
from .schemas import DefenseAngle, OpponentVulnerabilities, RecommendedStrategy

logger = logging.getLogger(__name__)

SEVERITY_RANK = {"CRITICAL": 4, "HIGH": 3, "MEDIUM": 2, "LOW": 1}


def _probability(angle: DefenseAngle) -> int:
    return angle.win_probability if angle.win_probability is not None else -1


def rank_key(angle: DefenseAngle) -> tuple[int, int]:
    return (_probability(angle), SEVERITY_RANK[angle.severity])


def combined_probability(primary: DefenseAngle, supporting: Sequence[DefenseAngle]) -> int | None:
    """Primary chance plus a dampened share of the fallback chance from supporting angles."""

    if primary.win_probability is None:
        return None
    probability = float(primary.win_probability)
    scored = [angle.win_probability for angle in supporting if angle.win_probability is not None]
    if scored:
        average = sum(scored) / len(scored)
        probability += (100 - primary.win_probability) * (average / 100) * COMBINATION_DAMPENING
    return clamp_percent(probability, PROBABILITY_CAP)


def _percent(angle: DefenseAngle) -> str:
    return f"{angle.win_probability}%" if angle.win_probability is not None else "withheld"


class StrategyRanker:
    def rank(self, angles: Sequence[DefenseAngle]) -> list[DefenseAngle]:
        # sorted() is stable, so ties keep generation order
        return sorted(angles, key=rank_key, reverse=True)

    def critical_angles(self, ranked: Sequence[DefenseAngle]) -> list[DefenseAngle]:
        critical = [
            angle
            for angle in ranked
            if _probability(angle) >= CRITICAL_PROBABILITY_BAR or angle.severity == "CRITICAL"
        ]
        return critical[:CRITICAL_ANGLE_LIMIT]

    def recommend(self, ranked: Sequence[DefenseAngle], suppressed: bool = False) -> RecommendedStrategy:
        if not ranked:
            raise ValueError("Cannot recommend a strategy without angles")
        primary = ranked[0]
        supporting = [
            angle
            for angle in ranked[1:]
            if angle.angle_type in primary.combined_with or _probability(angle) >= SUPPORTING_PROBABILITY_BAR
        ][:SUPPORTING_ANGLE_LIMIT]
        combined = None if suppressed else combined_probability(primary, supporting)
        return RecommendedStrategy(
            primary_angle=primary,
            supporting_angles=supporting,
            combined_probability=combined,
            tactical_plan=self.tactical_plan(primary, supporting),
        )

    def tactical_plan(self, primary: DefenseAngle, supporting: Sequence[DefenseAngle]) -> list[str]:
        plan = [f"Primary Strategy: {primary.title}", f"Win Probability: {_percent(primary)}"]
        first_step = next((line for line in primary.how_to_exploit.splitlines() if line.strip()), "")
        if first_step:
            plan.append(first_step)
        plan.extend(f"Argument: {argument}" for argument in primary.specific_arguments[:2])
        plan.extend(f"Question: {question}" for question in primary.cross_examination_points[:2])
        if supporting:
            plan.append("Supporting Strategies:")
            plan.extend(f"- {angle.title} ({_percent(angle)} win chance)" for angle in supporting)
        return plan

    def vulnerabilities(self, ranked: Sequence[DefenseAngle]) -> OpponentVulnerabilities:
        critical: list[str] = []
        evidence_gaps: list[str] = []
        procedural: list[str] = []
        for angle in ranked:
            if angle.severity == "CRITICAL" and angle.opponent_weakness:
                critical.append(angle.opponent_weakness)
            if any(marker in angle.angle_type for marker in ("DISCLOSURE", "EVIDENCE", "EXPERT")):
                evidence_gaps.append(angle.title)
            if any(marker in angle.angle_type for marker in ("PROCEDURAL", "LATE", "DEFECTIVE", "NON_COMPLIANCE")):
                procedural.append(angle.title)
        return OpponentVulnerabilities(
            critical_weaknesses=list(dict.fromkeys(critical)),
            evidence_gaps=list(dict.fromkeys(evidence_gaps)),
            procedural_errors=list(dict.fromkeys(procedural)),
        )


__all__ = ["SEVERITY_RANK", "StrategyRanker", "combined_probability", "rank_key"]
