"""Scoring of the opposing side's evidence, with calibration directives."""
from __future__ import annotations

import logging
import re

from .config import (
    CONSERVATIVE_TONE_AT,
    DISCLOSURE_STAY_DOWNGRADE_AT,
    FACTOR_WEIGHTS,
    MODERATE_TONE_AT,
    PACE_DOWNGRADE_AT,
    PLEA_FOCUS_AT,
    STRENGTH_LEVELS,
)
from .graph import EvidenceGraph
from .rounding import clamp_percent
from .schemas import (
    CalibrationDirectives,
    CaseContext,
    CriminalFacts,
    EvidenceFactor,
    EvidenceStrengthResult,
)

logger = logging.getLogger(__name__)


def _rx(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


CCTV = _rx(r"\b(cctv|camera\s*footage|video\s*footage|captured\s+on\s+camera)\b")
EYEWITNESS = _rx(r"\b(eye\s*-?witness(es)?|witness(es)?\s+(saw|identified|observed))\b")
FACIAL_RECOGNITION = _rx(r"\b(facial\s*recognition|face\s*match)\b")
FORMAL_PROCEDURE = _rx(r"\b(viper|identification\s*(procedure|parade)|id\s*parade|code\s*d)\b")

WEAPON = _rx(r"\b(weapon|knife|blade|firearm|bottle|bat)\b")
FINGERPRINTS = _rx(r"\b(fingerprints?|finger\s*marks?)\b")
DNA = _rx(r"\bdna\b")
CHAIN_OF_CUSTODY = _rx(r"\b(chain\s*of\s*custody|exhibit\s*continuity|continuity\s*statement)\b")

WITNESS_MENTION = _rx(r"\b(witness|complainant|eyewitness)\b")
COMPLAINANT = _rx(r"\b(complainant|victim)\b")
INDEPENDENT = _rx(r"\b(independent\s*witness|bystander|passer-?by|member\s*of\s*(the\s*)?public)\b")

SOLICITOR_PRESENT = _rx(r"\b(solicitor\s*(was\s*)?(present|attended)|legal\s*advice\s*(was\s*)?(given|provided|received))\b")
INTERVIEW_RECORDED = _rx(r"\b(interview\s*(was\s*)?recorded|audio\s*recorded|recorded\s*interview|roti)\b")
RIGHTS_GIVEN = _rx(r"\b(rights\s*(were\s*)?(read|given|explained)|cautioned\s*(at|on|before)|caution\s*(was\s*)?given)\b")
PACE_BREACH = _rx(
    r"\b(breach\s*of\s*pace|pace\s*breach|not\s*cautioned|no\s*caution|without\s*(a\s*)?caution"
    r"|denied\s*(a\s*|access\s*to\s*(a\s*)?)?solicitor|solicitor\s*(was\s*)?refused|unrecorded\s*interview)\b"
)

MEDICAL_EVIDENCE = _rx(r"\b(medical\s*(evidence|report|records)|injur(y|ies)|hospital|a&e|paramedic)\b")
MEDICAL_CONSISTENT = _rx(r"\b(consistent\s*with|compatible\s*with)\b")

DISCLOSURE_GAP = _rx(r"\b(disclosure\s*gap|not\s*(yet\s*)?(been\s*)?disclosed|outstanding\s*disclosure|awaiting\s*disclosure)\b")
GAP_CRITICAL = _rx(r"\b(critical|foundational|core\s*evidence|essential)\b")
GAP_SUPPLEMENTARY = _rx(r"\b(supplementary|adjunct|peripheral)\b")

DISCLOSURE_SCORES = {"NONE": 100, "MINOR": 90, "MODERATE": 70, "CRITICAL": 40}

STRONG_CASE_WARNINGS = (
    "Strong opposing case - focus on procedural leverage, not factual collapse",
    "Realistic outcomes: charge reduction, plea strategy, sentence mitigation",
)
PACE_COMPLIANT_WARNING = "PACE appears compliant - downgrade PACE breach angles"
MINOR_DISCLOSURE_WARNING = "Disclosure gaps are supplementary, not foundational - stay unlikely"

REALISTIC_OUTCOMES = (
    (80, "Strong opposing case - focus on charge reduction, plea strategy, sentence mitigation"),
    (60, "Moderate-strong opposing case - procedural leverage and charge reduction opportunities"),
    (40, "Moderate opposing case - viable defence strategies available"),
)
WEAK_CASE_OUTCOME = "Weak opposing case - assertive defence strategies viable"


def _clamp(value: float) -> int:
    return clamp_percent(value)


def strength_level(overall_strength: int) -> str:
    for minimum, level in STRENGTH_LEVELS:
        if overall_strength >= minimum:
            return level
    return "VERY_WEAK"


class EvidenceStrengthAnalyzer:
    def analyze(self, context: CaseContext, corpus: str, graph: EvidenceGraph) -> EvidenceStrengthResult:
        factors = {
            "identification": self._identification(corpus, graph),
            "forensics": self._forensics(corpus, graph),
            "witnesses": self._witnesses(context, corpus),
            "pace": self._pace(context, corpus),
            "medical": self._medical(corpus, graph),
            "disclosure": self._disclosure(corpus, graph),
        }
        overall = _clamp(sum(factors[name].score * weight for name, weight in FACTOR_WEIGHTS.items()))
        calibration = self._directives(overall, factors)
        warnings = self._warnings(overall, factors)
        logger.debug("Evidence strength for %s: %s", context.case_id, overall)
        return EvidenceStrengthResult(
            overall_strength=overall,
            level=strength_level(overall),
            factors=factors,
            calibration=calibration,
            warnings=warnings,
        )

    def _identification(self, corpus: str, graph: EvidenceGraph) -> EvidenceFactor:
        has_cctv = bool(CCTV.search(corpus)) or bool(graph.items_of_type("CCTV"))
        has_witnesses = bool(EYEWITNESS.search(corpus))
        has_facial = bool(FACIAL_RECOGNITION.search(corpus))
        has_procedure = bool(FORMAL_PROCEDURE.search(corpus)) or bool(graph.items_of_type("ID"))
        score = 30 * has_cctv + 25 * has_witnesses + 25 * has_facial + 20 * has_procedure
        if sum((has_cctv, has_witnesses, has_facial, has_procedure)) >= 3:
            score += 10
        return EvidenceFactor(
            name="identification",
            score=_clamp(score),
            indicators={
                "has_cctv": has_cctv,
                "has_witnesses": has_witnesses,
                "has_facial_recognition": has_facial,
                "has_formal_procedure": has_procedure,
            },
        )

    def _forensics(self, corpus: str, graph: EvidenceGraph) -> EvidenceFactor:
        exhibits = " ".join(item.description for item in graph.items_of_type("Forensic"))
        has_weapon = bool(WEAPON.search(corpus))
        has_fingerprints = bool(FINGERPRINTS.search(corpus) or FINGERPRINTS.search(exhibits))
        has_dna = bool(DNA.search(corpus) or DNA.search(exhibits))
        has_chain = bool(CHAIN_OF_CUSTODY.search(corpus))
        score = 30 * has_weapon + 30 * has_fingerprints + 20 * has_dna + 20 * has_chain
        return EvidenceFactor(
            name="forensics",
            score=_clamp(score),
            indicators={
                "has_weapon": has_weapon,
                "has_fingerprints": has_fingerprints,
                "has_dna": has_dna,
                "has_chain_of_custody": has_chain,
            },
        )

    def _witnesses(self, context: CaseContext, corpus: str) -> EvidenceFactor:
        count = min(5, len(WITNESS_MENTION.findall(corpus)))
        if isinstance(context.facts, CriminalFacts):
            count = max(count, min(5, len(context.facts.witness_statements)))
        has_complainant = bool(COMPLAINANT.search(corpus))
        has_independent = bool(INDEPENDENT.search(corpus))
        score = 30 * has_complainant + 30 * has_independent
        if count >= 2:
            score += 20
        if count >= 3:
            score += 10
        return EvidenceFactor(
            name="witnesses",
            score=_clamp(score),
            indicators={
                "count": count,
                "has_complainant": has_complainant,
                "has_independent": has_independent,
                "consistency": "MEDIUM" if count >= 2 else "UNKNOWN",
            },
        )

    def _pace(self, context: CaseContext, corpus: str) -> EvidenceFactor:
        has_solicitor = bool(SOLICITOR_PRESENT.search(corpus))
        is_recorded = bool(INTERVIEW_RECORDED.search(corpus))
        has_rights = bool(RIGHTS_GIVEN.search(corpus))
        has_breaches = bool(PACE_BREACH.search(corpus))
        if isinstance(context.facts, CriminalFacts):
            pace = context.facts.pace
            if pace.solicitor_present is not None:
                has_solicitor = pace.solicitor_present
            elif pace.right_to_solicitor is False:
                has_solicitor = False
            if pace.interview_recorded is not None:
                is_recorded = pace.interview_recorded
            rights_flags = [flag for flag in (pace.caution_given, pace.rights_explained) if flag is not None]
            if rights_flags:
                has_rights = all(rights_flags)
            typed_breaches = [
                pace.caution_given is False,
                pace.caution_before_questioning is False,
                pace.right_to_solicitor is False,
                pace.interview_recorded is False,
            ]
            if any(typed_breaches):
                has_breaches = True
            elif any(
                flag is not None
                for flag in (pace.caution_given, pace.caution_before_questioning, pace.right_to_solicitor, pace.interview_recorded)
            ):
                has_breaches = False
        is_compliant = (has_solicitor and is_recorded and has_rights) or not has_breaches
        if is_compliant:
            score = 80
        elif has_breaches:
            score = 30
        else:
            score = 50
        return EvidenceFactor(
            name="pace",
            score=score,
            indicators={
                "is_compliant": is_compliant,
                "has_solicitor": has_solicitor,
                "is_recorded": is_recorded,
                "has_rights_given": has_rights,
                "has_breaches": has_breaches,
            },
        )

    def _medical(self, corpus: str, graph: EvidenceGraph) -> EvidenceFactor:
        has_evidence = bool(MEDICAL_EVIDENCE.search(corpus)) or bool(graph.items_of_type("Medical", "Ambulance"))
        is_consistent = has_evidence and bool(MEDICAL_CONSISTENT.search(corpus))
        score = 50 * has_evidence + 30 * is_consistent
        return EvidenceFactor(
            name="medical",
            score=_clamp(score),
            indicators={"has_evidence": has_evidence, "is_consistent": is_consistent},
        )

    def _disclosure(self, corpus: str, graph: EvidenceGraph) -> EvidenceFactor:
        is_supplementary = bool(GAP_SUPPLEMENTARY.search(corpus))
        if graph.disclosure_gaps:
            severities = {gap.severity for gap in graph.disclosure_gaps}
            if "CRITICAL" in severities:
                gap_severity = "CRITICAL"
            elif severities == {"LOW"}:
                gap_severity = "MINOR"
            else:
                gap_severity = "MODERATE"
        elif DISCLOSURE_GAP.search(corpus):
            if GAP_CRITICAL.search(corpus):
                gap_severity = "CRITICAL"
            elif is_supplementary:
                gap_severity = "MINOR"
            else:
                gap_severity = "MODERATE"
        else:
            gap_severity = "NONE"
        is_foundational = gap_severity == "CRITICAL" and not is_supplementary
        return EvidenceFactor(
            name="disclosure",
            score=DISCLOSURE_SCORES[gap_severity],
            indicators={
                "has_gaps": gap_severity != "NONE",
                "gap_count": len(graph.disclosure_gaps),
                "gap_severity": gap_severity,
                "is_foundational": is_foundational,
            },
        )

    def _directives(self, overall: int, factors: dict[str, EvidenceFactor]) -> CalibrationDirectives:
        gap_severity = factors["disclosure"].indicators["gap_severity"]
        pace_compliant = bool(factors["pace"].indicators["is_compliant"])
        downgrade_stay = overall >= DISCLOSURE_STAY_DOWNGRADE_AT and gap_severity != "CRITICAL"
        downgrade_pace = pace_compliant and overall >= PACE_DOWNGRADE_AT

        realistic_outcome = WEAK_CASE_OUTCOME
        for minimum, text in REALISTIC_OUTCOMES:
            if overall >= minimum:
                realistic_outcome = text
                break
        if overall >= CONSERVATIVE_TONE_AT:
            tone = "CONSERVATIVE"
        elif overall >= MODERATE_TONE_AT:
            tone = "MODERATE"
        else:
            tone = "AGGRESSIVE"

        return CalibrationDirectives(
            should_downgrade_disclosure_stay=downgrade_stay,
            should_downgrade_pace=downgrade_pace,
            should_focus_on_plea_mitigation=overall >= PLEA_FOCUS_AT,
            should_downgrade={
                "DISCLOSURE_FAILURE_STAY": downgrade_stay,
                "PACE_BREACH_EXCLUSION": downgrade_pace,
            },
            realistic_outcome=realistic_outcome,
            language_tone=tone,
        )

    def _warnings(self, overall: int, factors: dict[str, EvidenceFactor]) -> list[str]:
        warnings: list[str] = []
        if overall >= PLEA_FOCUS_AT:
            warnings.extend(STRONG_CASE_WARNINGS)
        if factors["pace"].indicators["is_compliant"] and overall >= PACE_DOWNGRADE_AT:
            warnings.append(PACE_COMPLIANT_WARNING)
        if factors["disclosure"].indicators["gap_severity"] == "MINOR" and overall >= DISCLOSURE_STAY_DOWNGRADE_AT:
            warnings.append(MINOR_DISCLOSURE_WARNING)
        return warnings


__all__ = ["EvidenceStrengthAnalyzer", "strength_level"]
