"""Evidence-category detection over the combined document corpus."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Mapping, Sequence

from .rounding import round_half_up
from .schemas import BundleCompleteness, CaseDocument

logger = logging.getLogger(__name__)


def serialize_facts(document: CaseDocument) -> str:
    if not document.extracted_facts:
        return ""
    return json.dumps(document.extracted_facts, sort_keys=True, ensure_ascii=False, default=str)


def build_corpus(documents: Sequence[CaseDocument]) -> str:
    """Raw text and serialised facts of every document, as one searchable string."""

    parts: list[str] = []
    for document in documents:
        if document.raw_text:
            parts.append(document.raw_text)
        facts = serialize_facts(document)
        if facts:
            parts.append(facts)
    return "\n".join(parts)


def _rx(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


@dataclass(frozen=True)
class EvidenceCategory:
    key: str
    label: str
    patterns: tuple[re.Pattern[str], ...]
    critical: bool = False
    weight: int = 5
    requires: str | None = None
    alternate: re.Pattern[str] | None = None
    alternate_min_hits: int = 0

    def detect(self, corpus: str) -> bool:
        if all(pattern.search(corpus) for pattern in self.patterns):
            return True
        if self.alternate is not None and self.alternate_min_hits:
            return len(self.alternate.findall(corpus)) >= self.alternate_min_hits
        return False


FIRST_PERSON_NARRATIVE = _rx(
    r"\bI\s+(?:was|saw|witnessed|observed|noticed|heard|became|noted|recalled|remember(?:ed)?"
    r"|told|said|stated|informed|reported)\b"
)

CRIMINAL_CATEGORIES: tuple[EvidenceCategory, ...] = (
    EvidenceCategory(
        "charge_sheet",
        "Charge sheet / indictment",
        (_rx(r"\b(charge\s*sheet|indictment|charged\s+with|count\s*\d+)\b"),),
        critical=True,
        weight=12,
    ),
    EvidenceCategory("case_summary", "MG5 case summary", (_rx(r"\b(mg\s*5|case\s*summary)\b"),), weight=10),
    EvidenceCategory(
        "witness_statements",
        "Witness statements",
        (_rx(r"\b(witness\s*statement|statement\s+of\s+witness|mg\s*11|statement\s+of\s+truth|witness\s+details)\b"),),
        weight=12,
        alternate=FIRST_PERSON_NARRATIVE,
        alternate_min_hits=2,
    ),
    EvidenceCategory(
        "cctv",
        "CCTV footage",
        (_rx(r"\b(cctv|closed\s*circuit|dvr|camera\s*footage|video\s*footage)\b"),),
        weight=8,
    ),
    EvidenceCategory(
        "cctv_continuity",
        "CCTV continuity / native export",
        (_rx(r"\b(continuity|native\s*(export|download)|export\s*log|download\s*log)\b"),),
        weight=4,
        requires="cctv",
    ),
    EvidenceCategory("bwv", "Body-worn video", (_rx(r"\b(bwv|body\s*-?\s*worn|worn\s*video)\b"),), weight=4),
    EvidenceCategory(
        "call_records",
        "999 call / CAD log",
        (_rx(r"\b(999|cad\s*(log|record)?|call\s*log|incident\s*log|control\s*room)\b"),),
        weight=4,
    ),
    EvidenceCategory(
        "custody_record",
        "Custody record",
        (_rx(r"\b(custody\s*(record|log|sheet)|detention\s*log)\b"),),
        critical=True,
        weight=10,
    ),
    EvidenceCategory(
        "interview",
        "Interview recording / transcript",
        (
            _rx(r"\b(interview|record\s*of\s*(taped\s*)?interview|roti?)\b"),
            _rx(r"\b(transcript|typed\s*interview|audio|recording|recorded|video|dvd|mp3|wav)\b"),
        ),
        critical=True,
        weight=10,
    ),
    EvidenceCategory(
        "legal_advice_log",
        "Legal advice log",
        (_rx(r"\b(legal\s*advice|duty\s*solicitor|solicitor\s*(requested|present|consulted|attended)|dscc)\b"),),
        critical=True,
        weight=6,
    ),
    EvidenceCategory(
        "caution_record",
        "Caution record",
        (_rx(r"\b(caution(ed)?|you\s+do\s+not\s+have\s+to\s+say\s+anything)\b"),),
        critical=True,
        weight=6,
    ),
    EvidenceCategory(
        "identification_evidence",
        "Identification evidence",
        (_rx(r"\b(viper|identification\s*(procedure|parade|evidence)|id\s*parade|recogni[sz]ed|facial\s*recognition)\b"),),
        critical=True,
        weight=8,
    ),
    EvidenceCategory(
        "medical",
        "Medical evidence",
        (_rx(r"\b(medical|injur(y|ies)|hospital|a&e|ambulance|paramedic)\b"),),
        weight=5,
    ),
    EvidenceCategory(
        "disclosure_schedule",
        "Disclosure schedule (MG6)",
        (_rx(r"\b(mg\s*6[a-e]?|disclosure\s*schedule|unused\s*material)\b"),),
        critical=True,
        weight=10,
    ),
)

HOUSING_CATEGORIES: tuple[EvidenceCategory, ...] = (
    EvidenceCategory(
        "tenancy_agreement",
        "Tenancy agreement",
        (_rx(r"\b(tenancy\s*agreement|assured\s*(shorthold\s*)?tenancy|secure\s*tenancy|lease)\b"),),
        critical=True,
        weight=12,
    ),
    EvidenceCategory(
        "complaint_records",
        "Disrepair complaints",
        (_rx(r"\b(complain(t|ed|ts)|reported\s+(the\s+)?(damp|mould|leak|disrepair))\b"),),
        critical=True,
        weight=15,
    ),
    EvidenceCategory(
        "repair_records",
        "Repair / works records",
        (_rx(r"\b(repair\s*(log|record|history|order)|works?\s*order|job\s*(sheet|ticket))\b"),),
        weight=10,
    ),
    EvidenceCategory(
        "inspection_report",
        "Inspection / survey report",
        (_rx(r"\b(surveyor|survey\s*report|inspection\s*report|inspected|schedule\s*of\s*dilapidations)\b"),),
        critical=True,
        weight=15,
    ),
    EvidenceCategory("photographs", "Photographs", (_rx(r"\b(photo(graph)?s?|images?)\b"),), weight=8),
    EvidenceCategory(
        "medical_evidence",
        "Medical evidence",
        (_rx(r"\b(gp\s*(letter|records)|medical|asthma|respiratory|hospital)\b"),),
        weight=8,
    ),
    EvidenceCategory(
        "pre_action_letter",
        "Pre-action letter of claim",
        (_rx(r"\b(letter\s*of\s*claim|pre[-\s]*action\s*(protocol|letter)|early\s*notification\s*letter)\b"),),
        critical=True,
        weight=12,
    ),
    EvidenceCategory(
        "landlord_response",
        "Landlord response",
        (_rx(r"\b(landlord('s)?\s*(response|reply)|letter\s*of\s*response|response\s*to\s*(the\s*)?letter)\b"),),
        weight=10,
    ),
    EvidenceCategory(
        "hhsrs_assessment",
        "HHSRS assessment",
        (_rx(r"\b(hhsrs|housing\s*health\s*and\s*safety\s*rating|category\s*1\s*hazard)\b"),),
        weight=10,
    ),
)

PERSONAL_INJURY_CATEGORIES: tuple[EvidenceCategory, ...] = (
    EvidenceCategory(
        "claim_notification",
        "Claim notification form",
        (_rx(r"\b(cnf|claim\s*notification\s*form|letter\s*of\s*claim)\b"),),
        critical=True,
        weight=12,
    ),
    EvidenceCategory(
        "medical_report",
        "Medical report",
        (_rx(r"\b(medical\s*(report|expert)|medico[-\s]*legal|prognosis)\b"),),
        critical=True,
        weight=18,
    ),
    EvidenceCategory(
        "accident_report",
        "Accident report",
        (_rx(r"\b(accident\s*(report|book|form)|incident\s*report|police\s*report)\b"),),
        critical=True,
        weight=14,
    ),
    EvidenceCategory(
        "witness_statements",
        "Witness statements",
        (_rx(r"\b(witness\s*statement|statement\s+of\s+truth)\b"),),
        weight=10,
        alternate=FIRST_PERSON_NARRATIVE,
        alternate_min_hits=2,
    ),
    EvidenceCategory("photographs", "Photographs", (_rx(r"\b(photo(graph)?s?|dashcam|images?)\b"),), weight=6),
    EvidenceCategory(
        "loss_schedule",
        "Schedule of loss",
        (_rx(r"\b(schedule\s*of\s*loss|special\s*damages|loss\s*of\s*earnings)\b"),),
        critical=True,
        weight=14,
    ),
    EvidenceCategory(
        "liability_response",
        "Liability response",
        (_rx(r"\b(liability\s*(admitted|denied|response|decision)|letter\s*of\s*response|defen[cs]e)\b"),),
        weight=12,
    ),
    EvidenceCategory(
        "expert_reports",
        "Other expert reports",
        (_rx(r"\b(engineer|orthopaedic|psychiatr|psycholog|care\s*expert|expert\s*report)\w*"),),
        weight=8,
    ),
)

FAMILY_CATEGORIES: tuple[EvidenceCategory, ...] = (
    EvidenceCategory(
        "application",
        "Application form",
        (_rx(r"\b(c100|form\s*a|c2\s*application|application\s*(for|form))\b"),),
        critical=True,
        weight=14,
    ),
    EvidenceCategory(
        "court_orders",
        "Court orders",
        (_rx(r"\b(court\s*order|order\s*(dated|made)|consent\s*order|child\s*arrangements\s*order)\b"),),
        critical=True,
        weight=14,
    ),
    EvidenceCategory(
        "financial_disclosure",
        "Financial disclosure (Form E)",
        (_rx(r"\b(form\s*e|financial\s*(disclosure|statement)|bank\s*statements?)\b"),),
        critical=True,
        weight=14,
    ),
    EvidenceCategory(
        "statements",
        "Party statements",
        (_rx(r"\b(position\s*statement|witness\s*statement|statement\s+of\s+truth)\b"),),
        weight=10,
        alternate=FIRST_PERSON_NARRATIVE,
        alternate_min_hits=2,
    ),
    EvidenceCategory(
        "safeguarding",
        "Safeguarding letter / Cafcass report",
        (_rx(r"\b(cafcass|safeguarding\s*(letter|report)|section\s*7\s*report)\b"),),
        critical=True,
        weight=14,
    ),
    EvidenceCategory(
        "correspondence",
        "Correspondence",
        (_rx(r"\b(correspondence|e-?mails?|letters?\s*(from|to))\b"),),
        weight=6,
    ),
    EvidenceCategory(
        "non_compliance_evidence",
        "Evidence of non-compliance",
        (_rx(r"\b(breach(ed)?\s*(of\s*)?(the\s*)?order|failed\s*to\s*comply|non[-\s]*compliance|missed\s*contact)\b"),),
        weight=10,
    ),
)

CATEGORY_TABLES: Mapping[str, tuple[EvidenceCategory, ...]] = {
    "criminal": CRIMINAL_CATEGORIES,
    "housing": HOUSING_CATEGORIES,
    "personal_injury": PERSONAL_INJURY_CATEGORIES,
    "family": FAMILY_CATEGORIES,
}

FULL_TIER_AT = 70
PARTIAL_TIER_AT = 35


class BundleCompletenessAssessor:
    def __init__(self, tables: Mapping[str, Sequence[EvidenceCategory]] | None = None) -> None:
        self._tables = tables or CATEGORY_TABLES

    def categories(self, practice_area: str) -> Sequence[EvidenceCategory]:
        try:
            return self._tables[practice_area]
        except KeyError as exc:
            raise ValueError(f"No evidence categories defined for practice area {practice_area!r}") from exc

    def assess(self, practice_area: str, corpus: str) -> BundleCompleteness:
        categories = self.categories(practice_area)
        found: dict[str, bool] = {}
        for category in categories:
            present = category.detect(corpus)
            if present and category.requires is not None:
                present = found.get(category.requires, False)
            found[category.key] = present

        present_keys = [category.key for category in categories if found[category.key]]
        missing_keys = [category.key for category in categories if not found[category.key]]
        critical_missing = [category.key for category in categories if category.critical and not found[category.key]]

        total = len(categories)
        completeness = round_half_up(len(present_keys) / total * 100) if total else 0
        total_weight = sum(category.weight for category in categories)
        present_weight = sum(category.weight for category in categories if found[category.key])
        weighted_score = round_half_up(present_weight / total_weight * 100) if total_weight else 0
        if weighted_score >= FULL_TIER_AT:
            tier = "full"
        elif weighted_score >= PARTIAL_TIER_AT:
            tier = "partial"
        else:
            tier = "thin"

        logger.debug(
            "Bundle for %s: %s%% complete, %s critical missing",
            practice_area,
            completeness,
            len(critical_missing),
        )
        return BundleCompleteness(
            practice_area=practice_area,
            completeness=max(0, min(100, completeness)),
            critical_missing_count=len(critical_missing),
            present=present_keys,
            missing=missing_keys,
            critical_missing=critical_missing,
            weighted_score=max(0, min(100, weighted_score)),
            capability_tier=tier,
        )


__all__ = [
    "BundleCompletenessAssessor",
    "CATEGORY_TABLES",
    "EvidenceCategory",
    "build_corpus",
    "serialize_facts",
]
