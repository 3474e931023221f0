"""Normalised evidence items and disclosure gaps for a matter."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from .schemas import CaseContext, CriminalFacts, DisclosureGap, EvidenceItem

logger = logging.getLogger(__name__)

_GAP_SEVERITY_BY_TYPE = {
    "CCTV": "HIGH",
    "ID": "HIGH",
    "Forensic": "MEDIUM",
    "Medical": "MEDIUM",
}


def map_evidence_type(value: str) -> str:
    normalized = value.strip().lower()
    if "cctv" in normalized:
        return "CCTV"
    if "bwv" in normalized or "body worn" in normalized or "body-worn" in normalized:
        return "BWV"
    if "mg11" in normalized and "police" in normalized:
        return "MG11_police"
    if "mg11" in normalized or "witness" in normalized:
        return "MG11_witness"
    if "forensic" in normalized or "dna" in normalized or "fingerprint" in normalized:
        return "Forensic"
    if "medical" in normalized:
        return "Medical"
    if "identification" in normalized or "viper" in normalized or normalized == "id":
        return "ID"
    if "pace" in normalized or "custody" in normalized or "interview" in normalized:
        return "PACE"
    if "ambulance" in normalized:
        return "Ambulance"
    if "999" in normalized:
        return "999"
    return "Other"


def map_disclosure_status(value: str) -> str:
    normalized = value.strip().lower()
    if "partial" in normalized:
        return "partially_disclosed"
    if "not" in normalized or "outstanding" in normalized or "missing" in normalized:
        return "not_disclosed"
    if "disclosed" in normalized or "served" in normalized:
        return "disclosed"
    return "unknown"


@dataclass
class EvidenceGraph:
    items: list[EvidenceItem] = field(default_factory=list)
    disclosure_gaps: list[DisclosureGap] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def disclosure_incomplete(self) -> bool:
        return bool(self.disclosure_gaps)

    def items_of_type(self, *types: str) -> list[EvidenceItem]:
        return [item for item in self.items if item.type in types]


def _document_items(context: CaseContext, warnings: list[str]) -> Iterable[EvidenceItem]:
    for doc_index, document in enumerate(context.documents):
        entries: Any = document.extracted_facts.get("evidence")
        if entries is None:
            continue
        if not isinstance(entries, list):
            warnings.append(f"Ignored evidence list in document {document.name or doc_index}: not a list")
            continue
        for entry_index, entry in enumerate(entries):
            if not isinstance(entry, dict) or not str(entry.get("description") or entry.get("type") or "").strip():
                warnings.append(
                    f"Ignored evidence entry {entry_index} in document {document.name or doc_index}: no description"
                )
                continue
            yield EvidenceItem(
                id=str(entry.get("id") or f"doc{doc_index}-item{entry_index}"),
                type=map_evidence_type(str(entry.get("type", ""))),
                description=str(entry.get("description") or entry.get("type")),
                disclosure_status=map_disclosure_status(str(entry.get("disclosure_status", entry.get("status", "")))),
                source=str(entry.get("source") or document.name or "other"),
            )


def build_evidence_graph(context: CaseContext) -> EvidenceGraph:
    graph = EvidenceGraph()
    typed_items: list[EvidenceItem] = []
    explicit_gaps: list[DisclosureGap] = []
    if isinstance(context.facts, CriminalFacts):
        typed_items = list(context.facts.evidence)
        explicit_gaps = list(context.facts.disclosure_gaps)

    seen: set[tuple[str, str]] = set()
    for item in [*typed_items, *_document_items(context, graph.warnings)]:
        key = (item.type, item.description.strip().lower())
        if key in seen:
            continue
        seen.add(key)
        graph.items.append(item)

    gap_keys: set[tuple[str, str]] = set()
    for gap in explicit_gaps:
        gap_keys.add((gap.category, gap.item.strip().lower()))
        graph.disclosure_gaps.append(gap)
    for item in graph.items:
        if item.disclosure_status not in {"not_disclosed", "partially_disclosed"}:
            continue
        key = (item.type, item.description.strip().lower())
        if key in gap_keys:
            continue
        gap_keys.add(key)
        graph.disclosure_gaps.append(
            DisclosureGap(
                category=item.type,
                item=item.description,
                severity=_GAP_SEVERITY_BY_TYPE.get(item.type, "LOW"),
                requested_items=[f"Full copy of {item.description}"],
                source="inferred",
            )
        )
    logger.debug(
        "Evidence graph for %s: %s items, %s disclosure gaps",
        context.case_id,
        len(graph.items),
        len(graph.disclosure_gaps),
    )
    return graph


__all__ = ["EvidenceGraph", "build_evidence_graph", "map_disclosure_status", "map_evidence_type"]
