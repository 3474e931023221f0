from __future__ import annotations

import copy
import json
import logging
from datetime import date, datetime
from typing import Annotated, Any, List, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

PracticeArea = Literal["criminal", "housing", "personal_injury", "family"]
Severity = Literal["CRITICAL", "HIGH", "MEDIUM", "LOW"]
StrengthLevel = Literal["VERY_WEAK", "WEAK", "MODERATE", "STRONG", "VERY_STRONG"]
GateReason = Literal["OK", "NO_DOCS", "TEXT_THIN", "SUSPECTED_SCANNED"]

CriminalAngleType = Literal[
    "PACE_BREACH_EXCLUSION",
    "DISCLOSURE_FAILURE_STAY",
    "IDENTIFICATION_CHALLENGE",
    "ABUSE_OF_PROCESS",
    "HUMAN_RIGHTS_BREACH",
    "CONTRADICTION_EXPLOITATION",
    "CHAIN_OF_CUSTODY_BREAK",
    "NO_CASE_TO_ANSWER",
    "EVIDENCE_WEAKNESS_CHALLENGE",
    "SENTENCING_MITIGATION",
]
HousingAngleType = Literal[
    "AWAAB_LAW_BREACH",
    "S11_LTA_BREACH",
    "HHSRS_CATEGORY_1",
    "LATE_RESPONSE_ATTACK",
    "DEFECTIVE_DEFENSE_ATTACK",
    "MISSING_PRE_ACTION_ATTACK",
    "DISCLOSURE_FAILURE_ATTACK",
    "CONTRADICTION_EXPLOITATION",
    "AGGRAVATED_DAMAGES_CLAIM",
]
PersonalInjuryAngleType = Literal[
    "LATE_RESPONSE_ATTACK",
    "DEFECTIVE_DEFENSE_ATTACK",
    "MISSING_PRE_ACTION_ATTACK",
    "EXPERT_CONTRADICTION_ATTACK",
    "WEAK_EXPERT_ATTACK",
    "CAUSATION_GAP_ATTACK",
    "PART_36_PRESSURE",
    "FUTURE_LOSS_MAXIMIZATION",
]
FamilyAngleType = Literal[
    "NON_COMPLIANCE_ATTACK",
    "LATE_APPLICATION_ATTACK",
    "DEFECTIVE_APPLICATION_ATTACK",
    "NON_DISCLOSURE_ATTACK",
    "INCOMPLETE_DISCLOSURE_ATTACK",
    "CONTRADICTION_EXPLOITATION",
    "ENFORCEMENT_OPPORTUNITY",
    "WEAK_EVIDENCE_ATTACK",
]
AngleType = Union[CriminalAngleType, HousingAngleType, PersonalInjuryAngleType, FamilyAngleType]

EvidenceType = Literal[
    "CCTV",
    "BWV",
    "MG11_witness",
    "MG11_police",
    "Forensic",
    "Medical",
    "ID",
    "PACE",
    "Ambulance",
    "999",
    "Other",
]
DisclosureStatus = Literal["disclosed", "partially_disclosed", "not_disclosed", "unknown"]


def decode_extracted_facts(value: Any) -> tuple[dict[str, Any], str | None]:
    """Structured facts as a dict, plus an error message when the value was unusable."""

    if value is None:
        return {}, None
    if isinstance(value, dict):
        return value, None
    if isinstance(value, str):
        if not value.strip():
            return {}, None
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError as exc:
            return {}, f"invalid JSON ({exc.msg})"
        if isinstance(decoded, dict):
            return decoded, None
        return {}, "JSON value is not an object"
    return {}, f"expected an object, got {type(value).__name__}"


class CaseDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = ""
    raw_text: str = Field(default="", description="Text extracted upstream; may be empty for scans")
    extracted_facts: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name", "raw_text", mode="before")
    @classmethod
    def _none_as_empty_text(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("extracted_facts", mode="before")
    @classmethod
    def _decode_facts(cls, value: Any) -> Any:
        facts, error = decode_extracted_facts(value)
        return value if error else facts


class Charge(BaseModel):
    offence: str
    section: str | None = None
    statute: str | None = None


class PaceCompliance(BaseModel):
    """Custody record flags. ``None`` means the record is silent."""

    caution_given: bool | None = None
    caution_before_questioning: bool | None = None
    right_to_solicitor: bool | None = None
    solicitor_present: bool | None = None
    interview_recorded: bool | None = None
    rights_explained: bool | None = None


class EvidenceItem(BaseModel):
    id: str
    type: EvidenceType = "Other"
    description: str = ""
    disclosure_status: DisclosureStatus = "unknown"
    source: str = "prosecution_bundle"


class DisclosureGap(BaseModel):
    category: str
    item: str
    severity: Severity = "MEDIUM"
    requested_items: List[str] = Field(default_factory=list)
    source: Literal["explicit", "inferred"] = "explicit"


class WitnessStatement(BaseModel):
    witness: str
    content: str = ""
    identification_issues: List[Literal["distance", "lighting", "time", "brief"]] = Field(default_factory=list)


class CriminalFacts(BaseModel):
    practice_area: Literal["criminal"] = "criminal"
    charges: List[Charge] = Field(default_factory=list)
    pace: PaceCompliance = Field(default_factory=PaceCompliance)
    evidence: List[EvidenceItem] = Field(default_factory=list)
    disclosure_gaps: List[DisclosureGap] = Field(default_factory=list)
    witness_statements: List[WitnessStatement] = Field(default_factory=list)
    interview_stance: Literal["no_comment", "prepared_statement", "full_account", "unknown"] = "unknown"
    disclosure_requested_on: date | None = None


class Defect(BaseModel):
    defect_type: Literal["structural", "heating", "electrical", "leak", "damp", "mould", "other"] = "other"
    severity: Literal["minor", "moderate", "severe", "critical"] = "moderate"
    first_reported_date: date | None = None
    last_reported_date: date | None = None
    repair_attempted: bool = False
    repair_successful: bool | None = None
    repair_date: date | None = None


class HousingFacts(BaseModel):
    practice_area: Literal["housing"] = "housing"
    landlord_type: Literal["social", "private", "unknown"] = "unknown"
    first_complaint_date: date | None = None
    investigation_date: date | None = None
    work_start_date: date | None = None
    opponent_last_response_date: date | None = None
    has_pre_action_letter: bool | None = None
    defence_filed_date: date | None = None
    defence_deadline_date: date | None = None
    defects: List[Defect] = Field(default_factory=list)
    hhsrs_category_1_hazards: List[str] = Field(default_factory=list)


class MedicalReport(BaseModel):
    expert: str
    instructed_by: Literal["claimant", "defendant", "joint", "unknown"] = "unknown"
    causation_opinion: Literal["supports", "disputes", "silent"] = "silent"
    prognosis_months: int | None = Field(default=None, ge=0)
    reasoning_given: bool = True


class PersonalInjuryFacts(BaseModel):
    practice_area: Literal["personal_injury"] = "personal_injury"
    opponent_last_response_date: date | None = None
    cnf_sent_date: date | None = None
    cnf_response_deadline: date | None = None
    cnf_response_received: bool | None = None
    defence_filed_date: date | None = None
    defence_deadline_date: date | None = None
    liability_stance: Literal["admitted", "denied", "partial", "unknown"] = "unknown"
    medical_reports: List[MedicalReport] = Field(default_factory=list)
    part36_offer_date: date | None = None
    part36_offer_amount: float | None = Field(default=None, ge=0)
    loss_of_earnings_estimate: float | None = Field(default=None, ge=0)


class FamilyFacts(BaseModel):
    practice_area: Literal["family"] = "family"
    opponent_last_response_date: date | None = None
    has_application: bool = False
    application_filed_date: date | None = None
    application_deadline_date: date | None = None
    order_date: date | None = None
    order_compliance_deadline: date | None = None
    order_complied_with: bool | None = None
    disclosure_provided: bool | None = None
    disclosure_complete: bool | None = None
    disclosure_deadline: date | None = None
    contradictions: List[str] = Field(default_factory=list)


CaseFacts = Annotated[
    Union[CriminalFacts, HousingFacts, PersonalInjuryFacts, FamilyFacts],
    Field(discriminator="practice_area"),
]


class CaseContext(BaseModel):
    """Read-only snapshot of a matter handed over by the storage layer."""

    model_config = ConfigDict(frozen=True)

    case_id: str = Field(..., min_length=1)
    tenant_id: str = "default"
    documents: List[CaseDocument] = Field(default_factory=list)
    facts: CaseFacts
    as_of: date = Field(
        default_factory=date.today,
        description="Reference date for every days-overdue computation",
    )

    @property
    def practice_area(self) -> str:
        return self.facts.practice_area


_MAX_REPAIR_PASSES = 5


def _drop_fact(container: Any, path: tuple[Any, ...]) -> bool:
    """Remove the invalid leaf, or the whole list element holding it."""

    list_position = max((index for index, part in enumerate(path) if isinstance(part, int)), default=None)
    if list_position is not None:
        path = path[: list_position + 1]
    node = container
    for part in path[:-1]:
        try:
            node = node[part]
        except (KeyError, IndexError, TypeError):
            return False
    leaf = path[-1]
    if isinstance(node, dict) and leaf in node:
        del node[leaf]
        return True
    if isinstance(node, list) and isinstance(leaf, int) and 0 <= leaf < len(node):
        if node[leaf] is _DROPPED:
            return False
        node[leaf] = _DROPPED
        return True
    return False


class _Dropped:
    pass


_DROPPED = _Dropped()


def _purge_dropped(node: Any) -> Any:
    if isinstance(node, dict):
        return {key: _purge_dropped(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_purge_dropped(value) for value in node if value is not _DROPPED]
    return node


def parse_case_context(payload: Mapping[str, Any]) -> tuple[CaseContext, list[str]]:
    """Validate a raw snapshot, treating malformed facts as not proven.

    Invalid fact fields (or the list entries holding them) are dropped and
    reported in the returned warnings, as are document facts that are not
    a JSON object. Null document text and facts count as empty. A missing
    or unknown practice area and otherwise malformed documents still raise
    ``ValidationError``.
    """

    data = copy.deepcopy(dict(payload))
    warnings: list[str] = []
    documents = data.get("documents")
    if isinstance(documents, list):
        for index, document in enumerate(documents):
            if not isinstance(document, dict):
                continue
            facts, error = decode_extracted_facts(document.get("extracted_facts"))
            if error:
                warnings.append(f"Ignored malformed fact documents.{index}.extracted_facts: {error}")
                logger.warning("Dropped malformed document facts %s for case %s", index, data.get("case_id"))
            document["extracted_facts"] = facts
    for _ in range(_MAX_REPAIR_PASSES):
        try:
            return CaseContext.model_validate(data), warnings
        except ValidationError as exc:
            facts = data.get("facts")
            repaired = False
            for error in exc.errors():
                loc = tuple(error["loc"])
                # loc is ("facts", <tag>, *path) for fields inside a union member
                if len(loc) < 3 or loc[0] != "facts" or not isinstance(facts, dict):
                    continue
                path = loc[2:]
                if _drop_fact(facts, path):
                    repaired = True
                    dotted = ".".join(str(part) for part in path)
                    warnings.append(f"Ignored malformed fact {dotted}: {error['msg']}")
                    logger.warning("Dropped malformed fact %s for case %s", dotted, data.get("case_id"))
            if not repaired:
                raise
            data["facts"] = _purge_dropped(facts)
    return CaseContext.model_validate(data), warnings


class GateBanner(BaseModel):
    severity: Literal["info", "warning", "error"] = "warning"
    title: str
    detail: str


class TextDiagnostics(BaseModel):
    document_count: int = Field(..., ge=0)
    total_raw_chars: int = Field(..., ge=0)
    total_json_chars: int = Field(..., ge=0)
    avg_raw_chars_per_doc: int = Field(..., ge=0)
    suspected_scanned: bool
    reason_codes: List[GateReason]


class TextGateResult(BaseModel):
    ok: bool
    reason: GateReason
    banner: GateBanner | None = None
    diagnostics: TextDiagnostics


class BundleCompleteness(BaseModel):
    practice_area: PracticeArea
    completeness: int = Field(..., ge=0, le=100, description="Percent of expected categories present")
    critical_missing_count: int = Field(..., ge=0)
    present: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)
    critical_missing: List[str] = Field(default_factory=list)
    weighted_score: int = Field(default=0, ge=0, le=100)
    capability_tier: Literal["full", "partial", "thin"] = "thin"


class GateDecision(BaseModel):
    show: bool
    reason: str | None = None
    banner: GateBanner | None = None


class ProbabilityGateRequest(BaseModel):
    practice_area: PracticeArea
    completeness: int = Field(..., ge=0, le=100)
    critical_missing_count: int = Field(..., ge=0)


class EvidenceFactor(BaseModel):
    name: Literal["identification", "forensics", "witnesses", "pace", "medical", "disclosure"]
    score: int = Field(..., ge=0, le=100)
    indicators: dict[str, bool | int | str] = Field(default_factory=dict)


class CalibrationDirectives(BaseModel):
    should_downgrade_disclosure_stay: bool = False
    should_downgrade_pace: bool = False
    should_focus_on_plea_mitigation: bool = False
    should_downgrade: dict[str, bool] = Field(
        default_factory=dict, description="Angle types whose premise is undermined by the evidence"
    )
    realistic_outcome: str = ""
    language_tone: Literal["AGGRESSIVE", "MODERATE", "CONSERVATIVE"] = "MODERATE"


class EvidenceStrengthResult(BaseModel):
    overall_strength: int = Field(..., ge=0, le=100)
    level: StrengthLevel
    factors: dict[str, EvidenceFactor]
    calibration: CalibrationDirectives
    warnings: List[str] = Field(default_factory=list)


class DefenseAngle(BaseModel):
    id: str
    angle_type: AngleType
    title: str
    severity: Severity
    win_probability: int | None = Field(default=None, ge=0, le=100)
    why_this_matters: str = ""
    legal_basis: str = ""
    case_law: List[str] = Field(default_factory=list)
    opponent_weakness: str = ""
    how_to_exploit: str = ""
    specific_arguments: List[str] = Field(default_factory=list)
    cross_examination_points: List[str] = Field(default_factory=list)
    submissions: List[str] = Field(default_factory=list)
    if_successful: str = ""
    if_unsuccessful: str = ""
    combined_with: List[str] = Field(default_factory=list)
    evidence_needed: List[str] = Field(default_factory=list)
    disclosure_requests: List[str] = Field(default_factory=list)
    provisional: bool = False


class RecommendedStrategy(BaseModel):
    primary_angle: DefenseAngle
    supporting_angles: List[DefenseAngle] = Field(default_factory=list)
    combined_probability: int | None = Field(default=None, ge=0, le=100)
    tactical_plan: List[str] = Field(default_factory=list)


class OpponentVulnerabilities(BaseModel):
    critical_weaknesses: List[str] = Field(default_factory=list)
    evidence_gaps: List[str] = Field(default_factory=list)
    procedural_errors: List[str] = Field(default_factory=list)


class ReportDiagnostics(BaseModel):
    document_count: int = Field(..., ge=0)
    total_raw_chars: int = Field(..., ge=0)
    reason_codes: List[GateReason] = Field(default_factory=list)


class StrategyReport(BaseModel):
    case_id: str
    practice_area: PracticeArea
    overall_win_probability: int | None = Field(default=None, ge=0, le=100)
    all_angles: List[DefenseAngle]
    critical_angles: List[DefenseAngle]
    recommended_strategy: RecommendedStrategy
    opponent_vulnerabilities: OpponentVulnerabilities
    evidence_strength: EvidenceStrengthResult
    bundle_completeness: BundleCompleteness
    probabilities_suppressed: bool = False
    suppression_reason: str | None = None
    realistic_outcome: str = ""
    warnings: List[str] = Field(default_factory=list)
    diagnostics: ReportDiagnostics
    generated_at: datetime = Field(..., description="Excluded from idempotence comparisons")


class AssessmentOutcome(BaseModel):
    ok: bool
    report: StrategyReport | None = None
    banner: GateBanner | None = None
    diagnostics: ReportDiagnostics
    warnings: List[str] = Field(default_factory=list)
    cached: bool = False


class AssessmentRequest(BaseModel):
    tenant_id: str = "default"
    case_id: str
    documents: List[dict[str, Any]] = Field(default_factory=list)
    facts: dict[str, Any] = Field(..., description="Practice-area facts tagged by practice_area")
    as_of: date | None = None
    analysis_name: str = Field(default="strategy_report", pattern=r"^[a-z0-9_]+$")
    use_cache: bool = True

    def context_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "case_id": self.case_id,
            "tenant_id": self.tenant_id,
            "documents": self.documents,
            "facts": self.facts,
        }
        if self.as_of is not None:
            payload["as_of"] = self.as_of
        return payload


__all__ = [
    "AngleType",
    "AssessmentOutcome",
    "AssessmentRequest",
    "BundleCompleteness",
    "CalibrationDirectives",
    "CaseContext",
    "CaseDocument",
    "CriminalFacts",
    "DefenseAngle",
    "DisclosureGap",
    "EvidenceFactor",
    "EvidenceItem",
    "EvidenceStrengthResult",
    "FamilyFacts",
    "GateBanner",
    "GateDecision",
    "HousingFacts",
    "OpponentVulnerabilities",
    "PersonalInjuryFacts",
    "ProbabilityGateRequest",
    "RecommendedStrategy",
    "ReportDiagnostics",
    "StrategyReport",
    "TextDiagnostics",
    "TextGateResult",
    "decode_extracted_facts",
    "parse_case_context",
]
