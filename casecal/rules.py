"""Angle generation: one pipeline, driven by a RuleSet per practice area."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence, get_args

from .graph import EvidenceGraph
from .schemas import (
    BundleCompleteness,
    CaseContext,
    CriminalAngleType,
    CriminalFacts,
    DefenseAngle,
    FamilyAngleType,
    FamilyFacts,
    HousingAngleType,
    HousingFacts,
    PersonalInjuryAngleType,
    PersonalInjuryFacts,
)

logger = logging.getLogger(__name__)

_LIST_FIELDS = (
    "case_law",
    "specific_arguments",
    "cross_examination_points",
    "submissions",
    "combined_with",
    "evidence_needed",
    "disclosure_requests",
)
_TEXT_FIELDS = ("title", "why_this_matters", "legal_basis", "opponent_weakness", "if_successful", "if_unsuccessful")


class _Placeholders(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class AngleTemplateLibrary:
    """Legal text for every angle, keyed by practice area and template key."""

    def __init__(self, path: Path) -> None:
        self._templates: dict[str, dict[str, dict[str, Any]]] = json.loads(path.read_text(encoding="utf-8"))

    def keys(self, practice_area: str) -> list[str]:
        return list(self._templates.get(practice_area, {}))

    def template(self, practice_area: str, key: str) -> dict[str, Any]:
        try:
            return self._templates[practice_area][key]
        except KeyError as exc:
            raise KeyError(f"No angle template {key!r} for {practice_area}") from exc

    def render(self, practice_area: str, key: str, values: Mapping[str, Any]) -> dict[str, Any]:
        template = self.template(practice_area, key)
        placeholders = _Placeholders({name: str(value) for name, value in values.items()})
        rendered: dict[str, Any] = {
            "angle_type": template["angle_type"],
            "severity": template["severity"],
            "win_probability": int(template["base_probability"]),
        }
        for name in _TEXT_FIELDS:
            rendered[name] = str(template.get(name, "")).format_map(placeholders)
        for name in _LIST_FIELDS:
            rendered[name] = [str(item).format_map(placeholders) for item in template.get(name, [])]
        steps = [str(step).format_map(placeholders) for step in template.get("steps", [])]
        rendered["how_to_exploit"] = "\n".join(f"Step {index}: {step}" for index, step in enumerate(steps, start=1))
        return rendered


@dataclass
class AngleSpec:
    """A fired rule: which template to render and how to adjust it."""

    key: str
    win_probability: int | None = None
    severity: str | None = None
    values: dict[str, Any] = field(default_factory=dict)
    provisional: bool = False
    disclosure_requests: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RuleInput:
    context: CaseContext
    graph: EvidenceGraph
    bundle: BundleCompleteness

    @property
    def facts(self) -> Any:
        return self.context.facts

    @property
    def as_of(self) -> date:
        return self.context.as_of


Rule = Callable[[RuleInput], Iterable[AngleSpec]]


def days_between(start: date | None, end: date | None) -> int | None:
    if start is None or end is None:
        return None
    return (end - start).days


def scaled_probability(base: int, overdue_days: int | None, per_days: int = 7, step: int = 1, cap: int = 10) -> int:
    """Add ``step`` for every ``per_days`` overdue, at most ``cap`` on top of ``base``."""

    if not overdue_days or overdue_days <= 0:
        return base
    return base + min(cap, (overdue_days // per_days) * step)


class RuleSet:
    practice_area: str = ""
    angle_types: frozenset[str] = frozenset()
    fallback_keys: tuple[str, ...] = ()

    def rules(self) -> Sequence[Rule]:
        raise NotImplementedError

    def detect(self, data: RuleInput) -> list[AngleSpec]:
        specs: list[AngleSpec] = []
        for rule in self.rules():
            fired = list(rule(data))
            if fired:
                logger.debug(
                    "%s rule %s fired: %s",
                    self.practice_area,
                    getattr(rule, "__name__", rule),
                    ", ".join(spec.key for spec in fired),
                )
            specs.extend(fired)
        return specs


def _late_response(data: RuleInput, key: str) -> Iterable[AngleSpec]:
    days = days_between(data.facts.opponent_last_response_date, data.as_of)
    if days is None:
        return
    if days > 42:
        yield AngleSpec(key, win_probability=75, severity="CRITICAL", values={"days": days})
    elif days > 21:
        yield AngleSpec(key, values={"days": days})


def _late_defence(data: RuleInput, key: str) -> Iterable[AngleSpec]:
    days_late = days_between(data.facts.defence_deadline_date, data.facts.defence_filed_date)
    if days_late is not None and days_late > 0:
        yield AngleSpec(key, values={"days_late": days_late})


_SECTION = re.compile(r"\bs(?:ection\s*|\.\s*)?(\d+)\b", re.IGNORECASE)


def _charge_sections(facts: CriminalFacts) -> set[str]:
    sections: set[str] = set()
    for charge in facts.charges:
        for text in (charge.section or "", charge.offence):
            sections.update(match.group(1) for match in _SECTION.finditer(text))
    return sections


class CriminalRuleSet(RuleSet):
    practice_area = "criminal"
    angle_types = frozenset(get_args(CriminalAngleType))
    fallback_keys = ("no_case_to_answer",)

    def rules(self) -> Sequence[Rule]:
        return (
            self._pace_breaches,
            self._disclosure_stay,
            self._identification,
            self._witness_contradictions,
            self._chain_of_custody,
            self._no_case_to_answer,
            self._strategy_routes,
        )

    def _pace_breaches(self, data: RuleInput) -> Iterable[AngleSpec]:
        pace = data.facts.pace
        breaches = 0
        if pace.caution_given is False or pace.caution_before_questioning is False:
            breaches += 1
            detail = (
                "no caution was given" if pace.caution_given is False else "questioning began before the caution was given"
            )
            yield AngleSpec("pace_caution", values={"caution_detail": detail})
        if pace.right_to_solicitor is False:
            breaches += 1
            yield AngleSpec("pace_solicitor")
            yield AngleSpec("human_rights_solicitor")
        if pace.interview_recorded is False:
            breaches += 1
            yield AngleSpec("pace_recording")
        if breaches >= 2:
            yield AngleSpec("abuse_of_process", values={"breach_count": breaches})

    def _disclosure_stay(self, data: RuleInput) -> Iterable[AngleSpec]:
        gaps = data.graph.disclosure_gaps
        requested = data.facts.disclosure_requested_on
        days_since_request = days_between(requested, data.as_of)
        if days_since_request is None:
            request_note = "and record that no written request has been made yet"
        else:
            request_note = f"first requested on {requested.isoformat()} ({days_since_request} days ago)"
        requests: list[str] = []
        for gap in gaps:
            requests.extend(gap.requested_items or [f"Full copy of {gap.item}"])
        yield AngleSpec(
            "disclosure_stay",
            win_probability=scaled_probability(70, days_since_request),
            values={
                "gap_count": len(gaps),
                "gap_summary": "; ".join(gap.item for gap in gaps[:3]) or "no specific items recorded yet",
                "request_note": request_note,
            },
            disclosure_requests=list(dict.fromkeys(requests)),
        )

    def _identification(self, data: RuleInput) -> Iterable[AngleSpec]:
        affected = [statement for statement in data.facts.witness_statements if statement.identification_issues]
        if not affected:
            return
        issues = sorted({issue for statement in affected for issue in statement.identification_issues})
        labels = {"distance": "distance", "lighting": "poor lighting", "time": "time of day", "brief": "a brief glimpse"}
        yield AngleSpec(
            "identification_challenge",
            values={
                "witnesses": ", ".join(statement.witness for statement in affected),
                "issues": ", ".join(labels[issue] for issue in issues),
            },
        )

    def _witness_contradictions(self, data: RuleInput) -> Iterable[AngleSpec]:
        statements = data.facts.witness_statements
        accounts = {" ".join(statement.content.lower().split()) for statement in statements if statement.content.strip()}
        if len(statements) >= 2 and len(accounts) >= 2:
            yield AngleSpec("witness_contradiction", values={"witness_count": len(statements)})

    def _chain_of_custody(self, data: RuleInput) -> Iterable[AngleSpec]:
        withheld = [
            item
            for item in data.graph.items_of_type("Forensic")
            if item.disclosure_status in {"not_disclosed", "partially_disclosed"}
        ]
        if withheld:
            yield AngleSpec(
                "chain_of_custody",
                values={"exhibits": ", ".join(item.description for item in withheld)},
                disclosure_requests=[f"Continuity statements for {item.description}" for item in withheld],
            )

    def _no_case_to_answer(self, data: RuleInput) -> Iterable[AngleSpec]:
        yield AngleSpec("no_case_to_answer")

    def _strategy_routes(self, data: RuleInput) -> Iterable[AngleSpec]:
        provisional = data.bundle.capability_tier == "thin" or data.graph.disclosure_incomplete
        severity, probability = ("MEDIUM", 40) if provisional else ("HIGH", 60)
        facts: CriminalFacts = data.facts
        charge = facts.charges[0].offence if facts.charges else "the charge"

        def route(key: str, **values: Any) -> AngleSpec:
            return AngleSpec(key, win_probability=probability, severity=severity, values=values, provisional=provisional)

        if "18" in _charge_sections(facts):
            s18 = next(
                (c.offence for c in facts.charges if "18" in _SECTION.findall(f"{c.section or ''} {c.offence}")),
                charge,
            )
            yield route("intent_downgrade", charge=s18)
        if facts.charges:
            yield route("controlled_plea", charge=charge)
        if facts.interview_stance == "no_comment":
            yield route("interview_exclusion")


_S11_DEFECT_TYPES = {"structural", "heating", "electrical", "leak", "damp"}


class HousingRuleSet(RuleSet):
    practice_area = "housing"
    angle_types = frozenset(get_args(HousingAngleType))
    fallback_keys = ("housing_disclosure",)

    def rules(self) -> Sequence[Rule]:
        return (
            self._awaab,
            self._section_11,
            self._hhsrs,
            self._late_response,
            self._defective_defence,
            self._missing_pre_action,
            self._disclosure,
            self._contradictions,
            self._aggravated_damages,
        )

    def _awaab(self, data: RuleInput) -> Iterable[AngleSpec]:
        facts: HousingFacts = data.facts
        if facts.landlord_type != "social" or facts.first_complaint_date is None:
            return
        investigated = facts.investigation_date or data.as_of
        days = days_between(facts.first_complaint_date, investigated)
        if days is not None and days > 7:
            yield AngleSpec(
                "awaab_investigation",
                values={
                    "days": days,
                    "days_over": days - 7,
                    "first_complaint": facts.first_complaint_date.isoformat(),
                    "investigation": facts.investigation_date.isoformat() if facts.investigation_date else "not yet carried out",
                },
            )
        if facts.investigation_date is not None:
            started = facts.work_start_date or data.as_of
            days = days_between(facts.investigation_date, started)
            if days is not None and days > 28:
                yield AngleSpec(
                    "awaab_repair",
                    values={
                        "days": days,
                        "days_over": days - 28,
                        "investigation": facts.investigation_date.isoformat(),
                        "work_start": facts.work_start_date.isoformat() if facts.work_start_date else "not yet started",
                    },
                )

    def _section_11(self, data: RuleInput) -> Iterable[AngleSpec]:
        overdue: list[tuple[int, int, int]] = []
        for defect in data.facts.defects:
            if defect.defect_type not in _S11_DEFECT_TYPES or defect.repair_successful:
                continue
            days = days_between(defect.first_reported_date, data.as_of)
            reasonable = 14 if defect.severity in {"severe", "critical"} else 28
            if days is not None and days > reasonable:
                overdue.append((days - reasonable, days, reasonable))
        if overdue:
            _, days, reasonable = max(overdue)
            yield AngleSpec(
                "s11_breach",
                values={"defect_count": len(overdue), "days": days, "reasonable_days": reasonable},
            )

    def _hhsrs(self, data: RuleInput) -> Iterable[AngleSpec]:
        hazards = data.facts.hhsrs_category_1_hazards
        if hazards:
            yield AngleSpec("hhsrs_category_1", values={"hazards": ", ".join(hazards)})

    def _late_response(self, data: RuleInput) -> Iterable[AngleSpec]:
        return _late_response(data, "late_response")

    def _defective_defence(self, data: RuleInput) -> Iterable[AngleSpec]:
        return _late_defence(data, "defective_defence")

    def _missing_pre_action(self, data: RuleInput) -> Iterable[AngleSpec]:
        facts: HousingFacts = data.facts
        days = days_between(facts.first_complaint_date, data.as_of)
        if not facts.has_pre_action_letter and days is not None and days > 30:
            yield AngleSpec("missing_pre_action", values={"days": days})

    def _disclosure(self, data: RuleInput) -> Iterable[AngleSpec]:
        yield AngleSpec("housing_disclosure")

    def _contradictions(self, data: RuleInput) -> Iterable[AngleSpec]:
        for defect in data.facts.defects:
            if defect.repair_date and defect.last_reported_date and defect.repair_date < defect.last_reported_date:
                yield AngleSpec("housing_contradiction")
                return

    def _aggravated_damages(self, data: RuleInput) -> Iterable[AngleSpec]:
        statutory = (self._awaab, self._section_11, self._hhsrs)
        if any(list(rule(data)) for rule in statutory):
            yield AngleSpec("aggravated_damages")


class PersonalInjuryRuleSet(RuleSet):
    practice_area = "personal_injury"
    angle_types = frozenset(get_args(PersonalInjuryAngleType))
    fallback_keys = ("liability_proof",)

    def rules(self) -> Sequence[Rule]:
        return (
            self._late_response,
            self._defective_defence,
            self._claim_notification,
            self._expert_contradiction,
            self._weak_expert,
            self._causation_gap,
            self._part_36,
            self._future_loss,
        )

    def _late_response(self, data: RuleInput) -> Iterable[AngleSpec]:
        return _late_response(data, "pi_late_response")

    def _defective_defence(self, data: RuleInput) -> Iterable[AngleSpec]:
        return _late_defence(data, "pi_defective_defence")

    def _claim_notification(self, data: RuleInput) -> Iterable[AngleSpec]:
        facts: PersonalInjuryFacts = data.facts
        if facts.cnf_response_received:
            return
        days_overdue = days_between(facts.cnf_response_deadline, data.as_of)
        if days_overdue is not None and days_overdue > 0:
            yield AngleSpec("cnf_overdue", values={"days_overdue": days_overdue})

    def _expert_contradiction(self, data: RuleInput) -> Iterable[AngleSpec]:
        reports = data.facts.medical_reports
        if len(reports) < 2:
            return
        opinions = {report.causation_opinion for report in reports if report.causation_opinion != "silent"}
        prognoses = {report.prognosis_months for report in reports if report.prognosis_months is not None}
        if len(opinions) >= 2 or len(prognoses) >= 2:
            yield AngleSpec("expert_contradiction", values={"experts": ", ".join(report.expert for report in reports)})

    def _weak_expert(self, data: RuleInput) -> Iterable[AngleSpec]:
        unreasoned = [report.expert for report in data.facts.medical_reports if not report.reasoning_given]
        if unreasoned:
            yield AngleSpec("weak_expert", values={"experts": ", ".join(unreasoned)})

    def _causation_gap(self, data: RuleInput) -> Iterable[AngleSpec]:
        stance = data.facts.liability_stance
        if stance in {"denied", "partial"}:
            yield AngleSpec("causation_gap", values={"stance": "denied" if stance == "denied" else "only partly admitted"})

    def _part_36(self, data: RuleInput) -> Iterable[AngleSpec]:
        facts: PersonalInjuryFacts = data.facts
        if facts.part36_offer_date is not None and facts.part36_offer_amount is not None:
            yield AngleSpec(
                "part36_pressure",
                values={
                    "offer_amount": f"£{facts.part36_offer_amount:,.2f}",
                    "offer_date": facts.part36_offer_date.isoformat(),
                },
            )

    def _future_loss(self, data: RuleInput) -> Iterable[AngleSpec]:
        estimate = data.facts.loss_of_earnings_estimate
        if estimate:
            yield AngleSpec("future_loss", values={"loss_estimate": f"£{estimate:,.0f}"})


class FamilyRuleSet(RuleSet):
    practice_area = "family"
    angle_types = frozenset(get_args(FamilyAngleType))
    fallback_keys = ("weak_evidence",)

    def rules(self) -> Sequence[Rule]:
        return (
            self._order_breach,
            self._late_application,
            self._defective_application,
            self._non_disclosure,
            self._incomplete_disclosure,
            self._contradictions,
        )

    def _order_breach(self, data: RuleInput) -> Iterable[AngleSpec]:
        facts: FamilyFacts = data.facts
        if facts.order_complied_with is not False:
            return
        days_overdue = days_between(facts.order_compliance_deadline, data.as_of)
        if days_overdue is not None and days_overdue > 0:
            yield AngleSpec(
                "order_non_compliance",
                win_probability=scaled_probability(85, days_overdue),
                values={"days_overdue": days_overdue},
            )
        yield AngleSpec("enforcement")

    def _late_application(self, data: RuleInput) -> Iterable[AngleSpec]:
        facts: FamilyFacts = data.facts
        days_late = days_between(facts.application_deadline_date, facts.application_filed_date)
        if facts.has_application and days_late is not None and days_late > 0:
            yield AngleSpec("late_application", values={"days_late": days_late})

    def _defective_application(self, data: RuleInput) -> Iterable[AngleSpec]:
        if data.facts.has_application:
            yield AngleSpec("defective_application")

    def _non_disclosure(self, data: RuleInput) -> Iterable[AngleSpec]:
        facts: FamilyFacts = data.facts
        if facts.disclosure_provided is False or (facts.disclosure_provided and facts.disclosure_complete is False):
            yield AngleSpec("non_disclosure")

    def _incomplete_disclosure(self, data: RuleInput) -> Iterable[AngleSpec]:
        facts: FamilyFacts = data.facts
        if not facts.disclosure_provided or facts.disclosure_complete is not False:
            return
        days_overdue = days_between(facts.disclosure_deadline, data.as_of)
        if days_overdue is not None and days_overdue > 0:
            yield AngleSpec("incomplete_disclosure", values={"days_overdue": days_overdue})

    def _contradictions(self, data: RuleInput) -> Iterable[AngleSpec]:
        contradictions = data.facts.contradictions
        if contradictions:
            yield AngleSpec("family_contradiction", values={"contradiction_count": len(contradictions)})


DEFAULT_RULE_SETS: tuple[RuleSet, ...] = (
    CriminalRuleSet(),
    HousingRuleSet(),
    PersonalInjuryRuleSet(),
    FamilyRuleSet(),
)


class AngleGenerator:
    def __init__(self, library: AngleTemplateLibrary, rule_sets: Sequence[RuleSet] = DEFAULT_RULE_SETS) -> None:
        self._library = library
        self._rule_sets = {rule_set.practice_area: rule_set for rule_set in rule_sets}
        for rule_set in rule_sets:
            self._check_templates(rule_set)

    def _check_templates(self, rule_set: RuleSet) -> None:
        area = rule_set.practice_area
        for key in self._library.keys(area):
            angle_type = self._library.template(area, key)["angle_type"]
            if angle_type not in rule_set.angle_types:
                raise ValueError(f"Template {area}/{key} uses angle type {angle_type} outside the {area} set")
        for key in rule_set.fallback_keys:
            self._library.template(area, key)

    def rule_set(self, practice_area: str) -> RuleSet:
        try:
            return self._rule_sets[practice_area]
        except KeyError as exc:
            raise ValueError(f"No rule set registered for practice area {practice_area!r}") from exc

    def generate(self, data: RuleInput) -> list[DefenseAngle]:
        rule_set = self.rule_set(data.context.practice_area)
        specs = rule_set.detect(data)
        if not specs:
            logger.info("No rule fired for %s; using fallback angles", data.context.case_id)
            specs = [AngleSpec(key) for key in rule_set.fallback_keys]

        angles: list[DefenseAngle] = []
        seen: set[tuple[str, str]] = set()
        for spec in specs:
            angle = self._build(rule_set.practice_area, data.context.case_id, spec)
            identity = (angle.angle_type, angle.title)
            if identity in seen:
                continue
            seen.add(identity)
            angles.append(angle)
        return angles

    def _build(self, practice_area: str, case_id: str, spec: AngleSpec) -> DefenseAngle:
        rendered = self._library.render(practice_area, spec.key, spec.values)
        if spec.win_probability is not None:
            rendered["win_probability"] = spec.win_probability
        rendered["win_probability"] = max(0, min(100, int(rendered["win_probability"])))
        if spec.severity is not None:
            rendered["severity"] = spec.severity
        if spec.disclosure_requests:
            rendered["disclosure_requests"] = list(dict.fromkeys([*spec.disclosure_requests, *rendered["disclosure_requests"]]))
        return DefenseAngle(id=f"angle-{spec.key}-{case_id}", provisional=spec.provisional, **rendered)


__all__ = [
    "AngleGenerator",
    "AngleSpec",
    "AngleTemplateLibrary",
    "CriminalRuleSet",
    "DEFAULT_RULE_SETS",
    "FamilyRuleSet",
    "HousingRuleSet",
    "PersonalInjuryRuleSet",
    "RuleInput",
    "RuleSet",
    "days_between",
    "scaled_probability",
]
