import os
import tempfile
from datetime import date
from pathlib import Path

os.environ.setdefault("CASECAL_DATABASE_URL", f"sqlite:///{Path(tempfile.gettempdir()) / 'casecal_test.db'}")

import pytest
from pydantic import ValidationError

from .bundle import BundleCompletenessAssessor, build_corpus
from .calibration import STAY_CAVEAT, CalibrationEngine, damp, frame_with_confidence, overall_from_angles
from .config import DampingBand
from .db import Database
from .evidence import EvidenceStrengthAnalyzer
from .gates import INSUFFICIENT_TEXT_TITLE, ProbabilityVisibilityGate, TextInsufficientError, TextSufficiencyGate
from .graph import build_evidence_graph
from .ranking import StrategyRanker, combined_probability, rank_key
from .rounding import round_half_up
from .rules import AngleGenerator, AngleTemplateLibrary, CriminalRuleSet, RuleInput, scaled_probability
from .schemas import (
    CalibrationDirectives,
    CaseContext,
    CaseDocument,
    DefenseAngle,
    EvidenceStrengthResult,
    parse_case_context,
)
from .services import AssessmentService, angle_generator, assessment_input_hash, document_set_hash

AS_OF = date(2024, 3, 1)

FULL_BUNDLE_TEXT = (
    "MG5 case summary. The defendant was charged with wounding with intent (charge sheet attached). "
    "Custody record: arrival logged at 22:10. The defendant was cautioned on arrest. "
    "The duty solicitor attended and legal advice was provided before interview. "
    "The interview was audio recorded and a transcript is attached. "
    "MG11 witness statement of the complainant. "
    "CCTV footage from the high street was seized, with the continuity statement and native export log. "
    "Body worn video from the arresting officers. 999 call and CAD log. "
    "A VIPER identification procedure was held. "
    "Medical evidence from the hospital records injuries consistent with a single blow. "
    "MG6C disclosure schedule of unused material served. "
)
STRONG_EVIDENCE_TEXT = (
    "An eyewitness saw the attack and facial recognition matched the defendant. "
    "An independent witness gave a statement. "
    "A knife was recovered; fingerprints and DNA were found on the handle, and the chain of custody is documented. "
    "The solicitor was present, the interview was recorded and rights were explained. "
    "The medical report is consistent with the allegation. "
)
FILLER = "The matter is listed for trial at the Crown Court next term. " * 20

COMPLIANT_PACE = {
    "caution_given": True,
    "caution_before_questioning": True,
    "right_to_solicitor": True,
    "solicitor_present": True,
    "interview_recorded": True,
    "rights_explained": True,
}


def _payload(facts: dict, texts: tuple[str, ...] = (), case_id: str = "case-1") -> dict:
    return {
        "case_id": case_id,
        "documents": [{"name": f"doc-{index}.pdf", "raw_text": text} for index, text in enumerate(texts)],
        "facts": facts,
        "as_of": AS_OF,
    }


def _context(facts: dict, texts: tuple[str, ...] = ()) -> CaseContext:
    return CaseContext.model_validate(_payload(facts, texts))


def _rule_input(context: CaseContext) -> RuleInput:
    corpus = build_corpus(context.documents)
    bundle = BundleCompletenessAssessor().assess(context.practice_area, corpus)
    return RuleInput(context=context, graph=build_evidence_graph(context), bundle=bundle)


def _generate(facts: dict, texts: tuple[str, ...] = ()) -> list[DefenseAngle]:
    return angle_generator.generate(_rule_input(_context(facts, texts)))


def _by_type(angles: list[DefenseAngle], angle_type: str) -> list[DefenseAngle]:
    return [angle for angle in angles if angle.angle_type == angle_type]


def _angle(angle_type: str, probability: int | None, severity: str = "HIGH", **extra) -> DefenseAngle:
    return DefenseAngle(
        id=f"angle-{angle_type.lower()}-{probability}",
        angle_type=angle_type,
        title=extra.pop("title", angle_type.replace("_", " ").title()),
        severity=severity,
        win_probability=probability,
        **extra,
    )


def _strength(overall: int, **directives) -> EvidenceStrengthResult:
    should_downgrade = {
        "DISCLOSURE_FAILURE_STAY": directives.get("should_downgrade_disclosure_stay", False),
        "PACE_BREACH_EXCLUSION": directives.get("should_downgrade_pace", False),
    }
    return EvidenceStrengthResult(
        overall_strength=overall,
        level="STRONG",
        factors={},
        calibration=CalibrationDirectives(should_downgrade=should_downgrade, **directives),
    )


def test_text_gate_reports_no_documents():
    result = TextSufficiencyGate().evaluate([])
    assert not result.ok
    assert result.reason == "NO_DOCS"
    assert result.banner.title == INSUFFICIENT_TEXT_TITLE
    assert result.diagnostics.reason_codes == ["NO_DOCS"]


def test_text_gate_distinguishes_scanned_from_thin_text():
    gate = TextSufficiencyGate()
    scanned = gate.evaluate([CaseDocument(name="scan.pdf", raw_text="Page 1")])
    assert scanned.reason == "SUSPECTED_SCANNED"
    assert scanned.diagnostics.reason_codes == ["SUSPECTED_SCANNED", "TEXT_THIN"]
    assert scanned.diagnostics.suspected_scanned

    thin = gate.evaluate([CaseDocument(name="notes.pdf", raw_text="Short note", extracted_facts={"summary": "x" * 500})])
    assert thin.reason == "TEXT_THIN"
    assert thin.diagnostics.reason_codes == ["TEXT_THIN"]
    assert thin.banner.title == INSUFFICIENT_TEXT_TITLE

    ok = gate.evaluate([CaseDocument(raw_text=FILLER), CaseDocument(raw_text="")])
    assert ok.ok
    assert ok.diagnostics.reason_codes == ["OK"]
    assert ok.diagnostics.avg_raw_chars_per_doc == len(FILLER.strip()) // 2


def test_text_gate_is_deterministic_and_guard_raises():
    gate = TextSufficiencyGate()
    documents = [CaseDocument(name="a.pdf", raw_text="Only a little text")]
    assert gate.evaluate(documents) == gate.evaluate(documents)
    with pytest.raises(TextInsufficientError) as excinfo:
        gate.guard(documents)
    assert excinfo.value.banner.title == INSUFFICIENT_TEXT_TITLE
    assert excinfo.value.diagnostics.reason_codes == ["SUSPECTED_SCANNED", "TEXT_THIN"]


def test_bundle_completeness_for_full_and_thin_criminal_bundles():
    assessor = BundleCompletenessAssessor()
    full = assessor.assess("criminal", FULL_BUNDLE_TEXT)
    assert full.completeness == 100
    assert full.critical_missing_count == 0
    assert full.capability_tier == "full"

    thin = assessor.assess("criminal", "The defendant was charged with theft from a shop.")
    assert thin.present == ["charge_sheet"]
    assert thin.completeness == 7
    assert thin.critical_missing_count == 6
    assert thin.capability_tier == "thin"


def test_bundle_category_dependencies_and_narrative_witnesses():
    assessor = BundleCompletenessAssessor()
    without_cctv = assessor.assess("criminal", "The continuity statement for the exhibits is attached.")
    assert "cctv_continuity" not in without_cctv.present

    narrative = assessor.assess("criminal", "I was walking home. I saw two men arguing outside the shop.")
    assert "witness_statements" in narrative.present

    interview_only = assessor.assess("criminal", "The interview took place at 10am.")
    assert "interview" not in interview_only.present


def test_probability_gate_hides_incomplete_criminal_bundle():
    gate = ProbabilityVisibilityGate()
    hidden = gate.decide("criminal", 40, 3)
    assert not hidden.show
    assert hidden.reason.startswith("Confidence scores hidden")
    assert hidden.banner is not None

    assert gate.decide("criminal", 50, 2).show
    assert gate.decide("housing", 40, 2).show
    assert not gate.decide("housing", 39, 0).show
    assert gate.decide("criminal", 40, 3) == hidden
    with pytest.raises(ValueError):
        gate.decide("tax", 90, 0)


def test_evidence_strength_for_strong_compliant_case():
    context = _context(
        {"practice_area": "criminal", "pace": COMPLIANT_PACE},
        (FULL_BUNDLE_TEXT + STRONG_EVIDENCE_TEXT,),
    )
    corpus = build_corpus(context.documents)
    result = EvidenceStrengthAnalyzer().analyze(context, corpus, build_evidence_graph(context))

    assert result.overall_strength >= 80
    assert result.level == "VERY_STRONG"
    assert result.factors["pace"].score == 80
    assert result.factors["disclosure"].indicators["gap_severity"] == "NONE"
    assert result.calibration.should_downgrade_disclosure_stay
    assert result.calibration.should_downgrade_pace
    assert result.calibration.should_focus_on_plea_mitigation
    assert result.calibration.language_tone == "CONSERVATIVE"
    assert "PACE appears compliant - downgrade PACE breach angles" in result.warnings


def test_evidence_strength_stays_in_range():
    analyzer = EvidenceStrengthAnalyzer()
    corpora = (
        (),
        (FILLER,),
        (FULL_BUNDLE_TEXT,),
        (FULL_BUNDLE_TEXT + STRONG_EVIDENCE_TEXT,),
        ("Critical CCTV has not been disclosed. The defendant was not cautioned.",),
    )
    for texts in corpora:
        context = _context({"practice_area": "criminal"}, texts)
        result = analyzer.analyze(context, build_corpus(context.documents), build_evidence_graph(context))
        assert 0 <= result.overall_strength <= 100
        for factor in result.factors.values():
            assert 0 <= factor.score <= 100


def test_disclosure_gaps_drive_disclosure_severity():
    context = _context(
        {
            "practice_area": "criminal",
            "disclosure_gaps": [{"category": "CCTV", "item": "Shop CCTV", "severity": "CRITICAL"}],
        },
        (FILLER,),
    )
    result = EvidenceStrengthAnalyzer().analyze(context, build_corpus(context.documents), build_evidence_graph(context))
    assert result.factors["disclosure"].indicators["gap_severity"] == "CRITICAL"
    assert result.factors["disclosure"].score == 40
    assert not result.calibration.should_downgrade_disclosure_stay


def test_evidence_graph_merges_and_infers_gaps():
    context = CaseContext.model_validate(
        {
            "case_id": "graph",
            "documents": [
                {
                    "name": "schedule.pdf",
                    "raw_text": "",
                    "extracted_facts": {
                        "evidence": [
                            {"type": "body worn video", "description": "BWV of arrest", "status": "outstanding"},
                            {"type": "cctv", "description": "Shop CCTV", "status": "not disclosed"},
                            "garbage",
                        ]
                    },
                }
            ],
            "facts": {
                "practice_area": "criminal",
                "evidence": [
                    {"id": "e1", "type": "CCTV", "description": "Shop CCTV", "disclosure_status": "not_disclosed"},
                ],
            },
        }
    )
    graph = build_evidence_graph(context)
    assert [item.type for item in graph.items] == ["CCTV", "BWV"]
    severities = {gap.item: gap.severity for gap in graph.disclosure_gaps}
    assert severities == {"Shop CCTV": "HIGH", "BWV of arrest": "LOW"}
    assert all(gap.source == "inferred" for gap in graph.disclosure_gaps)
    assert graph.disclosure_incomplete
    assert len(graph.warnings) == 1


def test_generator_never_returns_empty():
    for facts in (
        {"practice_area": "criminal"},
        {"practice_area": "housing"},
        {"practice_area": "personal_injury"},
        {"practice_area": "family"},
    ):
        angles = _generate(facts)
        assert angles
        assert all(0 <= angle.win_probability <= 100 for angle in angles)


def test_fallback_angles_for_quiet_matters():
    family = _generate({"practice_area": "family"})
    assert [angle.angle_type for angle in family] == ["WEAK_EVIDENCE_ATTACK"]
    assert family[0].win_probability == 60

    injury = _generate({"practice_area": "personal_injury"})
    assert [angle.angle_type for angle in injury] == ["CAUSATION_GAP_ATTACK"]
    assert injury[0].win_probability == 50


def test_criminal_pace_breaches_and_abuse_of_process():
    angles = _generate(
        {"practice_area": "criminal", "pace": {"caution_given": False, "right_to_solicitor": False}},
    )
    pace = _by_type(angles, "PACE_BREACH_EXCLUSION")
    assert sorted(angle.win_probability for angle in pace) == [85, 90]
    assert _by_type(angles, "ABUSE_OF_PROCESS")[0].win_probability == 85
    assert "2 separate PACE breaches" in _by_type(angles, "ABUSE_OF_PROCESS")[0].why_this_matters
    assert _by_type(angles, "HUMAN_RIGHTS_BREACH")[0].severity == "CRITICAL"
    assert _by_type(angles, "NO_CASE_TO_ANSWER")
    assert len({(angle.angle_type, angle.title) for angle in angles}) == len(angles)


def test_disclosure_stay_scales_with_time_since_request():
    angles = _generate({"practice_area": "criminal", "disclosure_requested_on": "2024-01-01"})
    stay = _by_type(angles, "DISCLOSURE_FAILURE_STAY")[0]
    assert stay.win_probability == 78
    assert "60 days ago" in stay.how_to_exploit

    assert scaled_probability(70, None) == 70
    assert scaled_probability(70, 6) == 70
    assert scaled_probability(70, 14) == 72
    assert scaled_probability(70, 365) == 80


def test_criminal_witness_forensic_and_provisional_routes():
    angles = _generate(
        {
            "practice_area": "criminal",
            "charges": [{"offence": "Wounding with intent", "section": "s18"}],
            "interview_stance": "no_comment",
            "evidence": [
                {"id": "f1", "type": "Forensic", "description": "DNA swab", "disclosure_status": "not_disclosed"},
            ],
            "witness_statements": [
                {"witness": "W1", "content": "I saw him from across the road", "identification_issues": ["distance"]},
                {"witness": "W2", "content": "He was wearing a red coat"},
            ],
        }
    )
    identification = _by_type(angles, "IDENTIFICATION_CHALLENGE")[0]
    assert "W1" in identification.why_this_matters
    assert _by_type(angles, "CONTRADICTION_EXPLOITATION")[0].win_probability == 70
    custody = _by_type(angles, "CHAIN_OF_CUSTODY_BREAK")[0]
    assert "Continuity statements for DNA swab" in custody.disclosure_requests

    downgrade = _by_type(angles, "EVIDENCE_WEAKNESS_CHALLENGE")[0]
    assert downgrade.provisional
    assert downgrade.severity == "MEDIUM"
    assert downgrade.win_probability == 40
    assert _by_type(angles, "SENTENCING_MITIGATION")[0].provisional
    interview = [angle for angle in _by_type(angles, "PACE_BREACH_EXCLUSION") if angle.provisional]
    assert interview and interview[0].title.startswith("Interview Exclusion")


def test_housing_awaab_and_late_response():
    angles = _generate(
        {
            "practice_area": "housing",
            "landlord_type": "social",
            "first_complaint_date": "2024-01-01",
            "investigation_date": "2024-01-20",
            "work_start_date": "2024-03-01",
            "has_pre_action_letter": True,
            "opponent_last_response_date": "2024-01-01",
        }
    )
    titles = [angle.title for angle in _by_type(angles, "AWAAB_LAW_BREACH")]
    assert "Awaab's Law Breach - Investigation Took 19 Days" in titles
    assert "Awaab's Law Breach - Works Started 41 Days After Investigation" in titles
    late = _by_type(angles, "LATE_RESPONSE_ATTACK")[0]
    assert (late.severity, late.win_probability) == ("CRITICAL", 75)
    assert _by_type(angles, "AGGRAVATED_DAMAGES_CLAIM")
    assert _by_type(angles, "DISCLOSURE_FAILURE_ATTACK")
    assert not _by_type(angles, "MISSING_PRE_ACTION_ATTACK")


def test_housing_section_11_uses_severity_for_reasonable_time():
    angles = _generate(
        {
            "practice_area": "housing",
            "defects": [
                {"defect_type": "leak", "severity": "severe", "first_reported_date": "2024-02-10"},
                {"defect_type": "mould", "severity": "severe", "first_reported_date": "2023-01-01"},
            ],
        }
    )
    s11 = _by_type(angles, "S11_LTA_BREACH")[0]
    assert "20 days" in s11.why_this_matters
    assert "14 days" in s11.why_this_matters


def test_personal_injury_expert_and_causation_rules():
    angles = _generate(
        {
            "practice_area": "personal_injury",
            "liability_stance": "denied",
            "medical_reports": [
                {"expert": "Dr Able", "causation_opinion": "supports"},
                {"expert": "Dr Baker", "causation_opinion": "disputes", "reasoning_given": False},
            ],
            "part36_offer_date": "2024-01-15",
            "part36_offer_amount": 25000,
        }
    )
    assert _by_type(angles, "EXPERT_CONTRADICTION_ATTACK")[0].win_probability == 75
    assert "Dr Baker" in _by_type(angles, "WEAK_EXPERT_ATTACK")[0].why_this_matters
    assert "denied" in _by_type(angles, "CAUSATION_GAP_ATTACK")[0].why_this_matters
    assert "£25,000.00" in _by_type(angles, "PART_36_PRESSURE")[0].why_this_matters


def test_family_order_breach_scales_and_enables_enforcement():
    angles = _generate(
        {
            "practice_area": "family",
            "order_compliance_deadline": "2024-01-01",
            "order_complied_with": False,
            "disclosure_provided": False,
        }
    )
    breach = _by_type(angles, "NON_COMPLIANCE_ATTACK")[0]
    assert breach.win_probability == 93
    assert "60 Days Overdue" in breach.title
    assert _by_type(angles, "ENFORCEMENT_OPPORTUNITY")[0].win_probability == 75
    assert _by_type(angles, "NON_DISCLOSURE_ATTACK")[0].severity == "CRITICAL"
    assert not _by_type(angles, "WEAK_EVIDENCE_ATTACK")


def test_generator_rejects_templates_outside_the_angle_set(tmp_path: Path):
    path = tmp_path / "templates.json"
    path.write_text(
        '{"criminal": {"no_case_to_answer": {"angle_type": "AWAAB_LAW_BREACH"}}}',
        encoding="utf-8",
    )
    with pytest.raises(ValueError):
        AngleGenerator(AngleTemplateLibrary(path), rule_sets=(CriminalRuleSet(),))


def test_calibration_damps_pace_angle_against_strong_case():
    angle = _angle("PACE_BREACH_EXCLUSION", 70, severity="CRITICAL")
    calibrated = CalibrationEngine().calibrate([angle], _strength(85))
    assert calibrated[0].win_probability == 28

    directed = CalibrationEngine().calibrate([angle], _strength(85, should_downgrade_pace=True))
    assert directed[0].win_probability == 15


def test_calibration_is_monotonic():
    engine = CalibrationEngine()
    for overall in (0, 30, 59, 60, 65, 69, 70, 85, 100):
        for directive in (False, True):
            strength = _strength(
                overall,
                should_downgrade_disclosure_stay=directive,
                should_downgrade_pace=directive,
            )
            for probability in (0, 10, 15, 20, 29, 30, 50, 70, 90, 100):
                angles = [
                    _angle("PACE_BREACH_EXCLUSION", probability),
                    _angle("DISCLOSURE_FAILURE_STAY", probability),
                    _angle("NO_CASE_TO_ANSWER", probability),
                ]
                for before, after in zip(angles, engine.calibrate(angles, strength)):
                    assert 0 <= after.win_probability <= before.win_probability


def test_calibration_softens_disclosure_stay_when_case_is_strong():
    angles = _generate({"practice_area": "criminal", "pace": {"caution_given": False}})
    strength = _strength(
        75,
        should_downgrade_disclosure_stay=True,
        should_downgrade_pace=True,
        language_tone="CONSERVATIVE",
    )
    calibrated = CalibrationEngine().calibrate(angles, strength)

    stay = _by_type(calibrated, "DISCLOSURE_FAILURE_STAY")[0]
    assert stay.win_probability == 17
    assert "disclosure directions" in stay.specific_arguments[0]
    assert "procedural leverage" in stay.specific_arguments[1]
    assert stay.specific_arguments[2].startswith(STAY_CAVEAT)
    assert _by_type(calibrated, "PACE_BREACH_EXCLUSION")[0].win_probability == 17
    assert stay.why_this_matters.startswith("Based on the current documents")


def test_confidence_framing_is_stable():
    framed = frame_with_confidence("The evidence is clear that the defendant was present at the scene all evening.")
    assert framed.startswith("Based on the current documents, this suggests")
    assert frame_with_confidence(framed) == framed
    assert frame_with_confidence("Short text.") == "Short text."


def test_overall_probability_is_severity_weighted():
    assert overall_from_angles([]) == 50
    weighted = overall_from_angles([_angle("NO_CASE_TO_ANSWER", 80, "CRITICAL"), _angle("ABUSE_OF_PROCESS", 40, "LOW")])
    assert weighted == 72
    assert overall_from_angles([_angle("NO_CASE_TO_ANSWER", 100, "CRITICAL")]) == 95


def test_ranker_combines_primary_with_supporting_angles():
    ranker = StrategyRanker()
    primary = _angle(
        "PACE_BREACH_EXCLUSION",
        80,
        combined_with=["NO_CASE_TO_ANSWER"],
        how_to_exploit="Step 1: Obtain the custody record.\nStep 2: Apply to exclude.",
        specific_arguments=["First", "Second", "Third"],
        cross_examination_points=["Q1", "Q2", "Q3"],
    )
    supporting = _angle("NO_CASE_TO_ANSWER", 60)
    ranked = ranker.rank([supporting, primary])
    strategy = ranker.recommend(ranked)

    assert strategy.primary_angle.angle_type == "PACE_BREACH_EXCLUSION"
    assert strategy.combined_probability == 84
    assert strategy.tactical_plan == [
        f"Primary Strategy: {primary.title}",
        "Win Probability: 80%",
        "Step 1: Obtain the custody record.",
        "Argument: First",
        "Argument: Second",
        "Question: Q1",
        "Question: Q2",
        "Supporting Strategies:",
        f"- {supporting.title} (60% win chance)",
    ]


def test_ranker_sort_is_null_safe_and_caps_critical_angles():
    ranker = StrategyRanker()
    angles = [
        _angle("NO_CASE_TO_ANSWER", None, "CRITICAL"),
        _angle("ABUSE_OF_PROCESS", 75, "MEDIUM"),
        _angle("IDENTIFICATION_CHALLENGE", 75, "HIGH"),
        *[_angle("HUMAN_RIGHTS_BREACH", 90 - index, "CRITICAL", title=f"Breach {index}") for index in range(6)],
    ]
    ranked = ranker.rank(angles)
    keys = [rank_key(angle) for angle in ranked]
    assert keys == sorted(keys, reverse=True)
    assert ranked[-1].win_probability is None
    assert ranked.index(angles[2]) < ranked.index(angles[1])
    assert len(ranker.critical_angles(ranked)) == 5


def test_opponent_vulnerabilities_are_grouped():
    ranker = StrategyRanker()
    vulnerabilities = ranker.vulnerabilities(
        [
            _angle("DISCLOSURE_FAILURE_ATTACK", 70, title="Disclosure"),
            _angle("LATE_RESPONSE_ATTACK", 70, "CRITICAL", title="Late", opponent_weakness="Missed deadline"),
            _angle("NON_COMPLIANCE_ATTACK", 85, "CRITICAL", title="Order", opponent_weakness="Missed deadline"),
            _angle("WEAK_EXPERT_ATTACK", 70, title="Expert"),
        ]
    )
    assert vulnerabilities.critical_weaknesses == ["Missed deadline"]
    assert vulnerabilities.evidence_gaps == ["Disclosure", "Expert"]
    assert vulnerabilities.procedural_errors == ["Late", "Order"]


def test_malformed_facts_are_dropped_with_warnings():
    context, warnings = parse_case_context(
        _payload(
            {
                "practice_area": "criminal",
                "pace": {"caution_given": "maybe", "interview_recorded": True},
                "evidence": [
                    {"id": "e1", "type": "Banana"},
                    {"id": "e2", "type": "CCTV", "description": "Shop CCTV"},
                ],
            }
        )
    )
    assert context.facts.pace.caution_given is None
    assert context.facts.pace.interview_recorded is True
    assert [item.id for item in context.facts.evidence] == ["e2"]
    assert len(warnings) == 2
    assert any(warning.startswith("Ignored malformed fact pace.caution_given") for warning in warnings)
    assert any(warning.startswith("Ignored malformed fact evidence.0") for warning in warnings)

    with pytest.raises(ValidationError):
        parse_case_context(_payload({"practice_area": "tax"}))


def test_service_returns_banner_when_no_documents():
    outcome = AssessmentService(angle_generator).assess(_payload({"practice_area": "criminal"}))
    assert not outcome.ok
    assert outcome.report is None
    assert outcome.banner.title == "Insufficient text extracted"
    assert outcome.diagnostics.reason_codes == ["NO_DOCS"]


def test_service_calibrates_strong_case_end_to_end():
    outcome = AssessmentService(angle_generator).assess(
        _payload(
            {
                "practice_area": "criminal",
                "pace": COMPLIANT_PACE,
                "charges": [{"offence": "Wounding with intent", "section": "s18"}],
            },
            (FULL_BUNDLE_TEXT + STRONG_EVIDENCE_TEXT + FILLER,),
        )
    )
    assert outcome.ok
    report = outcome.report
    assert not report.probabilities_suppressed
    assert report.bundle_completeness.completeness == 100
    stay = _by_type(report.all_angles, "DISCLOSURE_FAILURE_STAY")[0]
    assert stay.win_probability == 17
    assert "disclosure directions" in stay.specific_arguments[0]
    assert report.recommended_strategy.primary_angle == report.all_angles[0]
    assert report.overall_win_probability == 22
    assert report.realistic_outcome.startswith("Strong opposing case")
    keys = [rank_key(angle) for angle in report.all_angles]
    assert keys == sorted(keys, reverse=True)


def test_service_suppresses_probabilities_for_thin_bundle():
    outcome = AssessmentService(angle_generator).assess(
        _payload({"practice_area": "criminal"}, ("The defendant was charged with theft from a shop. " + FILLER,))
    )
    report = outcome.report
    assert report.probabilities_suppressed
    assert report.suppression_reason.startswith("Confidence scores hidden")
    assert report.suppression_reason in report.warnings
    assert report.overall_win_probability is None
    assert report.recommended_strategy.combined_probability is None
    assert all(angle.win_probability is None for angle in report.all_angles)
    assert all(angle.why_this_matters for angle in report.all_angles)
    assert "Win Probability: withheld" in report.recommended_strategy.tactical_plan


def test_service_is_idempotent():
    service = AssessmentService(angle_generator)
    payload = _payload(
        {"practice_area": "criminal", "pace": {"caution_given": False}},
        (FULL_BUNDLE_TEXT + FILLER,),
    )
    first = service.assess(payload).report
    second = service.assess(payload).report
    assert first.model_dump(exclude={"generated_at"}) == second.model_dump(exclude={"generated_at"})


def test_document_set_hash_ignores_order():
    first = CaseDocument(name="a.pdf", raw_text="alpha")
    second = CaseDocument(name="b.pdf", raw_text="beta")
    assert document_set_hash([first, second]) == document_set_hash([second, first])
    assert document_set_hash([first]) != document_set_hash([CaseDocument(name="a.pdf", raw_text="alpha!")])


def test_input_hash_covers_facts_reference_date_and_warnings():
    base = _context({"practice_area": "criminal"}, ("alpha", "beta"))
    reordered = base.model_copy(update={"documents": list(reversed(base.documents))})
    assert assessment_input_hash(base) == assessment_input_hash(reordered)

    breached = _context({"practice_area": "criminal", "pace": {"caution_given": False}}, ("alpha", "beta"))
    later = base.model_copy(update={"as_of": date(2024, 6, 1)})
    assert assessment_input_hash(breached) != assessment_input_hash(base)
    assert assessment_input_hash(later) != assessment_input_hash(base)
    assert assessment_input_hash(base, ["Ignored malformed fact pace.caution_given: bad"]) != assessment_input_hash(base)


def test_null_document_fields_are_treated_as_empty():
    context, warnings = parse_case_context(
        {
            "case_id": "nulls",
            "documents": [
                {"raw_text": FILLER, "extracted_facts": None},
                {"name": "scan.pdf", "raw_text": None},
                {"name": None, "raw_text": "", "extracted_facts": '{"evidence": [{"type": "cctv", "description": "Shop CCTV"}]}'},
            ],
            "facts": {"practice_area": "criminal"},
        }
    )
    assert warnings == []
    assert context.documents[0].extracted_facts == {}
    assert context.documents[1].raw_text == ""
    assert context.documents[2].name == ""
    assert context.documents[2].extracted_facts["evidence"][0]["description"] == "Shop CCTV"
    assert [item.type for item in build_evidence_graph(context).items] == ["CCTV"]

    direct = CaseDocument(raw_text=None, extracted_facts=None)
    assert (direct.raw_text, direct.extracted_facts) == ("", {})


def test_unusable_document_facts_are_dropped_with_warnings():
    context, warnings = parse_case_context(
        {
            "case_id": "odd-facts",
            "documents": [
                {"name": "list.json", "raw_text": FILLER, "extracted_facts": "[1, 2]"},
                {"name": "broken.json", "extracted_facts": "{not json"},
                {"name": "number", "extracted_facts": 42},
            ],
            "facts": {"practice_area": "criminal"},
        }
    )
    assert all(document.extracted_facts == {} for document in context.documents)
    assert len(warnings) == 3
    assert warnings[0] == "Ignored malformed fact documents.0.extracted_facts: JSON value is not an object"
    assert warnings[2] == "Ignored malformed fact documents.2.extracted_facts: expected an object, got int"
    assert warnings[1].startswith("Ignored malformed fact documents.1.extracted_facts: invalid JSON")

    outcome = AssessmentService(angle_generator).assess(
        {
            "case_id": "odd-facts",
            "documents": [{"name": "bundle.pdf", "raw_text": FILLER, "extracted_facts": 42}],
            "facts": {"practice_area": "criminal"},
            "as_of": AS_OF,
        }
    )
    assert outcome.ok
    assert "Ignored malformed fact documents.0.extracted_facts: expected an object, got int" in outcome.warnings


def test_half_values_round_up():
    assert [round_half_up(value) for value in (0.5, 2.5, 12.5, 74.5, 74.49)] == [1, 3, 13, 75, 74]
    assert damp(25, DampingBand(minimum=0, factor=0.5, floor=0)) == 13
    assert combined_probability(_angle("NO_CASE_TO_ANSWER", 70), [_angle("ABUSE_OF_PROCESS", 50)]) == 75
    assert overall_from_angles([_angle("NO_CASE_TO_ANSWER", 70), _angle("ABUSE_OF_PROCESS", 71)]) == 71
    assert BundleCompletenessAssessor().assess("personal_injury", "The CNF was sent by post.").completeness == 13


def test_database_is_created_on_first_use(tmp_path: Path):
    path = tmp_path / "nested" / "cache.db"
    database = Database(f"sqlite:///{path}")
    assert database.path == path
    assert not path.exists()

    assert database.query("SELECT COUNT(*) AS total FROM report_cache") == [{"total": 0}]
    assert path.exists()
    assert database.query("SELECT version FROM schema_migrations") == [{"version": "0001_report_cache"}]
