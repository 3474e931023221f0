from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, List, Mapping, Sequence

from pydantic import ValidationError

from .bundle import BundleCompletenessAssessor, build_corpus
from .calibration import CalibrationEngine, overall_from_angles
from .config import CACHE_ENABLED, CRITICAL_ANGLE_LIMIT, TEMPLATES_PATH
from .db import Database, _utc_now, db
from .evidence import EvidenceStrengthAnalyzer
from .gates import ProbabilityVisibilityGate, TextInsufficientError, TextSufficiencyGate
from .graph import build_evidence_graph
from .ranking import StrategyRanker
from .rules import AngleGenerator, AngleTemplateLibrary, RuleInput
from .schemas import (
    AssessmentOutcome,
    CaseContext,
    CaseDocument,
    DefenseAngle,
    ReportDiagnostics,
    StrategyReport,
    TextDiagnostics,
    parse_case_context,
)

logger = logging.getLogger(__name__)


class ReportCacheError(RuntimeError):
    """Raised when a cached report cannot be read or stored."""


def document_set_hash(documents: Sequence[CaseDocument]) -> str:
    """Content hash of a document set; independent of document order."""

    canonical = sorted(
        (
            json.dumps(
                {"name": document.name, "raw_text": document.raw_text, "extracted_facts": document.extracted_facts},
                sort_keys=True,
                ensure_ascii=False,
                default=str,
            )
            for document in documents
        ),
    )
    return hashlib.sha256(json.dumps(canonical, ensure_ascii=False).encode("utf-8")).hexdigest()


def assessment_input_hash(context: CaseContext, warnings: Sequence[str] = ()) -> str:
    """Hash of everything a report depends on: documents, facts, reference date and parse warnings."""

    key = {
        "documents": document_set_hash(context.documents),
        "facts": context.facts.model_dump(mode="json"),
        "as_of": context.as_of.isoformat(),
        "warnings": list(warnings),
    }
    return hashlib.sha256(json.dumps(key, sort_keys=True, ensure_ascii=False).encode("utf-8")).hexdigest()


class ReportCache:
    def __init__(self, database: Database) -> None:
        self._db = database

    def get(self, tenant_id: str, case_id: str, input_hash: str, analysis_name: str) -> StrategyReport | None:
        try:
            rows = self._db.query(
                """
                SELECT payload FROM report_cache
                WHERE tenant_id = ? AND case_id = ? AND input_hash = ? AND analysis_name = ?
                """,
                (tenant_id, case_id, input_hash, analysis_name),
            )
        except sqlite3.Error as exc:
            raise ReportCacheError(f"Could not read cached report for {case_id}") from exc
        if not rows:
            return None
        try:
            return StrategyReport.model_validate_json(rows[0]["payload"])
        except ValidationError as exc:
            raise ReportCacheError(f"Cached report for {case_id} is unreadable") from exc

    def put(self, tenant_id: str, input_hash: str, analysis_name: str, report: StrategyReport) -> None:
        try:
            self._db.execute(
                """
                INSERT OR REPLACE INTO report_cache (tenant_id, case_id, input_hash, analysis_name, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (tenant_id, report.case_id, input_hash, analysis_name, report.model_dump_json(), _utc_now()),
            )
        except sqlite3.Error as exc:
            raise ReportCacheError(f"Could not store report for {report.case_id}") from exc

    def count(self, tenant_id: str, case_id: str) -> int:
        rows = self._db.query(
            "SELECT COUNT(*) AS total FROM report_cache WHERE tenant_id = ? AND case_id = ?",
            (tenant_id, case_id),
        )
        return int(rows[0]["total"])


def _report_diagnostics(diagnostics: TextDiagnostics) -> ReportDiagnostics:
    return ReportDiagnostics(
        document_count=diagnostics.document_count,
        total_raw_chars=diagnostics.total_raw_chars,
        reason_codes=diagnostics.reason_codes,
    )


class AssessmentService:
    def __init__(
        self,
        generator: AngleGenerator,
        *,
        text_gate: TextSufficiencyGate | None = None,
        bundle_assessor: BundleCompletenessAssessor | None = None,
        visibility_gate: ProbabilityVisibilityGate | None = None,
        analyzer: EvidenceStrengthAnalyzer | None = None,
        calibration: CalibrationEngine | None = None,
        ranker: StrategyRanker | None = None,
        cache: ReportCache | None = None,
    ) -> None:
        self._generator = generator
        self._text_gate = text_gate or TextSufficiencyGate()
        self._bundle = bundle_assessor or BundleCompletenessAssessor()
        self._visibility = visibility_gate or ProbabilityVisibilityGate()
        self._analyzer = analyzer or EvidenceStrengthAnalyzer()
        self._calibration = calibration or CalibrationEngine()
        self._ranker = ranker or StrategyRanker()
        self._cache = cache

    def assess(
        self,
        payload: Mapping[str, Any],
        *,
        analysis_name: str = "strategy_report",
        use_cache: bool = True,
    ) -> AssessmentOutcome:
        context, warnings = parse_case_context(payload)
        try:
            diagnostics = self._text_gate.guard(context.documents)
        except TextInsufficientError as exc:
            return AssessmentOutcome(
                ok=False,
                banner=exc.banner,
                diagnostics=_report_diagnostics(exc.diagnostics),
                warnings=warnings,
            )

        cache = self._cache if use_cache else None
        input_hash = assessment_input_hash(context, warnings) if cache is not None else ""
        if cache is not None:
            cached = cache.get(context.tenant_id, context.case_id, input_hash, analysis_name)
            if cached is not None:
                logger.info("Report cache hit for %s/%s", context.tenant_id, context.case_id)
                return AssessmentOutcome(
                    ok=True,
                    report=cached,
                    diagnostics=cached.diagnostics,
                    warnings=cached.warnings,
                    cached=True,
                )
            logger.info("Report cache miss for %s/%s", context.tenant_id, context.case_id)

        report = self.build_report(context, diagnostics, warnings)
        if cache is not None:
            cache.put(context.tenant_id, input_hash, analysis_name, report)
        return AssessmentOutcome(ok=True, report=report, diagnostics=report.diagnostics, warnings=report.warnings)

    def build_report(
        self,
        context: CaseContext,
        diagnostics: TextDiagnostics,
        warnings: Sequence[str] = (),
    ) -> StrategyReport:
        area = context.practice_area
        corpus = build_corpus(context.documents)
        bundle = self._bundle.assess(area, corpus)
        graph = build_evidence_graph(context)
        strength = self._analyzer.analyze(context, corpus, graph)
        raw_angles = self._generator.generate(RuleInput(context=context, graph=graph, bundle=bundle))
        calibrated = self._calibration.calibrate(raw_angles, strength)

        ranked = self._ranker.rank(calibrated)
        top = self._ranker.critical_angles(ranked) or ranked[:CRITICAL_ANGLE_LIMIT]
        overall: int | None = overall_from_angles(top)

        report_warnings: List[str] = [*warnings, *graph.warnings, *strength.warnings]
        decision = self._visibility.decide(area, bundle.completeness, bundle.critical_missing_count)
        if not decision.show:
            logger.info("Probabilities suppressed for %s: %s", context.case_id, decision.reason)
            ranked = self._ranker.rank(self._suppress(ranked))
            overall = None
            report_warnings.append(decision.reason or "")

        return StrategyReport(
            case_id=context.case_id,
            practice_area=area,
            overall_win_probability=overall,
            all_angles=ranked,
            critical_angles=self._ranker.critical_angles(ranked),
            recommended_strategy=self._ranker.recommend(ranked, suppressed=not decision.show),
            opponent_vulnerabilities=self._ranker.vulnerabilities(ranked),
            evidence_strength=strength,
            bundle_completeness=bundle,
            probabilities_suppressed=not decision.show,
            suppression_reason=decision.reason,
            realistic_outcome=strength.calibration.realistic_outcome,
            warnings=list(dict.fromkeys(report_warnings)),
            diagnostics=_report_diagnostics(diagnostics),
            generated_at=datetime.now(timezone.utc),
        )

    def _suppress(self, angles: Sequence[DefenseAngle]) -> list[DefenseAngle]:
        return [angle.model_copy(update={"win_probability": None}) for angle in angles]


angle_library = AngleTemplateLibrary(TEMPLATES_PATH)
angle_generator = AngleGenerator(angle_library)
probability_gate = ProbabilityVisibilityGate()
report_cache = ReportCache(db) if CACHE_ENABLED else None
assessment_service = AssessmentService(angle_generator, visibility_gate=probability_gate, cache=report_cache)


__all__ = [
    "AssessmentService",
    "ReportCache",
    "ReportCacheError",
    "angle_generator",
    "angle_library",
    "assessment_input_hash",
    "assessment_service",
    "document_set_hash",
    "probability_gate",
    "report_cache",
]
