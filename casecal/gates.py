from __future__ import annotations

import logging
from typing import Mapping, Sequence

from .bundle import serialize_facts
from .config import TEXT_GATE_THRESHOLDS, VISIBILITY_THRESHOLDS, TextGateThresholds, VisibilityThreshold
from .schemas import CaseDocument, GateBanner, GateDecision, TextDiagnostics, TextGateResult

logger = logging.getLogger(__name__)

INSUFFICIENT_TEXT_TITLE = "Insufficient text extracted"

_TEXT_GATE_DETAILS = {
    "NO_DOCS": "No documents found for this case. Upload documents to generate full analysis.",
    "SUSPECTED_SCANNED": (
        "The documents appear to be scanned or image-only. Upload a text-based PDF or run OCR, "
        "then re-analyse."
    ),
    "TEXT_THIN": (
        "Very little text was extracted from the documents. Upload text-based PDFs or run OCR "
        "for better analysis."
    ),
}


class TextInsufficientError(RuntimeError):
    """Raised when too little readable text was extracted to analyse a case."""

    def __init__(self, banner: GateBanner, diagnostics: TextDiagnostics) -> None:
        super().__init__(banner.detail)
        self.banner = banner
        self.diagnostics = diagnostics


class TextSufficiencyGate:
    def __init__(self, thresholds: TextGateThresholds | None = None) -> None:
        self._thresholds = thresholds or TEXT_GATE_THRESHOLDS

    def evaluate(self, documents: Sequence[CaseDocument]) -> TextGateResult:
        document_count = len(documents)
        raw_chars = sum(len(document.raw_text.strip()) for document in documents)
        json_chars = sum(len(serialize_facts(document)) for document in documents)
        average = raw_chars // document_count if document_count else 0

        text_thin = document_count > 0 and raw_chars < self._thresholds.min_raw_chars
        suspected_scanned = text_thin and json_chars < self._thresholds.scanned_max_json_chars

        reason_codes: list[str] = []
        if document_count == 0:
            reason_codes.append("NO_DOCS")
        if suspected_scanned:
            reason_codes.append("SUSPECTED_SCANNED")
        if text_thin:
            reason_codes.append("TEXT_THIN")
        if not reason_codes:
            reason_codes.append("OK")

        diagnostics = TextDiagnostics(
            document_count=document_count,
            total_raw_chars=raw_chars,
            total_json_chars=json_chars,
            avg_raw_chars_per_doc=average,
            suspected_scanned=suspected_scanned,
            reason_codes=reason_codes,
        )
        reason = reason_codes[0]
        if reason == "OK":
            return TextGateResult(ok=True, reason="OK", diagnostics=diagnostics)
        banner = GateBanner(severity="warning", title=INSUFFICIENT_TEXT_TITLE, detail=_TEXT_GATE_DETAILS[reason])
        return TextGateResult(ok=False, reason=reason, banner=banner, diagnostics=diagnostics)

    def guard(self, documents: Sequence[CaseDocument]) -> TextDiagnostics:
        result = self.evaluate(documents)
        if not result.ok:
            logger.info("Text gate rejected input: %s", ", ".join(result.diagnostics.reason_codes))
            raise TextInsufficientError(result.banner, result.diagnostics)
        return result.diagnostics


class ProbabilityVisibilityGate:
    """Decides whether numeric confidence can be shown for a bundle."""

    def __init__(self, thresholds: Mapping[str, VisibilityThreshold] | None = None) -> None:
        self._thresholds = thresholds or VISIBILITY_THRESHOLDS

    def decide(self, practice_area: str, completeness: int, critical_missing_count: int) -> GateDecision:
        try:
            threshold = self._thresholds[practice_area]
        except KeyError as exc:
            raise ValueError(f"No visibility threshold for practice area {practice_area!r}") from exc

        reasons: list[str] = []
        if completeness < threshold.min_completeness:
            reasons.append(
                f"bundle completeness {completeness}% is below the {threshold.min_completeness}% "
                f"required for {practice_area.replace('_', ' ')} matters"
            )
        if critical_missing_count > threshold.max_critical_missing:
            reasons.append(
                f"{critical_missing_count} critical evidence categories are missing "
                f"(at most {threshold.max_critical_missing} allowed)"
            )
        if not reasons:
            return GateDecision(show=True)

        reason = "Confidence scores hidden: " + "; ".join(reasons) + "."
        banner = GateBanner(
            severity="info",
            title="Confidence scores withheld",
            detail="Strategy generated from limited material. Upload the missing evidence to see probabilities.",
        )
        return GateDecision(show=False, reason=reason, banner=banner)


__all__ = [
    "INSUFFICIENT_TEXT_TITLE",
    "ProbabilityVisibilityGate",
    "TextInsufficientError",
    "TextSufficiencyGate",
]
