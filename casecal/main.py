from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .config import ALLOWED_ORIGINS, threshold_table
from .schemas import AssessmentOutcome, AssessmentRequest, GateDecision, ProbabilityGateRequest
from .services import ReportCacheError, assessment_service, probability_gate

app = FastAPI(title="CaseCal Engine", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS or ["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With"],
)


@app.get("/")
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/assess", response_model=AssessmentOutcome)
async def assess_case(payload: AssessmentRequest) -> AssessmentOutcome:
    try:
        return assessment_service.assess(
            payload.context_payload(),
            analysis_name=payload.analysis_name,
            use_cache=payload.use_cache,
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors(include_url=False, include_context=False, include_input=False),
        ) from exc
    except ReportCacheError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@app.post("/gates/probability", response_model=GateDecision)
async def decide_probability_visibility(payload: ProbabilityGateRequest) -> GateDecision:
    return probability_gate.decide(payload.practice_area, payload.completeness, payload.critical_missing_count)


@app.get("/thresholds")
def thresholds() -> dict[str, object]:
    return threshold_table()
