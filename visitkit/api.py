import hmac
import json
import logging
from collections import Counter
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from visitkit.config import Config
from visitkit.cron import CronTrigger
from visitkit.data_loader import load_store
from visitkit.dates import today_utc
from visitkit.errors import (
    AuthorizationError,
    DataValidationError,
    RecordNotFoundError,
    StoreError,
)
from visitkit.recommendation_engine import RecommendationEngine
from visitkit.scheduling import (
    reanchor_section,
    subject_compliance_summary,
    subject_drug_compliance,
    subject_schedule,
)
from visitkit.schemas import (
    BatchRecomputeRequest,
    Caller,
    EngineSettings,
    ReanchorRequest,
    RecomputeRequest,
)
from visitkit.store import TrialStore

logger = logging.getLogger(__name__)


app = FastAPI(
    title="Visit Kit API",
    description="Visit scheduling, drug compliance and lab kit recommendations for clinical studies",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:3001", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----- dependencies -----
# The store is never a route dependency: handlers fetch it only after the
# caller and the input have been checked.

def get_store() -> TrialStore:
    """Store shared by every request; loaded from DATA_DIR on first use."""
    store = getattr(app.state, "store", None)
    if store is None:
        try:
            store = load_store()
        except (FileNotFoundError, DataValidationError) as e:
            logger.error(f"Could not load data: {e}")
            raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")
        app.state.store = store
    return store


def get_settings() -> EngineSettings:
    return Config.engine_settings()


def get_engine(settings: EngineSettings) -> RecommendationEngine:
    return RecommendationEngine(get_store(), settings)


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_study_access: Optional[str] = Header(None),
) -> Caller:
    """Caller resolved by the upstream gateway."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    access = [part.strip() for part in (x_study_access or "").split(",") if part.strip()]
    return Caller(user_id=x_user_id.strip(), study_access=access)


def require_study_access(caller: Caller, study_id: str) -> None:
    if not caller.can_access(study_id):
        logger.warning(f"User {caller.user_id} denied access to study {study_id}")
        raise HTTPException(status_code=403, detail="Access denied for this study")


def check_job_token(authorization: Optional[str]) -> None:
    """
    Validate the batch job's bearer token.

    Raises:
        AuthorizationError: 500 when no token is configured, 401 on mismatch
    """
    expected = Config.LAB_KIT_RECOMMENDATION_JOB_TOKEN
    if not expected:
        raise AuthorizationError("Lab kit recommendation job token is not configured.", status_code=500)
    scheme, _, provided = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(provided.strip(), expected):
        raise AuthorizationError("Unauthorized", status_code=401)


async def read_json_body(request: Request, required: bool = True) -> Any:
    raw = await request.body()
    if not raw.strip():
        if required:
            raise HTTPException(status_code=400, detail="Request body must be an object.")
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON.")


def _validation_detail(e: ValidationError) -> str:
    return "; ".join(error["msg"].removeprefix("Value error, ") for error in e.errors())


# ----- routes -----

@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Visit Kit",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.post("/lab-kit-recommendations/recompute")
async def recompute_recommendations(
    request: Request,
    caller: Caller = Depends(get_caller),
    settings: EngineSettings = Depends(get_settings),
):
    """
    Recompute lab kit recommendations for one study.

    Body: {"studyId": str, "daysAhead": int (optional)}

    Returns:
        {"studyId", "created", "updated", "expired"}
    """
    body = await read_json_body(request)
    try:
        payload = RecomputeRequest.model_validate(body)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_detail(e))

    require_study_access(caller, payload.study_id)
    engine = get_engine(settings)

    try:
        result = engine.recompute(payload.study_id, payload.days_ahead)
        return result.model_dump(by_alias=True, include={"study_id", "created", "updated", "expired"})
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Recompute failed for study {payload.study_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.post("/lab-kit-recommendations/recompute-all")
async def recompute_all_recommendations(
    request: Request,
    authorization: Optional[str] = Header(None),
    settings: EngineSettings = Depends(get_settings),
):
    """
    Recompute recommendations for every study in the given statuses.

    Called by the scheduled job with a bearer job token, not a user session.
    Returns 200 with per-study outcomes even when some studies fail.
    """
    try:
        check_job_token(authorization)
    except AuthorizationError as e:
        if e.status_code == 500:
            logger.error(str(e))
        return JSONResponse(status_code=e.status_code, content={"error": str(e)})

    body = await read_json_body(request, required=False)
    try:
        payload = BatchRecomputeRequest.model_validate(body)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_detail(e))
    engine = get_engine(settings)

    try:
        batch = engine.recompute_all(payload.days_ahead, payload.study_statuses)
        return batch.model_dump(by_alias=True, exclude_none=True)
    except Exception as e:
        logger.error(f"Batch recompute failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.get("/cron/recompute-lab-kits")
def cron_recompute_lab_kits(x_cron_trigger: Optional[str] = Header(None)):
    """Scheduled trigger: forwards the default batch body and relays the response."""
    if not x_cron_trigger:
        raise HTTPException(status_code=403, detail="Cron trigger header required")
    relayed = CronTrigger().run()
    return Response(content=relayed.content, status_code=relayed.status_code, media_type=relayed.media_type)


@app.get("/lab-kit-recommendations")
async def list_recommendations(
    study_id: str = Query(..., alias="studyId", min_length=1),
    caller: Caller = Depends(get_caller),
):
    """List a study's recommendations with counts per status."""
    require_study_access(caller, study_id)
    store = get_store()
    try:
        store.get_study(study_id)
        rows = store.recommendations(study_id)
        records = rows.astype(object).where(rows.notna(), None).to_dict(orient="records")
        counts: Dict[str, int] = dict(Counter(row["status"] for row in records if row.get("status")))
        return {"studyId": study_id, "recommendations": records, "counts": counts}
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to list recommendations: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.get("/lab-kits")
async def list_lab_kits(
    study_id: str = Query(..., alias="studyId", min_length=1),
    caller: Caller = Depends(get_caller),
):
    """List a study's lab kits after moving past-expiry kits to 'expired'."""
    require_study_access(caller, study_id)
    store = get_store()
    try:
        store.get_study(study_id)
        with store.transaction(f"lab kit sweep {study_id}"):
            expired = store.expire_lab_kits(study_id, today_utc())
        kits = store.lab_kits(study_id)
        records = kits.astype(object).where(kits.notna(), None).to_dict(orient="records")
        return {"studyId": study_id, "expired": expired, "kits": records}
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to list lab kits: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.get("/lab-kits/forecast")
async def get_lab_kit_forecast(
    study_id: str = Query(..., alias="studyId", min_length=1),
    days_ahead: Optional[int] = Query(None, alias="daysAhead", ge=1),
    caller: Caller = Depends(get_caller),
    settings: EngineSettings = Depends(get_settings),
):
    """Per-kit-type demand, supply and status (critical / warning / ok), most severe first."""
    require_study_access(caller, study_id)
    engine = get_engine(settings)
    try:
        forecast = engine.forecast(study_id, days_ahead)
        return forecast.model_dump(by_alias=True)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Forecast failed for study {study_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


def _subject_study(store: TrialStore, subject_id: str) -> str:
    try:
        return store.get_subject(subject_id)["study_id"]
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/subjects/{subject_id}/visits")
async def get_subject_visits(
    subject_id: str,
    caller: Caller = Depends(get_caller),
):
    """A subject's visits with projected dates, windows and derived status."""
    store = get_store()
    require_study_access(caller, _subject_study(store, subject_id))
    try:
        visits = subject_schedule(store, subject_id)
        return {"subjectId": subject_id, "visits": [visit.model_dump() for visit in visits]}
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreError as e:
        logger.error(f"Failed to build schedule for subject {subject_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.get("/subjects/{subject_id}/drug-compliance")
async def get_subject_drug_compliance(
    subject_id: str,
    caller: Caller = Depends(get_caller),
    settings: EngineSettings = Depends(get_settings),
):
    """Per-visit drug compliance for a subject; orphaned cycles under 'unlinked'."""
    store = get_store()
    require_study_access(caller, _subject_study(store, subject_id))
    try:
        groups = subject_drug_compliance(
            store, subject_id, compliance_threshold=settings.default_compliance_threshold
        )
        return {
            "subjectId": subject_id,
            "visits": {key: group.model_dump() for key, group in groups.items()},
        }
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to compute compliance for subject {subject_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.get("/subjects/{subject_id}/compliance")
async def get_subject_compliance(
    subject_id: str,
    caller: Caller = Depends(get_caller),
    settings: EngineSettings = Depends(get_settings),
):
    """Drug, visit-timing and weighted overall compliance for a subject."""
    store = get_store()
    require_study_access(caller, _subject_study(store, subject_id))
    try:
        return subject_compliance_summary(
            store, subject_id, compliance_threshold=settings.default_compliance_threshold
        )
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to summarize compliance for subject {subject_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


@app.patch("/subject-sections/update-anchor")
async def update_section_anchor(
    request: Request,
    caller: Caller = Depends(get_caller),
):
    """
    Move a subject section's anchor date.

    Body: {"subjectSectionId": str, "anchorDate": "YYYY-MM-DD"}
    Only visits still in 'scheduled' status are rescheduled.
    """
    body = await read_json_body(request)
    try:
        payload = ReanchorRequest.model_validate(body)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_detail(e))
    store = get_store()

    try:
        section = store.get_section(payload.subject_section_id)
        require_study_access(caller, _subject_study(store, section["subject_id"]))
        return reanchor_section(store, payload.subject_section_id, payload.anchor_date)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to re-anchor section {payload.subject_section_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=Config.LOG_LEVEL)
    uvicorn.run(app, host="0.0.0.0", port=8000)
