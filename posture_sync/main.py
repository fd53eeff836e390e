# Main FastAPI Application - Remote Daily Summary Store
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError

from posture_sync import auth
from posture_sync import database
from posture_sync import logger
from posture_sync.schemas import SummaryResponse, SummaryUpsertRequest

# Initialize FastAPI
app = FastAPI(
    title="Posture Summary Store",
    description="Per-user daily forward-head posture summaries, replaced by (user, date)",
    version="1.0.0"
)

# Missing header must be 401 like a bad token, not HTTPBearer's default 403
security = HTTPBearer(auto_error=False)


# ============================================================================
# DEPENDENCY INJECTION - JWT Auth
# ============================================================================

def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> str:
    """
    Extract user_id from JWT token in Authorization header

    Raises HTTPException if token is missing or invalid
    """
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    user_id = auth.extract_user_id(credentials.credentials)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return user_id


def _response(summary: dict) -> SummaryResponse:
    return SummaryResponse(**summary)


# ============================================================================
# STARTUP
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize database on startup"""
    logger.log_lifecycle("STARTUP", "Initializing Posture Summary Store")

    db_ok = database.test_connection()
    init_ok = database.init_database()

    if db_ok and init_ok:
        logger.log_success("Server Ready", {"database": "Connected"})
    else:
        logger.log_error("Startup Failed", Exception("Database initialization issue"))


# ============================================================================
# HEALTH CHECK
# ============================================================================

@app.get("/health")
async def health_check():
    db_ok = database.test_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "connected" if db_ok else "disconnected",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# ============================================================================
# DAILY SUMMARIES
# ============================================================================

@app.put("/summaries", response_model=SummaryResponse, response_model_by_alias=True)
def put_summary(request: SummaryUpsertRequest, user_id: str = Depends(get_current_user)):
    """
    Upsert the cumulative summary for one local date

    The body replaces whatever is stored for (user, dateISO). Bodies that
    fail validation never reach the database (FastAPI answers 422).
    """
    logger.log_api("PUT /summaries", {"user_id": user_id, "date": request.date_iso, "count": request.count})
    try:
        summary = database.upsert_summary(
            user_id=user_id,
            date_iso=request.date_iso,
            sum_weighted=request.sum_weighted,
            weight_seconds=request.weight_seconds,
            count=request.count,
            bad_seconds=request.bad_seconds
        )
    except SQLAlchemyError as e:
        logger.log_error("Summary Upsert Failed", e, {"user_id": user_id, "date": request.date_iso})
        raise HTTPException(status_code=503, detail="Summary store unavailable")

    return _response(summary)


@app.get("/summaries/{date_iso}", response_model=SummaryResponse, response_model_by_alias=True)
def get_summary(date_iso: str, user_id: str = Depends(get_current_user)):
    try:
        summary = database.get_summary(user_id, date_iso)
    except SQLAlchemyError as e:
        logger.log_error("Summary Fetch Failed", e, {"user_id": user_id, "date": date_iso})
        raise HTTPException(status_code=503, detail="Summary store unavailable")

    if summary is None:
        raise HTTPException(status_code=404, detail=f"No summary for {date_iso}")
    return _response(summary)


@app.get("/summaries", response_model=List[SummaryResponse], response_model_by_alias=True)
def list_summaries(limit: int = 31, user_id: str = Depends(get_current_user)):
    try:
        summaries = database.list_summaries(user_id, limit=max(1, min(limit, 366)))
    except SQLAlchemyError as e:
        logger.log_error("Summary List Failed", e, {"user_id": user_id})
        raise HTTPException(status_code=503, detail="Summary store unavailable")

    return [_response(s) for s in summaries]
