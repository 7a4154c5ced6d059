"""
Learn2Earn Registrar — API Gateway
FastAPI server in front of the submission store and the on-chain grader.

v1.0.0:
  - Fixed, versioned contract under /api/v1 (no alternate endpoint shapes)
  - PUT /api/v1/submissions/{identity}/approve grades on-chain BEFORE the
    store is written; ledger failure leaves the submission PENDING
  - Per-wallet moderation lock (see engine.moderation_workflow)
  - Rate limiting on proof submission via slowapi
  - GET /api/v1/reconciliation lists chain/store divergences

Run as a single worker (moderation locks are process-local):
    uvicorn api.main:create_app --factory --port 3001
"""

import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Security, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security.api_key import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from engine.config import DEFAULT_MODERATOR_KEY, DEFAULT_RATE_LIMIT_SUBMIT, Settings
from engine.errors import RegistrarError, StoreFailureError
from engine.ledger_gateway import LedgerGateway
from engine.moderation_workflow import ModerationWorkflow
from engine.submission_store import Decision, Submission, SubmissionStore

load_dotenv()

# ─── Setup ────────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s :: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logging.Formatter.converter = time.gmtime
log = logging.getLogger("registrar.api")

VERSION = "1.0.0"

MODERATOR_KEY_HEADER = APIKeyHeader(name="x-moderator-key", auto_error=False)

# ─── Rate Limiter ─────────────────────────────────────────────────────────────
# Settings.rate_limit_submit of the app being served, e.g. "20/minute"
_submit_limit = DEFAULT_RATE_LIMIT_SUBMIT
limiter = Limiter(key_func=get_remote_address)


def _submit_rate_limit() -> str:
    return _submit_limit


# ─── Request / Response Models ────────────────────────────────────────────────
class SubmitProofRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identity:        Optional[str] = Field(default=None, description="Wallet address of the learner")
    display_name:    Optional[str] = Field(default=None, alias="displayName")
    proof_reference: Optional[str] = Field(default=None, alias="proofReference")


class ModerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    approved:        bool
    moderator_notes: Optional[str] = Field(default=None, alias="moderatorNotes")


# ─── Serialisation helpers ────────────────────────────────────────────────────
def _iso(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    if ts.tzinfo is None:
        # SQLite hands timestamps back naive; they were written as UTC
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat()


def _status_view(sub: Submission) -> Dict[str, Any]:
    return {
        "submitted":       True,
        "approved":        sub.approved,
        "claimed":         sub.reward_claimed,
        "decision":        sub.decision.value,
        "submittedAt":     _iso(sub.submitted_at),
        "approvedAt":      _iso(sub.decided_at) if sub.approved else None,
        "decidedAt":       _iso(sub.decided_at),
        "claimedAt":       _iso(sub.claimed_at),
        "transactionHash": sub.ledger_tx_id,
        "displayName":     sub.display_name,
        "proofReference":  sub.proof_reference,
    }


def _full_view(sub: Submission) -> Dict[str, Any]:
    return {
        "identity":       sub.identity,
        **_status_view(sub),
        "moderatorNotes": sub.moderator_notes,
    }


def _raise_http(err: RegistrarError) -> None:
    raise HTTPException(status_code=err.status_code, detail=str(err)) from err


# ─── Dependencies ─────────────────────────────────────────────────────────────
def get_store(request: Request) -> SubmissionStore:
    return request.app.state.store


def get_workflow(request: Request) -> ModerationWorkflow:
    return request.app.state.workflow


# ─── Routes ───────────────────────────────────────────────────────────────────
router = APIRouter(prefix="/api/v1", tags=["Submissions"])


@router.post("/submissions", status_code=status.HTTP_201_CREATED)
@limiter.limit(_submit_rate_limit)
def submit_proof(
    request: Request,                          # required by slowapi
    body:    SubmitProofRequest,
    store:   SubmissionStore = Depends(get_store),
) -> Dict[str, Any]:
    if not (body.identity and body.display_name and body.proof_reference):
        raise HTTPException(
            status_code=400,
            detail="Missing required fields: identity, displayName and proofReference are required",
        )
    try:
        submission = store.create(body.identity, body.display_name, body.proof_reference)
    except RegistrarError as e:
        if e.status_code >= 500:
            log.error(f"[SUBMIT] Error saving submission: {e}", exc_info=True)
        _raise_http(e)
    return {"message": "Submission received successfully", "identity": submission.identity}


@router.get("/submissions/approved")
def list_approved(store: SubmissionStore = Depends(get_store)) -> List[Dict[str, str]]:
    try:
        rows = store.list_approved()
    except RegistrarError as e:
        log.error(f"Error fetching approved submissions: {e}")
        _raise_http(e)
    return [{"identity": identity, "displayName": name} for identity, name in rows]


@router.get("/submissions")
def list_submissions(
    decision: Optional[Decision] = Query(default=None),
    store:    SubmissionStore    = Depends(get_store),
) -> List[Dict[str, Any]]:
    try:
        submissions = store.list_all(decision)
    except RegistrarError as e:
        log.error(f"Error fetching submissions: {e}")
        _raise_http(e)
    return [_full_view(s) for s in submissions]


@router.get("/submissions/{identity}")
def get_submission(identity: str, store: SubmissionStore = Depends(get_store)) -> Dict[str, Any]:
    try:
        submission = store.get(identity)
    except RegistrarError as e:
        log.error(f"Error fetching submission: {e}")
        _raise_http(e)
    if submission is None:
        raise HTTPException(status_code=404, detail="No submission found")
    return _status_view(submission)


@router.put("/submissions/{identity}/approve")
def moderate_submission(
    identity:      str,
    body:          ModerateRequest,
    moderator_key: Optional[str]      = Security(MODERATOR_KEY_HEADER),
    workflow:      ModerationWorkflow = Depends(get_workflow),
) -> Dict[str, Any]:
    """
    Approve or reject a submission. Approval distributes the reward on-chain
    in the same grading transaction.
    """
    try:
        outcome = workflow.moderate(identity, body.approved, body.moderator_notes, moderator_key)
    except StoreFailureError as e:
        # already logged CRITICAL by the workflow
        _raise_http(e)
    except RegistrarError as e:
        if e.status_code >= 500:
            log.error(f"[MODERATE] {e}")
        _raise_http(e)

    return {
        "message": (
            "Submission approved and rewards distributed automatically!"
            if outcome.approved else "Submission rejected"
        ),
        "approved":           outcome.approved,
        "txId":               outcome.tx_id,
        "rewardsDistributed": outcome.rewards_distributed,
    }


@router.get("/reconciliation", tags=["Admin"])
def list_divergences(
    moderator_key: Optional[str]      = Security(MODERATOR_KEY_HEADER),
    workflow:      ModerationWorkflow = Depends(get_workflow),
) -> Dict[str, Any]:
    """Wallets graded on-chain whose decision could not be stored."""
    try:
        workflow.authorize(moderator_key)
    except RegistrarError as e:
        _raise_http(e)
    items = [d.to_dict() for d in workflow.divergences]
    return {"count": len(items), "items": items}


# ─── Error handlers ───────────────────────────────────────────────────────────
async def _malformed_request_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


# ─── Startup Validation ───────────────────────────────────────────────────────
def _startup_validation(settings: Settings, gateway: LedgerGateway) -> None:
    """Check critical settings at boot, not silently at the first moderation."""
    warnings_found = []

    if not settings.ledger.registrar_private_key:
        warnings_found.append(
            "NO REGISTRAR_PRIVATE_KEY SET: every approval will fail to grade on-chain. "
            "Set REGISTRAR_PRIVATE_KEY in .env before going to production."
        )
    elif gateway.registrar_address is None:
        warnings_found.append("REGISTRAR_PRIVATE_KEY is not a valid secp256k1 key.")

    if not settings.moderator_key:
        warnings_found.append(
            "NO MODERATOR_KEY SET: all moderation requests will be refused (401)."
        )
    elif settings.moderator_key == DEFAULT_MODERATOR_KEY:
        warnings_found.append(
            f"DEFAULT MODERATOR KEY IN USE ('{DEFAULT_MODERATOR_KEY}'). "
            "Anyone who knows this default can approve rewards."
        )

    for w in warnings_found:
        log.critical(f"\n{'=' * 70}\n⚠️  SECURITY WARNING: {w}\n{'=' * 70}")

    if not warnings_found:
        log.info(f"✅ Startup validation passed. Registrar address: {gateway.registrar_address}")


# ─── App factory ──────────────────────────────────────────────────────────────
def create_app(
    settings: Optional[Settings]        = None,
    store:    Optional[SubmissionStore] = None,
    gateway:  Optional[LedgerGateway]   = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    store    = store or SubmissionStore(settings.database_url)
    gateway  = gateway or LedgerGateway(settings.ledger)

    store.init_schema()
    _startup_validation(settings, gateway)

    app = FastAPI(
        title="Learn2Earn Registrar API",
        description="Proof submission, moderation and on-chain reward grading",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings
    app.state.store    = store
    app.state.gateway  = gateway
    app.state.workflow = ModerationWorkflow(
        store,
        gateway,
        settings.moderator_key,
        lock_wait_sec=settings.moderation_lock_wait_sec,
    )

    global _submit_limit
    _submit_limit = settings.rate_limit_submit
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(RequestValidationError, _malformed_request_handler)

    log.info(f"CORS allowed origins: {settings.allowed_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "status":            "operational",
            "registrar_address": gateway.registrar_address,
            "contract_address":  settings.ledger.contract_address,
            "store_ok":          store.ping(),
            "version":           VERSION,
            "timestamp":         int(time.time()),
        }

    return app


def main() -> None:
    import uvicorn

    uvicorn.run(
        create_app(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3001")),
        workers=1,
    )


if __name__ == "__main__":
    main()
