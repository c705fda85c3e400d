from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional
import logging
import sys

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

# Import configuration and database
from anonvote.config import settings
from anonvote.database import check_connection, close_db, get_db, init_db
from anonvote.errors import VotingError
from anonvote.models import PollStatus

# Import services
from anonvote.services.anon_poll_service import get_anon_poll_service
from anonvote.services.blind_poll_service import get_blind_poll_service
from anonvote.services.group_service import get_group_service
from anonvote.services.identity_service import get_identity_service
from anonvote.services.sync_service import get_sync_service

# Import auth middleware
from anonvote.middleware.auth_middleware import get_current_user, get_optional_user, require_admin

# Import schemas
from anonvote.schemas import (
    AnonPollCreate,
    AnonPollStatusUpdate,
    AnonVoteRequest,
    BatchIdentitiesRequest,
    CurrentUser,
    GroupCreate,
    GroupJoin,
    GroupJoinResponse,
    GroupResponse,
    HealthResponse,
    IdentityRegister,
    IdentityResponse,
    PollCreate,
    PollResponse,
    PollUpdate,
    PollUserStatus,
    PublicKeyResponse,
    RedeemRequest,
    SignRequest,
    SignResponse,
    SyncResponse,
    VerifyPendingRequest,
    VerifyPendingResponse,
    VoteResponse,
)

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)


# ============================================================================
# Startup and Shutdown
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and key material on startup, release on shutdown"""
    logger.info(f"Starting {settings.APP_NAME}...")
    try:
        await init_db()
        logger.info("Database initialized")

        blind_poll_service = get_blind_poll_service()
        logger.info(f"Blind signature suite ready: {blind_poll_service.suite.name}")

        logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} started successfully")
    except Exception as e:
        logger.error(f"Failed to start application: {e}", exc_info=True)
        raise

    yield

    logger.info(f"Shutting down {settings.APP_NAME}...")
    await close_db()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Anonymous community voting with blind-signature tokens and group membership proofs",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Error Handlers
# ============================================================================

@app.exception_handler(VotingError)
async def voting_error_handler(request: Request, exc: VotingError):
    """Typed service errors; the detail is already terse and non-identifying"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "status_code": exc.status_code},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request", "status_code": status.HTTP_400_BAD_REQUEST},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """General exception handler"""
    logger.error(f"Unhandled exception: {type(exc).__name__}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "An error occurred", "status_code": 500},
    )


# ============================================================================
# Health
# ============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    database_ok = await check_connection()
    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=settings.APP_VERSION,
        database="ok" if database_ok else "error",
        signing_suite=get_blind_poll_service().suite.name,
    )


# ============================================================================
# Blind-Token Polls
# ============================================================================

@app.get("/api/v1/polls/public-key", response_model=PublicKeyResponse, tags=["Polls"])
async def get_public_key():
    """RSA public key clients blind their tokens against"""
    return get_blind_poll_service().get_public_key()


@app.post("/api/v1/polls", response_model=PollResponse, status_code=201, tags=["Polls"])
async def create_poll(
    poll_request: PollCreate,
    current_user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await get_blind_poll_service().create_poll(
        db,
        question=poll_request.question,
        options=poll_request.options,
        required_role_id=poll_request.required_role_id,
        created_by=current_user.id,
    )


@app.get("/api/v1/polls", response_model=List[PollResponse], tags=["Polls"])
async def list_polls(
    poll_status: Optional[PollStatus] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
):
    return await get_blind_poll_service().list_polls(db, poll_status)


@app.get("/api/v1/polls/{poll_id}", response_model=PollResponse, tags=["Polls"])
async def get_poll(poll_id: int, db: AsyncSession = Depends(get_db)):
    """Poll details; results appear only once the poll is CLOSED"""
    return await get_blind_poll_service().get_poll(db, poll_id)


@app.patch("/api/v1/polls/{poll_id}", response_model=PollResponse, tags=["Polls"])
async def update_poll(
    poll_id: int,
    update_request: PollUpdate,
    current_user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await get_blind_poll_service().update_poll(
        db,
        poll_id,
        actor=current_user.id,
        question=update_request.question,
        options=update_request.options,
        status=update_request.status,
    )


@app.delete("/api/v1/polls/{poll_id}", status_code=204, tags=["Polls"])
async def delete_poll(
    poll_id: int,
    current_user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await get_blind_poll_service().delete_poll(db, poll_id, actor=current_user.id)
    return Response(status_code=204)


@app.get("/api/v1/polls/{poll_id}/status", response_model=PollUserStatus, tags=["Polls"])
async def poll_user_status(
    poll_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Whether the caller is eligible and has already claimed a token"""
    return await get_blind_poll_service().user_status(db, current_user.id, poll_id)


@app.post("/api/v1/polls/{poll_id}/sign", response_model=SignResponse, tags=["Polls"])
async def sign_blinded_token(
    poll_id: int,
    sign_request: SignRequest,
    current_user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """Blind-sign the caller's token; one signature per member per poll"""
    blind_signature = await get_blind_poll_service().request_signature(
        db, current_user.id if current_user else None, poll_id, sign_request.blinded_message
    )
    return SignResponse(blind_signature=blind_signature)


@app.post("/api/v1/vote/anonymous", response_model=VoteResponse, tags=["Polls"])
async def redeem_vote(redeem_request: RedeemRequest, db: AsyncSession = Depends(get_db)):
    """
    Redeem a blind-signed token

    Deliberately unauthenticated: the token and signature are the only
    credentials, so nothing links the vote to a member.
    """
    result = await get_blind_poll_service().redeem_vote(
        db,
        token=redeem_request.token,
        signature=redeem_request.signature,
        poll_id=redeem_request.poll_id,
        option_id=redeem_request.option_id,
        prepared_message=redeem_request.prepared_message,
    )
    return VoteResponse(success=result["success"], message=result["message"])


# ============================================================================
# Governance: Identities
# ============================================================================

@app.post("/api/v1/governance/identity", response_model=IdentityResponse, tags=["Governance"])
async def register_identity(
    identity_request: IdentityRegister,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await get_identity_service().register_identity(
        db, current_user.id, identity_request.commitment
    )
    return IdentityResponse(
        has_identity=True,
        commitment=result["commitment"],
        already_exists=result["already_exists"],
    )


@app.get("/api/v1/governance/identity", response_model=IdentityResponse, tags=["Governance"])
async def get_identity(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_identity_service().get_identity(db, current_user.id)


@app.post("/api/v1/governance/batch-identities", tags=["Governance"])
async def batch_identities(
    batch_request: BatchIdentitiesRequest,
    current_user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Dry run reports stats; a real run answers 501"""
    return await get_identity_service().batch_create_identities(
        db, dry_run=batch_request.dry_run, limit=batch_request.limit
    )


@app.get("/api/v1/governance/batch-identities", tags=["Governance"])
async def identity_stats(
    current_user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await get_identity_service().identity_stats(db)


# ============================================================================
# Governance: Groups
# ============================================================================

@app.get("/api/v1/governance/groups", response_model=List[GroupResponse], tags=["Governance"])
async def list_groups(db: AsyncSession = Depends(get_db)):
    return await get_group_service().list_groups(db)


@app.post("/api/v1/governance/groups", response_model=GroupResponse, status_code=201, tags=["Governance"])
async def create_group(
    group_request: GroupCreate,
    current_user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    group_service = get_group_service()
    group = await group_service.create_group(
        db,
        name=group_request.name,
        role_id=group_request.role_id,
        category=group_request.category,
        role_name=group_request.role_name,
        actor=current_user.id,
    )
    return await group_service.describe_group(db, group)


@app.post("/api/v1/governance/groups/join", response_model=GroupJoinResponse, tags=["Governance"])
async def join_group(
    join_request: GroupJoin,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_group_service().join_group(
        db, join_request.group_id, join_request.commitment, current_user.id
    )


@app.get("/api/v1/governance/groups/{group_id}", response_model=GroupResponse, tags=["Governance"])
async def get_group(group_id: str, db: AsyncSession = Depends(get_db)):
    """Group with its ordered leaf list, as clients need it to build proofs"""
    group_service = get_group_service()
    group = await group_service.get_group(db, group_id)
    return await group_service.describe_group(db, group, include_members=True)


@app.post("/api/v1/governance/groups/{group_id}/sync", response_model=SyncResponse, tags=["Governance"])
async def sync_group(
    group_id: str,
    current_user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await get_sync_service().sync_group_members(db, group_id, actor=current_user.id)
    return result.to_dict()


@app.delete("/api/v1/governance/groups/{group_id}/members/{commitment}", tags=["Governance"])
async def remove_group_member(
    group_id: str,
    commitment: str,
    current_user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await get_group_service().remove_member(db, group_id, commitment, actor=current_user.id)


@app.post("/api/v1/governance/sync-me", tags=["Governance"])
async def sync_me(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Add the caller to every group their roles make them eligible for"""
    return await get_sync_service().sync_user_to_groups(db, current_user.id)


# ============================================================================
# Governance: Anonymous Polls
# ============================================================================

@app.get("/api/v1/governance/polls", tags=["Governance"])
async def list_anon_polls(
    poll_status: Optional[PollStatus] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
):
    return await get_anon_poll_service().list_polls(db, poll_status)


@app.post("/api/v1/governance/polls", status_code=201, tags=["Governance"])
async def create_anon_poll(
    poll_request: AnonPollCreate,
    current_user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await get_anon_poll_service().create_poll(
        db,
        question=poll_request.question,
        options=poll_request.options,
        created_by=current_user.id,
        group_id=poll_request.group_id,
        description=poll_request.description,
        category=poll_request.category,
        verification_mode=poll_request.verification_mode,
        closes_at=poll_request.closes_at,
    )


@app.get("/api/v1/governance/polls/{poll_id}", tags=["Governance"])
async def get_anon_poll(poll_id: int, db: AsyncSession = Depends(get_db)):
    return await get_anon_poll_service().get_poll(db, poll_id)


@app.post("/api/v1/governance/polls/{poll_id}/open", tags=["Governance"])
async def open_anon_poll(
    poll_id: int,
    current_user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Sync the poll's group, then open voting against the resulting root"""
    return await get_anon_poll_service().open_poll(db, poll_id, actor=current_user.id)


@app.patch("/api/v1/governance/polls/{poll_id}/status", tags=["Governance"])
async def update_anon_poll_status(
    poll_id: int,
    status_request: AnonPollStatusUpdate,
    current_user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await get_anon_poll_service().update_status(
        db, poll_id, status_request.status, actor=current_user.id
    )


@app.post("/api/v1/governance/vote", response_model=VoteResponse, tags=["Governance"])
async def cast_anon_vote(vote_request: AnonVoteRequest, db: AsyncSession = Depends(get_db)):
    """Cast a vote with a group membership proof; no session involved"""
    result = await get_anon_poll_service().cast_vote(db, vote_request.poll_id, vote_request.proof)
    return VoteResponse(success=result["success"], status=result["status"])


@app.get("/api/v1/governance/vote", tags=["Governance"])
async def anon_vote_status(
    poll_id: int = Query(...),
    nullifier: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    return await get_anon_poll_service().vote_status(db, poll_id, nullifier)


@app.post("/api/v1/governance/verify-pending", response_model=VerifyPendingResponse, tags=["Governance"])
async def verify_pending_votes(
    verify_request: VerifyPendingRequest,
    current_user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await get_anon_poll_service().verify_pending(db, verify_request.poll_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "anonvote.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info"
    )
