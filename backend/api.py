"""
RivalPicks API - Bet Resolution & Fulfillment

Main API endpoints:
- /bets/* - Create bets, join them, vote on outcomes, cancel
- /bets/{id}/fulfillment/* - Social stake confirmation
- /users/{id}/* - Credit balances and ledger history

SECURITY:
- CORS restricted to allowed origins
- Caller identity from the X-User-Id header (set by the auth gateway)
- Admin authentication for overrides, deletion and credit grants
"""

import os
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from resolution import (
    BetType, StakeType, ResolutionCoordinator, build_coordinator,
    ResolutionError, BetNotFoundError, UnauthorizedResolverError, NotAWinnerError,
    DuplicateVoteError, DuplicateParticipationError, DuplicateConfirmationError,
    InvalidStateTransitionError, IncompleteVotingError,
)

# Background scheduler
from scheduler import setup_scheduler, shutdown_scheduler

load_dotenv()

# Setup logging
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("RivalPicks-API")

# ==================== SECURITY CONFIG ====================

ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    os.getenv("FRONTEND_URL", "http://localhost:3000"),
]

# Allow all origins if CORS_ALLOW_ALL is set (for development/testing)
if os.getenv("CORS_ALLOW_ALL", "").lower() == "true":
    ALLOWED_ORIGINS = ["*"]

# Admin API key for protected endpoints
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "rivalpicks-admin-key-change-in-prod")

# Exception type -> HTTP status. First match wins, anything else is a 400.
ERROR_STATUS = [
    (BetNotFoundError, 404),
    (UnauthorizedResolverError, 403),
    (NotAWinnerError, 403),
    (DuplicateVoteError, 409),
    (DuplicateParticipationError, 409),
    (DuplicateConfirmationError, 409),
    (InvalidStateTransitionError, 409),
    (IncompleteVotingError, 202),
]


# ==================== SECURITY HELPERS ====================

def verify_admin_key(x_admin_key: str = Header(None)) -> bool:
    """Verify admin API key for protected endpoints."""
    if not x_admin_key or x_admin_key != ADMIN_API_KEY:
        raise HTTPException(
            status_code=403,
            detail="Invalid or missing admin API key"
        )
    return True


def current_user(x_user_id: str = Header(None)) -> str:
    """Authenticated caller, as forwarded by the auth gateway."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def get_coordinator(request: Request) -> ResolutionCoordinator:
    return request.app.state.coordinator


def status_for(exc: ResolutionError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400


async def resolution_error_handler(request: Request, exc: ResolutionError):
    status_code = status_for(exc)
    if status_code >= 400:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc}")
    body = {"success": False, "error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, IncompleteVotingError):
        body["pending_resolvers"] = sorted(exc.pending_resolvers)
    return JSONResponse(status_code=status_code, content=body)


# ==================== REQUEST MODELS (with validation) ====================

class CreateBetRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    bet_type: BetType
    stake_type: StakeType = StakeType.CREDIT
    stake_amount: Optional[Decimal] = Field(None, gt=0, le=100000)
    social_stake_description: Optional[str] = Field(None, max_length=500)
    options: List[str] = Field(default_factory=list, max_length=10)
    resolver_ids: List[str] = Field(..., min_length=1)
    deadline: datetime
    resolution_deadline: Optional[datetime] = None
    max_participants: Optional[int] = Field(None, ge=1)

    @field_validator('title')
    @classmethod
    def validate_title(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Title cannot be empty")
        return v.strip()

    @field_validator('stake_amount')
    @classmethod
    def validate_stake(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        """Stakes are whole cents."""
        if v is not None and v != v.quantize(Decimal("0.01")):
            raise ValueError("Stake amount cannot have more than 2 decimal places")
        return v


class ParticipateRequest(BaseModel):
    chosen_option: Optional[str] = Field(None, max_length=100)
    predicted_value: Optional[str] = Field(None, max_length=200)


class VoteRequest(BaseModel):
    outcome: Optional[str] = Field(None, max_length=100)
    winner_ids: Optional[List[str]] = None
    reasoning: Optional[str] = Field(None, max_length=1000)


class ForceResolveRequest(BaseModel):
    outcome: Optional[str] = Field(None, max_length=100)
    winner_ids: Optional[List[str]] = None
    reason: str = Field(..., min_length=3, max_length=500)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class WinnerConfirmRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=500)


class LoserClaimRequest(BaseModel):
    proof_url: Optional[str] = Field(None, max_length=500)
    proof_description: Optional[str] = Field(None, max_length=1000)


class CreditsRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, le=1000000)


router = APIRouter()


# ==================== HEALTH CHECK ====================

@router.get("/health")
def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# ==================== BET ENDPOINTS ====================

@router.post("/bets", status_code=201)
def create_bet(
    request: CreateBetRequest,
    user_id: str = Depends(current_user),
    coordinator: ResolutionCoordinator = Depends(get_coordinator),
):
    """Create a bet. The caller becomes its creator."""
    bet = coordinator.create_bet(
        title=request.title,
        creator_id=user_id,
        bet_type=request.bet_type,
        resolver_ids=request.resolver_ids,
        deadline=request.deadline,
        stake_type=request.stake_type,
        stake_amount=request.stake_amount,
        social_stake_description=request.social_stake_description,
        options=request.options,
        max_participants=request.max_participants,
        resolution_deadline=request.resolution_deadline,
    )
    return {"success": True, "bet": bet.to_dict()}


@router.post("/bets/sweep")
def sweep_bets(
    admin_verified: bool = Depends(verify_admin_key),
    coordinator: ResolutionCoordinator = Depends(get_coordinator),
):
    """
    Run the deadline sweeps now.
    The scheduler runs the same sweeps periodically.
    """
    closed = coordinator.close_expired_bets()
    resolved = coordinator.resolve_overdue_bets()
    reminded = coordinator.send_deadline_reminders()
    return {
        "closed": closed,
        "resolved": [{"bet_id": bet_id, "tally_state": state} for bet_id, state in resolved],
        "reminded": reminded,
    }


@router.get("/bets/{bet_id}")
def get_bet(bet_id: str, coordinator: ResolutionCoordinator = Depends(get_coordinator)):
    return {"bet": coordinator.get_bet_details(bet_id)}


@router.delete("/bets/{bet_id}")
def delete_bet(
    bet_id: str,
    admin_verified: bool = Depends(verify_admin_key),
    coordinator: ResolutionCoordinator = Depends(get_coordinator),
):
    """
    Admin delete of a bet and everything attached to it.
    Ledger transactions are kept.
    """
    counts = coordinator.delete_bet(bet_id)
    return {"success": True, "deleted": counts}


@router.post("/bets/{bet_id}/participate", status_code=201)
def participate(
    bet_id: str,
    request: ParticipateRequest,
    user_id: str = Depends(current_user),
    coordinator: ResolutionCoordinator = Depends(get_coordinator),
):
    """
    Join a bet.

    Requires one of:
    - chosen_option: for BINARY / MULTIPLE_CHOICE bets
    - predicted_value: for PREDICTION bets
    """
    participation = coordinator.place_bet(
        bet_id=bet_id,
        user_id=user_id,
        chosen_option=request.chosen_option,
        predicted_value=request.predicted_value,
    )
    return {"success": True, "participation": participation.to_dict()}


@router.get("/bets/{bet_id}/participations")
def get_participations(bet_id: str, coordinator: ResolutionCoordinator = Depends(get_coordinator)):
    participations = coordinator.get_participations(bet_id)
    return {
        "bet_id": bet_id,
        "count": len(participations),
        "participations": [p.to_dict() for p in participations],
    }


@router.post("/bets/{bet_id}/close")
def close_bet(
    bet_id: str,
    user_id: str = Depends(current_user),
    coordinator: ResolutionCoordinator = Depends(get_coordinator),
):
    """Creator closes betting early and opens voting."""
    _require_creator(coordinator, bet_id, user_id)
    bet = coordinator.close_bet(bet_id)
    return {"success": True, "bet": bet.to_dict()}


@router.post("/bets/{bet_id}/vote")
def cast_vote(
    bet_id: str,
    request: VoteRequest,
    user_id: str = Depends(current_user),
    coordinator: ResolutionCoordinator = Depends(get_coordinator),
):
    """
    Cast a resolver vote on a closed bet.

    Requires:
    - outcome: winning option (BINARY / MULTIPLE_CHOICE)
    - winner_ids: participants who won (PREDICTION, may be empty)
    - reasoning: Optional explanation for vote
    """
    vote, tally = coordinator.submit_vote(
        bet_id=bet_id,
        resolver_id=user_id,
        outcome=request.outcome,
        winner_ids=request.winner_ids,
        reasoning=request.reasoning,
    )
    return {
        "success": True,
        "vote": vote.to_dict(),
        "resolved": bool(tally and tally.accepted),
        "tally": tally.to_dict() if tally else None,
    }


@router.post("/bets/{bet_id}/resolve")
def resolve_bet(
    bet_id: str,
    user_id: str = Depends(current_user),
    coordinator: ResolutionCoordinator = Depends(get_coordinator),
):
    """
    Attempt resolution from the votes cast so far.
    Answers 202 with the pending resolvers while voting is incomplete.
    """
    tally = coordinator.try_resolve(bet_id)
    return {
        "success": tally.accepted,
        "tally": tally.to_dict(),
        "bet": coordinator.get_bet_details(bet_id),
    }


@router.post("/bets/{bet_id}/force-resolve")
def force_resolve_bet(
    bet_id: str,
    request: ForceResolveRequest,
    admin_verified: bool = Depends(verify_admin_key),
    coordinator: ResolutionCoordinator = Depends(get_coordinator),
):
    """
    Admin force-resolve a tied or stalled bet.
    Requires X-Admin-Key header.
    """
    coordinator.force_resolve(
        bet_id=bet_id,
        outcome=request.outcome,
        winner_ids=request.winner_ids,
        reason=request.reason,
    )
    return {"success": True, "bet": coordinator.get_bet_details(bet_id)}


@router.post("/bets/{bet_id}/cancel")
def cancel_bet(
    bet_id: str,
    request: CancelRequest = None,
    user_id: str = Depends(current_user),
    coordinator: ResolutionCoordinator = Depends(get_coordinator),
):
    """Creator cancels the bet; every placed stake is refunded."""
    _require_creator(coordinator, bet_id, user_id)
    bet = coordinator.cancel_bet(bet_id, reason=request.reason if request else None)
    return {"success": True, "bet": bet.to_dict()}


@router.get("/bets/{bet_id}/resolution")
def get_resolution_status(bet_id: str, coordinator: ResolutionCoordinator = Depends(get_coordinator)):
    """Voting progress: who voted, who is pending, vote distribution."""
    status = coordinator.get_resolution_status(bet_id)
    status["votes"] = [v.to_dict() for v in coordinator.get_votes(bet_id)]
    return status


def _require_creator(coordinator: ResolutionCoordinator, bet_id: str, user_id: str):
    bet = coordinator.get_bet(bet_id)
    if bet.creator_id != user_id:
        raise HTTPException(status_code=403, detail="Only the bet creator can do this")


# ==================== FULFILLMENT ENDPOINTS ====================

@router.get("/bets/{bet_id}/fulfillment")
def get_fulfillment(bet_id: str, coordinator: ResolutionCoordinator = Depends(get_coordinator)):
    return coordinator.get_fulfillment_details(bet_id).to_dict()


@router.post("/bets/{bet_id}/fulfillment/winner-confirm")
def confirm_fulfillment(
    bet_id: str,
    request: WinnerConfirmRequest = None,
    user_id: str = Depends(current_user),
    coordinator: ResolutionCoordinator = Depends(get_coordinator),
):
    """Winner confirms they received the social stake."""
    status = coordinator.confirm_fulfillment(bet_id, user_id, notes=request.notes if request else None)
    return {"success": True, "fulfillment_status": status.value}


@router.post("/bets/{bet_id}/fulfillment/loser-claim")
def claim_loser_fulfilled(
    bet_id: str,
    request: LoserClaimRequest = None,
    user_id: str = Depends(current_user),
    coordinator: ResolutionCoordinator = Depends(get_coordinator),
):
    """Loser states they handed the stake over. Does not change the status."""
    bet = coordinator.claim_loser_fulfilled(
        bet_id,
        user_id,
        proof_url=request.proof_url if request else None,
        proof_description=request.proof_description if request else None,
    )
    return {
        "success": True,
        "loser_claimed_at": bet.loser_claimed_at.isoformat() if bet.loser_claimed_at else None,
    }


# ==================== USER ENDPOINTS ====================

@router.get("/users/{user_id}/balance")
def get_balance(
    user_id: str,
    caller_id: str = Depends(current_user),
    coordinator: ResolutionCoordinator = Depends(get_coordinator),
):
    _require_self(user_id, caller_id)
    return {"user_id": user_id, "balance": str(coordinator.get_balance(user_id))}


@router.get("/users/{user_id}/transactions")
def get_transactions(
    user_id: str,
    limit: int = Query(100, ge=1, le=1000),
    caller_id: str = Depends(current_user),
    coordinator: ResolutionCoordinator = Depends(get_coordinator),
):
    _require_self(user_id, caller_id)
    transactions = coordinator.get_transactions(user_id, limit=limit)
    return {
        "user_id": user_id,
        "count": len(transactions),
        "transactions": [tx.to_dict() for tx in transactions],
    }


@router.post("/users/{user_id}/credits")
def grant_credits(
    user_id: str,
    request: CreditsRequest,
    admin_verified: bool = Depends(verify_admin_key),
    coordinator: ResolutionCoordinator = Depends(get_coordinator),
):
    """Admin credit top-up."""
    tx = coordinator.deposit(user_id, request.amount)
    return {"success": True, "transaction": tx.to_dict()}


def _require_self(user_id: str, caller_id: str):
    if user_id != caller_id:
        raise HTTPException(status_code=403, detail="You can only view your own ledger")


# ==================== APP FACTORY ====================

def create_app(coordinator: Optional[ResolutionCoordinator] = None, start_scheduler: bool = True) -> FastAPI:
    """
    Build the API app.

    Args:
        coordinator: Use this coordinator instead of building one from the environment
        start_scheduler: Run the deadline sweeps in the background
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events."""
        logger.info("Starting RivalPicks API...")
        if app.state.coordinator is None:
            app.state.coordinator = build_coordinator()

        if start_scheduler:
            await setup_scheduler(app.state.coordinator)
            logger.info("Background scheduler started")

        yield

        logger.info("Shutting down RivalPicks API...")
        if start_scheduler:
            await shutdown_scheduler()
            logger.info("Background scheduler stopped")

    app = FastAPI(
        title="RivalPicks API",
        description="Bet resolution, settlement and stake fulfillment",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.coordinator = coordinator

    # CORS - Restricted to allowed origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Admin-Key", "X-User-Id"],
    )

    app.add_exception_handler(ResolutionError, resolution_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
