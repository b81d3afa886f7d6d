"""
memo-guard HTTP API.

Routes trust an already-authenticated wallet address. Domain errors raised by
the services are mapped to HTTP responses by the exception handlers below.
"""

import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Body, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from memo_guard.config.loader import Settings, load_settings
from memo_guard.core.adventure import AdventureService
from memo_guard.core.checkin import CheckInService
from memo_guard.core.dialogue import DialogueRewardService
from memo_guard.core.errors import MemoGuardError, MissingIdentity
from memo_guard.core.guardrails import QuotaGate
from memo_guard.core.ledger import LedgerService
from memo_guard.core.reconciliation import ReconciliationService
from memo_guard.sdk.proxy_client import GuardedProxyClient
from memo_guard.storage.migrations import apply_migrations

logger = logging.getLogger(__name__)

WALLET_HEADER = "X-Wallet-Address"


class AdventureRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    quest_id: Optional[str] = Field(default=None, alias="questId")
    quest_text: Optional[str] = Field(default=None, alias="questText")


class DialogueRewardRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId")
    is_first_chat: bool = Field(default=False, alias="isFirstChat")
    resonance_grade: Optional[str] = Field(default=None, alias="resonanceGrade")
    resonance_score: Optional[float] = Field(default=None, alias="resonanceScore")


class Services:
    """Per-application service instances, all bound to one database."""

    def __init__(self, settings: Settings):
        db_path = settings.db_path
        self.settings = settings
        self.check_ins = CheckInService(db_path)
        self.adventures = AdventureService(db_path)
        self.dialogues = DialogueRewardService(db_path)
        self.ledger = LedgerService(db_path)
        self.reconciliation = ReconciliationService(db_path, settings.quota)
        self.quota = QuotaGate(settings.quota, db_path)
        self.proxy = GuardedProxyClient(settings)


def _services(request: Request) -> Services:
    return request.app.state.services


def _require_wallet(wallet: Optional[str]) -> str:
    if not wallet or not wallet.strip():
        raise MissingIdentity()
    return wallet.strip()


user_router = APIRouter(prefix="/api/v1/user/{wallet}", tags=["user"])
ai_router = APIRouter(prefix="/api/v1/ai", tags=["ai"])


@user_router.post("/check-in")
def check_in(wallet: str, request: Request):
    return _services(request).check_ins.check_in(_require_wallet(wallet)).to_dict()


@user_router.get("/check-in")
def check_in_status(wallet: str, request: Request):
    return _services(request).check_ins.status(_require_wallet(wallet)).to_dict()


@user_router.post("/adventure")
def complete_adventure(wallet: str, request: Request, body: Optional[AdventureRequest] = Body(None)):
    wallet = _require_wallet(wallet)
    body = body or AdventureRequest()
    result = _services(request).adventures.complete(wallet, body.quest_id, body.quest_text)
    return result.to_dict()


@user_router.post("/dialogue-reward")
def dialogue_reward(wallet: str, request: Request, body: Optional[DialogueRewardRequest] = Body(None)):
    wallet = _require_wallet(wallet)
    body = body or DialogueRewardRequest()
    result = _services(request).dialogues.reward(
        wallet,
        session_id=body.session_id,
        is_first_chat=body.is_first_chat,
        resonance_grade=body.resonance_grade,
        resonance_score=body.resonance_score
    )
    return result.to_dict()


@user_router.get("/transactions")
def transactions(wallet: str, request: Request, limit: int = 50, offset: int = 0):
    wallet = _require_wallet(wallet)
    return _services(request).ledger.get_history(wallet, limit=limit, offset=offset).to_dict()


@user_router.get("/balance")
def balance(wallet: str, request: Request, background_tasks: BackgroundTasks):
    wallet = _require_wallet(wallet)
    return _services(request).reconciliation.balance_snapshot(
        wallet, schedule=background_tasks.add_task
    )


@user_router.post("/sync-balance")
def sync_balance(wallet: str, request: Request):
    wallet = _require_wallet(wallet)
    return _services(request).reconciliation.sync_balance(wallet).to_dict()


@ai_router.post("/proxy/completions")
def proxy_completions(
    request: Request,
    body: Dict[str, Any] = Body(...),
    x_wallet_address: Optional[str] = Header(default=None, alias=WALLET_HEADER)
):
    wallet = body.get("walletAddress") or x_wallet_address
    result = _services(request).proxy.complete(wallet if isinstance(wallet, str) else None, body)
    return Response(content=result.body, status_code=result.status_code, media_type=result.content_type)


@ai_router.get("/quota/status")
def quota_status(
    request: Request,
    wallet: Optional[str] = Query(default=None),
    x_wallet_address: Optional[str] = Header(default=None, alias=WALLET_HEADER)
):
    wallet = _require_wallet(wallet or x_wallet_address)
    return _services(request).quota.snapshot(wallet).to_dict()


async def _domain_error_handler(request: Request, exc: MemoGuardError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _store_error_handler(request: Request, exc: sqlite3.Error) -> JSONResponse:
    logger.error(f"Store unavailable on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"error": "store_unavailable", "message": "Database is unavailable"}
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the API application.

    Migrations run once in the lifespan, before the first request is served.

    Args:
        settings: Service settings; loaded from the environment when omitted
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        applied = apply_migrations(settings.db_path)
        logger.info(f"memo-guard ready on {settings.db_path} (applied migrations: {applied or 'none'})")
        yield

    app = FastAPI(title="memo-guard", version="0.1.0", lifespan=lifespan)
    app.state.services = Services(settings)
    app.add_exception_handler(MemoGuardError, _domain_error_handler)
    app.add_exception_handler(sqlite3.Error, _store_error_handler)
    app.include_router(user_router)
    app.include_router(ai_router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
