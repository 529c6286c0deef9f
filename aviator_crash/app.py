# app.py
"""
Aviator / Crash Game – Production Entry Point

Responsibilities:
- FastAPI HTTP server
- Request Validation (Pydantic)
- Game API orchestration over CrashGameService
- WebSocket round feed (round start / tick / crash)
- Round loop and optional Telegram bot in the app lifespan
"""

from __future__ import annotations

import os
import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import (
    FastAPI,
    Query,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .engine import RoundObserver
from .errors import EngineError
from .service import CrashGameService

# =====================================================
# LOGGING & CONFIG
# =====================================================

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("aviator_app")

BOT_TOKEN = os.getenv("BOT_TOKEN", "")
RUN_ENGINE = os.getenv("RUN_ENGINE", "1").lower() in ("1", "true", "yes")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================

class UserInitRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=58)
    demo: bool = False

class BetRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)  # Input is float, converted to Decimal internally
    auto_cashout: Optional[float] = Field(None, gt=1.0)

class CashoutRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    bet_id: int = Field(..., ge=1)

class DepositRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    reference: str = Field(..., min_length=1, max_length=128)
    currency: str = Field("BTC", min_length=1, max_length=16)

class ConfirmationRequest(BaseModel):
    reference: str = Field(..., min_length=1, max_length=128)
    confirmations: int = Field(..., ge=0)
    currency: str = Field("BTC", min_length=1, max_length=16)

# =====================================================
# WEBSOCKET FEED
# =====================================================

class WebSocketObserver(RoundObserver):
    """
    Buffers round events for one socket. The engine never waits on the
    network: a client that falls behind by a full buffer loses ticks.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def _push(self, message: dict) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(f"WebSocket client lagging, dropped {message['type']}")

    async def on_round_start(self, round_id):
        self._push({"type": "round_start", "round_id": round_id})

    async def on_tick(self, round_id, multiplier):
        self._push({"type": "tick", "round_id": round_id, "multiplier": float(multiplier)})

    async def on_crash(self, round_id, crash_point):
        self._push({"type": "crash", "round_id": round_id, "crash_point": float(crash_point)})

# =====================================================
# APP FACTORY
# =====================================================

def create_app(
    service: Optional[CrashGameService] = None,
    run_engine: bool = RUN_ENGINE,
    bot_token: str = BOT_TOKEN,
) -> FastAPI:
    service = service or CrashGameService()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Manages startup and shutdown events.
        """
        logger.info("Startup: Initializing Database...")
        await service.init_db()

        engine_task = None
        if run_engine:
            logger.info("Startup: Launching round loop...")
            engine_task = asyncio.create_task(service.run_forever())

        bot_app = None
        if bot_token:
            from .bot import run_telegram_bot

            logger.info("Startup: Launching Telegram Bot...")
            bot_app = await run_telegram_bot(bot_token, service)

        yield

        logger.info("Shutdown: Cleaning up...")
        if bot_app is not None:
            from .bot import stop_telegram_bot

            await stop_telegram_bot(bot_app)
        if engine_task is not None:
            engine_task.cancel()
            with suppress(asyncio.CancelledError):
                await engine_task
        await service.db_engine.dispose()

    app = FastAPI(
        title="Aviator Crash API",
        version="3.0.0",
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =====================================================
    # ERROR HANDLERS
    # =====================================================

    @app.exception_handler(EngineError)
    async def engine_error_handler(_, exc: EngineError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "detail": str(exc)},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(_, exc: ValueError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"error": "ValueError", "detail": str(exc)},
        )

    # =====================================================
    # API – USER
    # =====================================================

    @app.post("/api/init")
    async def api_init(payload: UserInitRequest):
        """
        Initialize account and fetch balance.
        """
        account = await service.init_account(payload.user_id, demo=payload.demo)
        return {
            "user_id": payload.user_id,
            "account_id": account.id,
            "is_demo": account.is_demo,
            "balance": float(account.balance),  # Convert Decimal to float for JSON
        }

    @app.get("/api/balance/{account_id}")
    async def api_balance(account_id: str):
        balance = await service.get_balance(account_id)
        return {"account_id": account_id, "balance": float(balance)}

    @app.get("/api/history/{account_id}")
    async def api_history(account_id: str, limit: int = Query(50, ge=1, le=500)):
        bets = await service.get_history(account_id, limit=limit)
        return {"account_id": account_id, "bets": [bet.to_dict() for bet in bets]}

    @app.get("/api/stats/{account_id}")
    async def api_stats(account_id: str):
        return {"account_id": account_id, **await service.get_stats(account_id)}

    # =====================================================
    # API – GAME CONTROL
    # =====================================================

    @app.get("/api/state")
    async def api_state():
        """
        Polling endpoint for game state. Crash point stays hidden until the crash.
        """
        return service.state()

    @app.post("/api/start-round")
    async def api_start_round():
        """External start signal for the round in the betting phase."""
        service.engine.request_start()
        return service.state()

    @app.get("/api/rounds")
    async def api_rounds(limit: int = Query(20, ge=1, le=200)):
        rounds = await service.get_rounds(limit=limit)
        return {"rounds": [r.to_dict() for r in rounds]}

    # =====================================================
    # API – BETTING & CASHOUT
    # =====================================================

    @app.post("/api/place-bet")
    async def api_place_bet(payload: BetRequest):
        """
        Debit and bet registration happen in one ledger transaction,
        so there is nothing to compensate on rejection.
        """
        await service.init_account(payload.user_id)
        bet = await service.place_bet(
            payload.user_id,
            payload.amount,
            auto_cashout=payload.auto_cashout,
        )
        balance = await service.get_balance(payload.user_id)
        return {
            "status": "accepted",
            "bet": bet.to_dict(),
            "new_balance": float(balance),
            "round_id": bet.round_id,
        }

    @app.post("/api/cashout")
    async def api_cashout(payload: CashoutRequest):
        """
        Engine is the authority on the exit multiplier.
        """
        bet = await service.request_cash_out(payload.bet_id, account_id=payload.user_id)
        balance = await service.get_balance(payload.user_id)
        return {
            "status": "cashed_out",
            "payout": float(bet.payout),
            "multiplier": float(bet.exit_multiplier),
            "balance": float(balance),
        }

    # =====================================================
    # API – DEPOSITS
    # =====================================================

    @app.post("/api/deposits")
    async def api_submit_deposit(payload: DepositRequest):
        deposit = await service.submit_deposit(
            payload.user_id, payload.amount, payload.reference, payload.currency
        )
        return deposit.to_dict()

    @app.post("/api/deposits/confirm")
    async def api_confirm_deposit(payload: ConfirmationRequest):
        """
        Verifier callback. Safe to deliver more than once.
        """
        deposit = await service.confirm_deposit(
            payload.reference, payload.confirmations, payload.currency
        )
        return deposit.to_dict()

    @app.post("/api/deposits/{reference}/manual-confirm")
    async def api_manual_confirm(reference: str, currency: str = "BTC"):
        deposit = await service.manual_confirm_deposit(reference, currency)
        return deposit.to_dict()

    @app.get("/api/deposits/{account_id}")
    async def api_deposits(account_id: str):
        deposits = await service.get_deposits(account_id)
        return {"account_id": account_id, "deposits": [d.to_dict() for d in deposits]}

    @app.get("/api/health")
    async def api_health():
        return {"status": "OK", "round": service.state()["status"]}

    # =====================================================
    # WEBSOCKET
    # =====================================================

    @app.websocket("/ws")
    async def websocket_feed(websocket: WebSocket):
        """
        Server -> client round feed. Client messages are read only to
        notice disconnects.
        """
        await websocket.accept()

        observer = WebSocketObserver()

        async def pump():
            while True:
                await websocket.send_json(await observer.queue.get())

        sender = None
        try:
            service.subscribe(observer)
            await websocket.send_json({"type": "state", **service.state()})

            sender = asyncio.create_task(pump())
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected")
        finally:
            service.unsubscribe(observer)
            if sender is not None:
                sender.cancel()
                with suppress(asyncio.CancelledError):
                    await sender

    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "aviator_crash.app:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
