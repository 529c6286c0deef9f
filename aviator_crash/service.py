# service.py
"""
Game service facade.

The one object the transport layers (HTTP, WebSocket, Telegram) talk to.
Wires the ledger, the round state machine and the deposit pipeline onto a
shared session factory.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from . import db
from .db import Account, Bet, Deposit
from .deposits import DEFAULT_CURRENCY, REQUIRED_CONFIRMATIONS, DepositConfirmationPipeline
from .engine import CrashPointGenerator, GameConfig, RoundClock, RoundObserver, RoundStateMachine
from .ledger import BetLedger


def demo_account_id(account_id: str) -> str:
    """Practice twin of a real account; separate balance, same interface."""
    if db.is_demo_account_id(account_id):
        return account_id
    return f"{db.DEMO_PREFIX}{account_id}"


class CrashGameService:

    def __init__(
        self,
        db_engine: AsyncEngine = db.engine,
        generator: Optional[CrashPointGenerator] = None,
        clock_factory: Callable[[], RoundClock] = RoundClock,
        betting_duration: Optional[float] = GameConfig.BETTING_DURATION_SEC,
        cooldown: float = GameConfig.COOLDOWN_SEC,
        auto_start_on_first_bet: bool = GameConfig.AUTO_START_ON_FIRST_BET,
        required_confirmations: int = REQUIRED_CONFIRMATIONS,
    ) -> None:
        self.db_engine = db_engine
        self.sessions = db.make_sessionmaker(db_engine)

        self.ledger = BetLedger(self.sessions)
        self.engine = RoundStateMachine(
            self.sessions,
            self.ledger,
            generator=generator,
            clock_factory=clock_factory,
            betting_duration=betting_duration,
            cooldown=cooldown,
            auto_start_on_first_bet=auto_start_on_first_bet,
        )
        self.deposits = DepositConfirmationPipeline(
            self.sessions,
            required_confirmations=required_confirmations,
        )

    async def init_db(self) -> None:
        await db.init_db(self.db_engine)

    # =====================================================
    # ACCOUNTS
    # =====================================================

    async def init_account(self, account_id: str, demo: bool = False) -> Account:
        if demo:
            account_id = demo_account_id(account_id)
        async with self.sessions() as session:
            return await db.get_or_create_account(session, account_id)

    async def get_balance(self, account_id: str) -> Decimal:
        async with self.sessions() as session:
            return await db.get_balance(session, account_id)

    # =====================================================
    # ROUNDS & BETS
    # =====================================================

    async def place_bet(self, account_id: str, stake, auto_cashout=None) -> Bet:
        return await self.engine.place_bet(account_id, stake, auto_cashout=auto_cashout)

    async def request_cash_out(self, bet_id: int, account_id: Optional[str] = None) -> Bet:
        return await self.engine.request_cash_out(bet_id, account_id=account_id)

    def subscribe(self, observer: RoundObserver) -> None:
        self.engine.subscribe(observer)

    def unsubscribe(self, observer: RoundObserver) -> None:
        self.engine.unsubscribe(observer)

    def state(self) -> Dict:
        return self.engine.snapshot()

    async def get_history(self, account_id: str, limit: int = 50) -> List[Bet]:
        return await self.ledger.history(account_id, limit=limit)

    async def get_stats(self, account_id: str) -> Dict:
        return await self.ledger.stats(account_id)

    async def get_rounds(self, limit: int = 20) -> List[db.RoundRecord]:
        async with self.sessions() as session:
            return await db.recent_rounds(session, limit=limit)

    async def run_forever(self) -> None:
        await self.engine.run_forever()

    # =====================================================
    # DEPOSITS
    # =====================================================

    async def submit_deposit(
        self,
        account_id: str,
        amount,
        reference: str,
        currency: str = DEFAULT_CURRENCY,
    ) -> Deposit:
        return await self.deposits.submit(account_id, amount, reference, currency)

    async def confirm_deposit(
        self,
        reference: str,
        confirmations: int,
        currency: str = DEFAULT_CURRENCY,
    ) -> Deposit:
        return await self.deposits.confirm(reference, confirmations, currency)

    async def manual_confirm_deposit(self, reference: str, currency: str = DEFAULT_CURRENCY) -> Deposit:
        """Operator override: treat the deposit as fully confirmed."""
        return await self.deposits.confirm(
            reference, self.deposits.required_confirmations, currency
        )

    async def get_deposits(self, account_id: str, limit: int = 50) -> List[Deposit]:
        return await self.deposits.list_for_account(account_id, limit=limit)
