# ledger.py
"""
Bet Ledger

Owns each bet from placement to settlement and every balance mutation that
goes with it.

Race rule: a cash-out and the crash both try to move a bet out of ``active``.
Whoever flips ``status`` first in a single conditional UPDATE wins; the other
side sees a zero row count and fails with ``BetNotActive`` (or
``RoundAlreadyCrashed``).
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db import (
    Bet,
    BetStatus,
    GameState,
    RoundRecord,
    TransactionType,
    adjust_balance,
)
from .engine import RoundObserver
from .errors import (
    BetNotActive,
    BetNotFound,
    EngineError,
    InvalidAutoCashout,
    InvalidStake,
    RoundAlreadyCrashed,
    RoundNotAcceptingBets,
    RoundNotFlying,
)
from .utils import format_multiplier, to_money, to_multiplier, utcnow

logger = logging.getLogger("aviator.ledger")


class BetLedger(RoundObserver):

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions
        # round_id -> [(target multiplier, bet id)]
        self._auto_cashouts: Dict[str, List[Tuple[Decimal, int]]] = {}

    # =====================================================
    # PLACEMENT
    # =====================================================

    async def place_bet(
        self,
        account_id: str,
        stake,
        round_id: str,
        auto_cashout=None,
    ) -> Bet:
        """
        Debit the stake and create the bet in one transaction.
        Either both are applied or neither is.
        """
        try:
            stake_dec = to_money(stake)
        except ValueError as e:
            raise InvalidStake(str(e)) from e
        if stake_dec <= 0:
            raise InvalidStake("Bet must be positive")

        target = None
        if auto_cashout is not None:
            try:
                target = to_multiplier(auto_cashout)
            except ValueError as e:
                raise InvalidAutoCashout(str(e)) from e
            if target <= Decimal("1.00"):
                raise InvalidAutoCashout("Auto cash-out must be above x1.00")

        async with self._sessions() as session:
            state = await session.scalar(
                select(RoundRecord.state).where(RoundRecord.id == round_id)
            )
            if state != GameState.WAITING:
                raise RoundNotAcceptingBets(f"Round {round_id} is not accepting bets")

            await adjust_balance(
                session,
                account_id,
                -stake_dec,
                TransactionType.BET,
                round_id=round_id,
                reference="bet_entry",
            )

            bet = Bet(
                round_id=round_id,
                account_id=account_id,
                stake=stake_dec,
                auto_cashout=target,
                status=BetStatus.ACTIVE,
                payout=Decimal("0.00"),
            )
            session.add(bet)
            await session.commit()

        if target is not None:
            self._auto_cashouts.setdefault(round_id, []).append((target, bet.id))

        logger.info(f"Bet {bet.id} placed: {account_id} staked {stake_dec} on round {round_id}")
        return bet

    # =====================================================
    # SETTLEMENT
    # =====================================================

    async def cash_out(
        self,
        bet_id: int,
        multiplier,
        account_id: Optional[str] = None,
        round_id: Optional[str] = None,
    ) -> Bet:
        """
        Compare-and-set ``active -> cashed_out`` and credit the payout.

        The UPDATE only matches while the bet's round is flying and its crash
        point lies above the exit multiplier, so no cash-out can land at or
        after the crash. With ``round_id`` the bet must also belong to that
        round, so a multiplier is never applied to another round's bet.
        """
        exit_multiplier = to_multiplier(multiplier)

        round_still_flying = (
            select(RoundRecord.id)
            .where(
                RoundRecord.id == Bet.round_id,
                RoundRecord.state == GameState.FLYING,
                RoundRecord.crash_point > exit_multiplier,
            )
            .exists()
        )

        stmt = update(Bet).where(
            Bet.id == bet_id,
            Bet.status == BetStatus.ACTIVE,
            round_still_flying,
        )
        if account_id is not None:
            stmt = stmt.where(Bet.account_id == account_id)
        if round_id is not None:
            stmt = stmt.where(Bet.round_id == round_id)
        stmt = stmt.values(
            status=BetStatus.CASHED_OUT,
            exit_multiplier=exit_multiplier,
            settled_at=utcnow(),
        ).execution_options(synchronize_session=False)

        async with self._sessions() as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                raise await self._cash_out_failure(session, bet_id, account_id, round_id)

            bet = await session.get(Bet, bet_id)
            payout = to_money(bet.stake * exit_multiplier)
            bet.payout = payout

            await adjust_balance(
                session,
                bet.account_id,
                payout,
                TransactionType.WIN,
                round_id=bet.round_id,
                reference=f"win:{bet.id}@{format_multiplier(exit_multiplier)}",
            )
            await session.commit()

        logger.info(f"Bet {bet_id} cashed out at {format_multiplier(exit_multiplier)} for {payout}")
        return bet

    async def _cash_out_failure(
        self,
        session: AsyncSession,
        bet_id: int,
        account_id: Optional[str],
        round_id: Optional[str] = None,
    ) -> EngineError:
        bet = await session.get(Bet, bet_id)
        if bet is None or (account_id is not None and bet.account_id != account_id):
            return BetNotFound(f"Bet {bet_id} not found")
        if bet.status != BetStatus.ACTIVE:
            return BetNotActive(f"Bet {bet_id} already {bet.status.value}")
        if round_id is not None and bet.round_id != round_id:
            return RoundAlreadyCrashed(f"Round {bet.round_id} is over")

        state = await session.scalar(
            select(RoundRecord.state).where(RoundRecord.id == bet.round_id)
        )
        if state == GameState.WAITING:
            return RoundNotFlying("Round not active")
        return RoundAlreadyCrashed("Plane crashed")

    async def settle_as_loss(self, bet_id: int) -> Bet:
        """Compare-and-set ``active -> lost``. No balance movement."""
        stmt = (
            update(Bet)
            .where(Bet.id == bet_id, Bet.status == BetStatus.ACTIVE)
            .values(status=BetStatus.LOST, payout=Decimal("0.00"), settled_at=utcnow())
            .execution_options(synchronize_session=False)
        )

        async with self._sessions() as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                bet = await session.get(Bet, bet_id)
                if bet is None:
                    raise BetNotFound(f"Bet {bet_id} not found")
                raise BetNotActive(f"Bet {bet_id} already {bet.status.value}")

            bet = await session.get(Bet, bet_id)
            await session.commit()

        return bet

    async def settle_round(self, round_id: str) -> int:
        """
        Force-settle every still-active bet of a crashed round.
        Returns how many bets were lost.
        """
        async with self._sessions() as session:
            result = await session.execute(
                select(Bet.id).where(Bet.round_id == round_id, Bet.status == BetStatus.ACTIVE)
            )
            bet_ids = list(result.scalars())

        lost = 0
        for bet_id in bet_ids:
            try:
                await self.settle_as_loss(bet_id)
                lost += 1
            except BetNotActive:
                # Cashed out between the query and the sweep
                logger.debug(f"Bet {bet_id} settled before crash sweep")

        self._auto_cashouts.pop(round_id, None)
        logger.info(f"Round {round_id}: {lost} bet(s) lost")
        return lost

    # =====================================================
    # ROUND EVENTS
    # =====================================================

    async def on_tick(self, round_id: str, multiplier: Decimal) -> None:
        pending = self._auto_cashouts.get(round_id)
        if not pending:
            return

        due = [(target, bet_id) for target, bet_id in pending if target <= multiplier]
        if not due:
            return
        self._auto_cashouts[round_id] = [
            (target, bet_id) for target, bet_id in pending if target > multiplier
        ]

        for target, bet_id in due:
            try:
                await self.cash_out(bet_id, target, round_id=round_id)
            except (BetNotActive, RoundAlreadyCrashed) as e:
                logger.debug(f"Auto cash-out of bet {bet_id} skipped: {e}")

    async def on_crash(self, round_id: str, crash_point: Decimal) -> None:
        self._auto_cashouts.pop(round_id, None)

    # =====================================================
    # QUERIES
    # =====================================================

    async def get_bet(self, bet_id: int, account_id: Optional[str] = None) -> Bet:
        async with self._sessions() as session:
            bet = await session.get(Bet, bet_id)
        if bet is None or (account_id is not None and bet.account_id != account_id):
            raise BetNotFound(f"Bet {bet_id} not found")
        return bet

    async def bets_for_round(self, round_id: str) -> List[Bet]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Bet).where(Bet.round_id == round_id).order_by(Bet.id)
            )
            return list(result.scalars())

    async def history(self, account_id: str, limit: int = 50) -> List[Bet]:
        """Past bets, most recent first."""
        async with self._sessions() as session:
            result = await session.execute(
                select(Bet)
                .where(Bet.account_id == account_id)
                .order_by(Bet.id.desc())
                .limit(limit)
            )
            return list(result.scalars())

    async def stats(self, account_id: str) -> Dict:
        """Aggregates over settled bets (active bets are not counted yet)."""
        async with self._sessions() as session:
            row = (await session.execute(
                select(
                    func.count(Bet.id),
                    func.sum(case((Bet.status == BetStatus.CASHED_OUT, 1), else_=0)),
                    func.sum(Bet.stake),
                    func.sum(Bet.payout),
                ).where(
                    Bet.account_id == account_id,
                    Bet.status != BetStatus.ACTIVE,
                )
            )).one()

        games_played, wins, wagered, won = row
        games_played = games_played or 0
        wins = wins or 0
        total_wagered = to_money(wagered or 0)
        total_won = to_money(won or 0)

        return {
            "games_played": games_played,
            "wins": wins,
            "total_wagered": float(total_wagered),
            "total_won": float(total_won),
            "net_profit": float(total_won - total_wagered),
            "win_rate": round(wins * 100 / games_played, 2) if games_played else 0.0,
        }
