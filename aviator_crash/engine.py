# engine.py
"""
Aviator / Crash Game Engine

Responsibilities:
- Crash point draw from weighted probability bands
- Round clock producing the multiplier tick sequence
- Strict round state machine (WAITING -> FLYING -> CRASHED -> WAITING)
- Ordered tick broadcast to subscribers (UI, auto-cashout evaluator)
- Loss settlement and history recording on crash
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db import (
    Bet,
    BetStatus,
    GameState,
    RoundRecord,
    create_round_record,
    update_round_record,
)
from .errors import (
    BetNotActive,
    ClockError,
    RoundAlreadyCrashed,
    RoundNotAcceptingBets,
    RoundNotFlying,
    StateError,
)
from .utils import format_multiplier, generate_unique_id, to_multiplier, utcnow

logger = logging.getLogger("aviator.engine")

# =========================
# CONFIGURATION
# =========================

class GameConfig:
    # --- PROBABILITY SETTINGS ---
    # (probability, band low inclusive, band high exclusive)
    CRASH_BANDS = (
        (0.50, Decimal("1.00"), Decimal("3.00")),
        (0.30, Decimal("3.00"), Decimal("7.00")),
        (0.20, Decimal("7.00"), Decimal("15.00")),
    )

    # A round always flies past 1.00x before it can crash
    MIN_CRASH = Decimal("1.01")

    # --- GAMEPLAY SPEED ---
    TICK_INTERVAL_SEC = 0.05
    TICK_INCREMENT = Decimal("0.01")

    # "linear": +TICK_INCREMENT per tick
    # "exponential": e^(SPEED_FACTOR * ms), never slower than linear
    GROWTH = "linear"
    SPEED_FACTOR = 0.0001

    # --- SAFETY ---
    # A tick gap longer than STALL_FACTOR intervals is reported as a stall
    STALL_FACTOR = 4

    # --- ROUND SCHEDULE ---
    BETTING_DURATION_SEC = 7.0
    AUTO_START_ON_FIRST_BET = False
    COOLDOWN_SEC = 3.0


# =========================
# DOMAIN MODELS
# =========================

@dataclass
class GameRound:
    round_id: str
    crash_point: Decimal

    state: GameState = GameState.WAITING
    current_multiplier: Decimal = Decimal("1.00")

    # Timing
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    crashed_at: Optional[float] = None


class RoundObserver:
    """
    Receiver of round events. Every method is awaited by the state machine
    before it moves on, so observers see ticks in order.
    """

    async def on_round_start(self, round_id: str) -> None:
        pass

    async def on_tick(self, round_id: str, multiplier: Decimal) -> None:
        pass

    async def on_crash(self, round_id: str, crash_point: Decimal) -> None:
        pass


# =========================
# CRASH POINT
# =========================

class CrashPointGenerator:
    """
    Draws crash points from the weighted bands in ``GameConfig.CRASH_BANDS``.

    Deterministic for a seeded ``random.Random``; uses ``SystemRandom`` when no
    source is given.
    """

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        bands=GameConfig.CRASH_BANDS,
    ) -> None:
        self._rng = rng or random.SystemRandom()
        self._bands = bands

    def draw(self) -> Decimal:
        tier_roll = self._rng.random()  # [0.0, 1.0)

        # Last band absorbs float drift in the cumulative sum
        _, low, high = self._bands[-1]
        cumulative = 0.0
        for probability, band_low, band_high in self._bands:
            cumulative += probability
            if tier_roll < cumulative:
                low, high = band_low, band_high
                break

        value = float(low) + self._rng.random() * float(high - low)
        crash_point = to_multiplier(value)

        return max(crash_point, GameConfig.MIN_CRASH)


# =========================
# ROUND CLOCK
# =========================

class RoundClock:
    """
    One-shot multiplier clock for a single round.

    ``start`` returns the tick iterator and an event set once the terminal
    tick (exactly the crash point) has been consumed.
    """

    def __init__(
        self,
        tick_interval: float = GameConfig.TICK_INTERVAL_SEC,
        increment: Decimal = GameConfig.TICK_INCREMENT,
        growth: str = GameConfig.GROWTH,
        speed_factor: float = GameConfig.SPEED_FACTOR,
        stall_factor: float = GameConfig.STALL_FACTOR,
    ) -> None:
        if growth not in ("linear", "exponential"):
            raise ValueError(f"Unknown growth mode: {growth}")
        self._interval = tick_interval
        self._increment = increment
        self._growth = growth
        self._speed_factor = speed_factor
        self._stall_factor = stall_factor
        self._started = False
        self.done = asyncio.Event()

    def start(self, crash_point: Decimal) -> Tuple[AsyncIterator[Decimal], asyncio.Event]:
        if self._started:
            raise ClockError("Round clock cannot be restarted")

        crash_point = to_multiplier(crash_point)
        if crash_point <= Decimal("1.00"):
            raise ClockError(f"Crash point must exceed 1.00, got {crash_point}")

        self._started = True
        return self._ticks(crash_point), self.done

    def _multiplier_at_ms(self, ms: float) -> Decimal:
        """e^(SPEED_FACTOR * ms)"""
        if ms <= 0:
            return Decimal("1.00")
        return to_multiplier(math.exp(self._speed_factor * ms))

    async def _ticks(self, crash_point: Decimal) -> AsyncIterator[Decimal]:
        loop = asyncio.get_running_loop()
        started = last = loop.time()

        multiplier = Decimal("1.00")
        yield multiplier

        while multiplier < crash_point:
            await asyncio.sleep(self._interval)

            now = loop.time()
            gap = now - last
            if self._interval and gap > self._interval * self._stall_factor:
                logger.warning(
                    f"Tick stalled for {gap * 1000:.0f}ms at {format_multiplier(multiplier)}"
                )
            last = now

            next_value = multiplier + self._increment
            if self._growth == "exponential":
                next_value = max(next_value, self._multiplier_at_ms((now - started) * 1000))

            # Never overshoot: the crash point itself is the terminal tick
            multiplier = min(next_value, crash_point)
            yield multiplier

        self.done.set()


# =========================
# STATE MACHINE
# =========================

class RoundStateMachine:
    """
    Drives global round sequencing. One instance per process.

    Bets are placed through the ledger while WAITING; a placement gate lets
    concurrent placements run in parallel but holds the take-off until all
    in-flight placements have committed or failed.
    """

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        ledger,
        generator: Optional[CrashPointGenerator] = None,
        clock_factory: Callable[[], RoundClock] = RoundClock,
        betting_duration: Optional[float] = GameConfig.BETTING_DURATION_SEC,
        cooldown: float = GameConfig.COOLDOWN_SEC,
        auto_start_on_first_bet: bool = GameConfig.AUTO_START_ON_FIRST_BET,
    ) -> None:
        self._sessions = sessions
        self._ledger = ledger
        self._generator = generator or CrashPointGenerator()
        self._clock_factory = clock_factory
        self._betting_duration = betting_duration
        self._cooldown = cooldown
        self._auto_start = auto_start_on_first_bet

        self._round: Optional[GameRound] = None
        self._ticks: Optional[AsyncIterator[Decimal]] = None
        self._subscribers: list[RoundObserver] = [ledger]

        self._gate = asyncio.Condition()
        self._accepting = False
        self._placements_in_flight = 0
        self._start_signal = asyncio.Event()

    @property
    def current_round(self) -> Optional[GameRound]:
        return self._round

    # =====================================================
    # SUBSCRIPTIONS
    # =====================================================

    def subscribe(self, observer: RoundObserver) -> None:
        if observer not in self._subscribers:
            self._subscribers.append(observer)

    def unsubscribe(self, observer: RoundObserver) -> None:
        if observer in self._subscribers:
            self._subscribers.remove(observer)

    async def _publish(self, event: str, *args) -> None:
        for subscriber in list(self._subscribers):
            try:
                await getattr(subscriber, event)(*args)
            except Exception:
                logger.exception(f"Subscriber {subscriber!r} failed on {event}")

    # =====================================================
    # LIFECYCLE
    # =====================================================

    async def open_round(self) -> GameRound:
        """
        State: (none)/CRASHED -> WAITING.
        Draws the crash point up front; it stays private until the crash.
        """
        if self._round is not None and self._round.state != GameState.CRASHED:
            raise StateError(f"Round {self._round.round_id} still {self._round.state.value}")

        game_round = GameRound(
            round_id=generate_unique_id(),
            crash_point=self._generator.draw(),
        )
        async with self._sessions() as session:
            await create_round_record(session, game_round.round_id, game_round.crash_point)

        self._round = game_round
        self._ticks = None
        self._start_signal = asyncio.Event()
        self._accepting = True

        logger.info(f"Round {game_round.round_id} open for bets")
        return game_round

    def request_start(self) -> None:
        """External start signal (timer, operator, first bet)."""
        self._start_signal.set()

    async def wait_for_start(self) -> None:
        """Waits for the start signal, or for the betting window to elapse."""
        try:
            await asyncio.wait_for(self._start_signal.wait(), timeout=self._betting_duration)
        except asyncio.TimeoutError:
            logger.debug("Betting window elapsed")

    async def start_flight(self) -> GameRound:
        """
        State: WAITING -> FLYING.
        Closes betting, waits out in-flight placements, starts the clock.
        """
        game_round = self._round
        if game_round is None or game_round.state != GameState.WAITING:
            raise StateError("No round waiting for take-off")

        async with self._gate:
            self._accepting = False
            await self._gate.wait_for(lambda: self._placements_in_flight == 0)

        ticks, _ = self._clock_factory().start(game_round.crash_point)

        started = utcnow()
        async with self._sessions() as session:
            await update_round_record(
                session, game_round.round_id, state=GameState.FLYING, started_at=started
            )

        game_round.state = GameState.FLYING
        game_round.started_at = started.timestamp()
        self._ticks = ticks

        logger.info(f"Round {game_round.round_id} took off")
        await self._publish("on_round_start", game_round.round_id)
        return game_round

    async def run_flight(self) -> GameRound:
        """
        Consumes the clock. Each tick reaches every subscriber before the
        next one is produced. Ends with the crash transition.
        """
        game_round = self._round
        if game_round is None or game_round.state != GameState.FLYING or self._ticks is None:
            raise StateError("No round in flight")

        async for multiplier in self._ticks:
            game_round.current_multiplier = multiplier
            await self._publish("on_tick", game_round.round_id, multiplier)

        await self._crash(game_round)
        return game_round

    async def _crash(self, game_round: GameRound) -> None:
        """
        State: FLYING -> CRASHED.
        1. persist the crash (the in-memory round flips only once this succeeds)
        2. freeze the multiplier at the crash point
        3. settle every still-active bet as a loss
        """
        crashed_at = utcnow()
        async with self._sessions() as session:
            await update_round_record(
                session, game_round.round_id, state=GameState.CRASHED, crashed_at=crashed_at
            )

        game_round.state = GameState.CRASHED
        game_round.current_multiplier = game_round.crash_point
        game_round.crashed_at = crashed_at.timestamp()
        self._ticks = None

        logger.info(
            f"Round {game_round.round_id} crashed at {format_multiplier(game_round.crash_point)}"
        )

        await self._settle(game_round)
        await self._publish("on_crash", game_round.round_id, game_round.crash_point)

    async def _settle(self, game_round: GameRound) -> None:
        lost = await self._ledger.settle_round(game_round.round_id)

        async with self._sessions() as session:
            await update_round_record(
                session, game_round.round_id, settled_at=utcnow(), bets_lost=lost
            )

    async def cooldown(self) -> GameRound:
        """
        State: CRASHED -> WAITING (new round).
        Archives the finished round after the cooldown timer.
        """
        game_round = self._round
        if game_round is None or game_round.state != GameState.CRASHED:
            raise StateError("Cooldown only follows a crash")

        await asyncio.sleep(self._cooldown)

        async with self._sessions() as session:
            await update_round_record(session, game_round.round_id, archived_at=utcnow())

        return await self.open_round()

    async def run_round(self) -> None:
        if self._round is None:
            await self.open_round()
        if self._round.state == GameState.WAITING:
            await self.wait_for_start()
            await self.start_flight()
        if self._round.state == GameState.FLYING:
            await self.run_flight()
        await self.cooldown()

    async def run_forever(self) -> None:
        logger.info("Round loop started")
        while True:
            try:
                await self.run_round()
            except asyncio.CancelledError:
                logger.info("Round loop stopped")
                raise
            except Exception:
                logger.exception("Round loop failed")
                await asyncio.sleep(self._cooldown)
                await self._recover()

    async def _recover(self) -> None:
        game_round = self._round
        if game_round is None:
            return
        try:
            if game_round.state == GameState.FLYING:
                # The drawn crash point stands; settle the round as if it was reached
                await self._crash(game_round)
            elif game_round.state == GameState.CRASHED:
                async with self._sessions() as session:
                    record = await session.get(RoundRecord, game_round.round_id)
                if record is not None and record.settled_at is None:
                    await self._settle(game_round)
        except Exception:
            logger.exception(f"Recovery of round {game_round.round_id} failed, abandoning it")
            game_round.state = GameState.CRASHED

    # =====================================================
    # BETTING ACTIONS
    # =====================================================

    async def place_bet(
        self,
        account_id: str,
        stake,
        auto_cashout=None,
    ) -> Bet:
        async with self._gate:
            game_round = self._round
            if (
                game_round is None
                or game_round.state != GameState.WAITING
                or not self._accepting
            ):
                state = game_round.state.value if game_round else "offline"
                raise RoundNotAcceptingBets(f"Round not accepting bets (Status: {state})")
            self._placements_in_flight += 1

        try:
            bet = await self._ledger.place_bet(
                account_id, stake, game_round.round_id, auto_cashout=auto_cashout
            )
        finally:
            async with self._gate:
                self._placements_in_flight -= 1
                self._gate.notify_all()

        if self._auto_start:
            self.request_start()
        return bet

    async def request_cash_out(self, bet_id: int, account_id: Optional[str] = None) -> Bet:
        """
        Cash out at the server's current multiplier.
        The ledger's compare-and-set decides the race against the crash.
        """
        game_round = self._round

        if game_round is None or game_round.state == GameState.WAITING:
            bet = await self._ledger.get_bet(bet_id, account_id=account_id)
            if bet.status != BetStatus.ACTIVE:
                raise BetNotActive(f"Bet {bet_id} already {bet.status.value}")
            raise RoundNotFlying("Round not active")

        multiplier = game_round.current_multiplier
        if game_round.state == GameState.CRASHED or multiplier >= game_round.crash_point:
            raise RoundAlreadyCrashed("Plane crashed")

        return await self._ledger.cash_out(
            bet_id, multiplier, account_id=account_id, round_id=game_round.round_id
        )

    # =====================================================
    # READ MODEL
    # =====================================================

    def snapshot(self) -> Dict:
        game_round = self._round
        if game_round is None:
            return {"status": "OFFLINE", "round_id": None, "multiplier": 1.00, "crash_point": None}

        crashed = game_round.state == GameState.CRASHED
        elapsed_ms = 0
        if game_round.started_at:
            end = game_round.crashed_at or time.time()
            elapsed_ms = int((end - game_round.started_at) * 1000)

        return {
            "status": game_round.state.value,
            "round_id": game_round.round_id,
            "multiplier": float(game_round.current_multiplier),
            "crash_point": float(game_round.crash_point) if crashed else None,  # Secret until crash
            "accepting_bets": game_round.state == GameState.WAITING and self._accepting,
            "elapsed_ms": elapsed_ms,
        }
