import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from aviator_crash.db import Bet, BetStatus, Transaction, TransactionType
from aviator_crash.errors import (
    AccountNotFound,
    BetNotActive,
    BetNotFound,
    InsufficientBalance,
    InvalidAutoCashout,
    InvalidStake,
    RoundAlreadyCrashed,
    RoundNotAcceptingBets,
    RoundNotFlying,
)


async def open_round(service):
    game_round = await service.engine.open_round()
    return game_round.round_id


async def count_bets(service):
    async with service.sessions() as session:
        return await session.scalar(select(func.count(Bet.id)))


# =====================================================
# PLACEMENT
# =====================================================

@pytest.mark.asyncio
async def test_place_bet_debits_and_creates_active_bet(service, alice):
    round_id = await open_round(service)

    bet = await service.ledger.place_bet(alice, 100, round_id)

    assert bet.status == BetStatus.ACTIVE
    assert bet.stake == Decimal("100.00")
    assert bet.payout == Decimal("0.00")
    assert bet.exit_multiplier is None
    assert await service.get_balance(alice) == Decimal("900.00")


@pytest.mark.asyncio
async def test_place_bet_writes_audit_entry(service, alice):
    round_id = await open_round(service)
    await service.ledger.place_bet(alice, 25, round_id)

    async with service.sessions() as session:
        entries = list((await session.execute(select(Transaction))).scalars())

    assert len(entries) == 1
    assert entries[0].type == TransactionType.BET
    assert entries[0].amount == Decimal("-25.00")
    assert entries[0].balance_after == Decimal("975.00")
    assert entries[0].round_id == round_id


@pytest.mark.asyncio
@pytest.mark.parametrize("stake", [0, -5, "0.001", "abc"])
async def test_invalid_stake_rejected(service, alice, stake):
    round_id = await open_round(service)

    with pytest.raises(InvalidStake):
        await service.ledger.place_bet(alice, stake, round_id)

    assert await service.get_balance(alice) == Decimal("1000.00")


@pytest.mark.asyncio
async def test_insufficient_balance_mutates_nothing(service, alice):
    round_id = await open_round(service)

    with pytest.raises(InsufficientBalance):
        await service.ledger.place_bet(alice, 1500, round_id)

    assert await service.get_balance(alice) == Decimal("1000.00")
    assert await count_bets(service) == 0


@pytest.mark.asyncio
async def test_exact_balance_can_be_staked(service, alice):
    round_id = await open_round(service)
    await service.ledger.place_bet(alice, 1000, round_id)
    assert await service.get_balance(alice) == Decimal("0.00")

    with pytest.raises(InsufficientBalance):
        await service.ledger.place_bet(alice, "0.01", round_id)


@pytest.mark.asyncio
async def test_unknown_account(service):
    round_id = await open_round(service)
    with pytest.raises(AccountNotFound):
        await service.ledger.place_bet("nobody", 10, round_id)
    assert await count_bets(service) == 0


@pytest.mark.asyncio
async def test_bet_rejected_once_round_flies(service, alice):
    round_id = await open_round(service)
    await service.engine.start_flight()

    with pytest.raises(RoundNotAcceptingBets):
        await service.ledger.place_bet(alice, 10, round_id)
    assert await service.get_balance(alice) == Decimal("1000.00")


@pytest.mark.asyncio
async def test_bet_rejected_for_unknown_round(service, alice):
    with pytest.raises(RoundNotAcceptingBets):
        await service.ledger.place_bet(alice, 10, "does-not-exist")


@pytest.mark.asyncio
async def test_auto_cashout_must_exceed_one(service, alice):
    round_id = await open_round(service)
    with pytest.raises(InvalidAutoCashout):
        await service.ledger.place_bet(alice, 10, round_id, auto_cashout="1.00")


@pytest.mark.asyncio
async def test_concurrent_bets_never_overdraw(service, alice):
    round_id = await open_round(service)

    results = await asyncio.gather(
        *(service.ledger.place_bet(alice, 300, round_id) for _ in range(5)),
        return_exceptions=True,
    )

    placed = [r for r in results if isinstance(r, Bet)]
    rejected = [r for r in results if isinstance(r, InsufficientBalance)]
    assert len(placed) == 3
    assert len(rejected) == 2
    assert await service.get_balance(alice) == Decimal("100.00")


# =====================================================
# CASH-OUT
# =====================================================

@pytest.mark.asyncio
async def test_cash_out_credits_payout(service, alice):
    round_id = await open_round(service)
    bet = await service.ledger.place_bet(alice, 100, round_id)
    await service.engine.start_flight()

    settled = await service.ledger.cash_out(bet.id, Decimal("2.00"))

    assert settled.status == BetStatus.CASHED_OUT
    assert settled.exit_multiplier == Decimal("2.00")
    assert settled.payout == Decimal("200.00")
    assert await service.get_balance(alice) == Decimal("1100.00")


@pytest.mark.asyncio
async def test_payout_rounds_down_to_cents(service, alice):
    round_id = await open_round(service)
    bet = await service.ledger.place_bet(alice, "3.33", round_id)
    await service.engine.start_flight()

    settled = await service.ledger.cash_out(bet.id, Decimal("1.37"))

    # 3.33 * 1.37 = 4.5621
    assert settled.payout == Decimal("4.56")


@pytest.mark.asyncio
async def test_concurrent_cash_outs_only_one_wins(service, alice):
    round_id = await open_round(service)
    bet = await service.ledger.place_bet(alice, 100, round_id)
    await service.engine.start_flight()

    results = await asyncio.gather(
        service.ledger.cash_out(bet.id, Decimal("1.50")),
        service.ledger.cash_out(bet.id, Decimal("2.00")),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, Bet)]
    losers = [r for r in results if isinstance(r, BetNotActive)]
    assert len(winners) == 1
    assert len(losers) == 1

    stored = await service.ledger.get_bet(bet.id)
    assert stored.exit_multiplier == winners[0].exit_multiplier
    assert await service.get_balance(alice) == Decimal("900.00") + winners[0].payout


@pytest.mark.asyncio
async def test_cash_out_at_crash_point_is_rejected(service, alice):
    round_id = await open_round(service)  # crash point 2.50
    bet = await service.ledger.place_bet(alice, 100, round_id)
    await service.engine.start_flight()

    with pytest.raises(RoundAlreadyCrashed):
        await service.ledger.cash_out(bet.id, Decimal("2.50"))

    assert (await service.ledger.get_bet(bet.id)).status == BetStatus.ACTIVE
    assert await service.get_balance(alice) == Decimal("900.00")


@pytest.mark.asyncio
async def test_cash_out_before_take_off(service, alice):
    round_id = await open_round(service)
    bet = await service.ledger.place_bet(alice, 100, round_id)

    with pytest.raises(RoundNotFlying):
        await service.ledger.cash_out(bet.id, Decimal("1.10"))


@pytest.mark.asyncio
async def test_cash_out_checks_owner(service, alice):
    await service.init_account("bob")
    round_id = await open_round(service)
    bet = await service.ledger.place_bet(alice, 100, round_id)
    await service.engine.start_flight()

    with pytest.raises(BetNotFound):
        await service.ledger.cash_out(bet.id, Decimal("1.10"), account_id="bob")
    with pytest.raises(BetNotFound):
        await service.ledger.cash_out(9999, Decimal("1.10"))


# =====================================================
# LOSSES & THE RACE
# =====================================================

@pytest.mark.asyncio
async def test_loss_is_terminal(service, alice):
    round_id = await open_round(service)
    bet = await service.ledger.place_bet(alice, 100, round_id)
    await service.engine.start_flight()

    lost = await service.ledger.settle_as_loss(bet.id)
    assert lost.status == BetStatus.LOST
    assert lost.payout == Decimal("0.00")

    with pytest.raises(BetNotActive):
        await service.ledger.cash_out(bet.id, Decimal("1.20"))
    with pytest.raises(BetNotActive):
        await service.ledger.settle_as_loss(bet.id)

    assert (await service.ledger.get_bet(bet.id)).status == BetStatus.LOST
    assert await service.get_balance(alice) == Decimal("900.00")


@pytest.mark.asyncio
async def test_cashed_out_bet_cannot_be_lost(service, alice):
    round_id = await open_round(service)
    bet = await service.ledger.place_bet(alice, 100, round_id)
    await service.engine.start_flight()
    await service.ledger.cash_out(bet.id, Decimal("1.20"))

    with pytest.raises(BetNotActive):
        await service.ledger.settle_as_loss(bet.id)

    assert (await service.ledger.get_bet(bet.id)).status == BetStatus.CASHED_OUT


@pytest.mark.asyncio
async def test_cash_out_racing_loss_settles_exactly_once(service, alice):
    round_id = await open_round(service)
    bets = [await service.ledger.place_bet(alice, 10, round_id) for _ in range(10)]
    await service.engine.start_flight()

    calls = []
    for bet in bets:
        calls.append(service.ledger.cash_out(bet.id, Decimal("2.00")))
        calls.append(service.ledger.settle_as_loss(bet.id))
    results = await asyncio.gather(*calls, return_exceptions=True)

    assert all(isinstance(r, (Bet, BetNotActive)) for r in results)

    stored = [await service.ledger.get_bet(bet.id) for bet in bets]
    assert all(b.status in (BetStatus.CASHED_OUT, BetStatus.LOST) for b in stored)

    wins = sum(b.payout for b in stored)
    assert await service.get_balance(alice) == Decimal("900.00") + wins
    for first, second in zip(results[::2], results[1::2]):
        assert isinstance(first, Bet) != isinstance(second, Bet)


@pytest.mark.asyncio
async def test_settle_round_skips_cashed_out_bets(service, alice):
    round_id = await open_round(service)
    winner = await service.ledger.place_bet(alice, 100, round_id)
    loser = await service.ledger.place_bet(alice, 50, round_id)
    await service.engine.start_flight()
    await service.ledger.cash_out(winner.id, Decimal("1.50"))

    lost = await service.ledger.settle_round(round_id)

    assert lost == 1
    assert (await service.ledger.get_bet(winner.id)).status == BetStatus.CASHED_OUT
    assert (await service.ledger.get_bet(loser.id)).status == BetStatus.LOST


# =====================================================
# AUTO CASH-OUT
# =====================================================

@pytest.mark.asyncio
async def test_auto_cashout_fires_on_tick(service, alice):
    round_id = await open_round(service)
    bet = await service.ledger.place_bet(alice, 100, round_id, auto_cashout="1.50")
    await service.engine.start_flight()

    await service.ledger.on_tick(round_id, Decimal("1.49"))
    assert (await service.ledger.get_bet(bet.id)).status == BetStatus.ACTIVE

    await service.ledger.on_tick(round_id, Decimal("1.50"))
    settled = await service.ledger.get_bet(bet.id)
    assert settled.status == BetStatus.CASHED_OUT
    assert settled.exit_multiplier == Decimal("1.50")
    assert await service.get_balance(alice) == Decimal("1050.00")


@pytest.mark.asyncio
async def test_auto_cashout_after_manual_cash_out_is_ignored(service, alice):
    round_id = await open_round(service)
    bet = await service.ledger.place_bet(alice, 100, round_id, auto_cashout="1.50")
    await service.engine.start_flight()
    await service.ledger.cash_out(bet.id, Decimal("1.20"))

    await service.ledger.on_tick(round_id, Decimal("1.60"))

    assert (await service.ledger.get_bet(bet.id)).exit_multiplier == Decimal("1.20")
    assert await service.get_balance(alice) == Decimal("1020.00")


# =====================================================
# QUERIES
# =====================================================

@pytest.mark.asyncio
async def test_history_most_recent_first(service, alice):
    round_id = await open_round(service)
    first = await service.ledger.place_bet(alice, 10, round_id)
    second = await service.ledger.place_bet(alice, 20, round_id)
    third = await service.ledger.place_bet(alice, 30, round_id)

    history = await service.ledger.history(alice)

    assert [b.id for b in history] == [third.id, second.id, first.id]
    assert [b.id for b in await service.ledger.history(alice, limit=2)] == [third.id, second.id]


@pytest.mark.asyncio
async def test_stats_count_settled_bets_only(service, alice):
    round_id = await open_round(service)
    win = await service.ledger.place_bet(alice, 100, round_id)
    loss = await service.ledger.place_bet(alice, 50, round_id)
    await service.ledger.place_bet(alice, 10, round_id)
    await service.engine.start_flight()
    await service.ledger.cash_out(win.id, Decimal("2.00"))
    await service.ledger.settle_as_loss(loss.id)

    stats = await service.ledger.stats(alice)

    assert stats["games_played"] == 2
    assert stats["wins"] == 1
    assert stats["total_wagered"] == 150.0
    assert stats["total_won"] == 200.0
    assert stats["net_profit"] == 50.0
    assert stats["win_rate"] == 50.0


@pytest.mark.asyncio
async def test_stats_for_new_account(service, alice):
    stats = await service.ledger.stats(alice)
    assert stats["games_played"] == 0
    assert stats["win_rate"] == 0.0
    assert stats["total_wagered"] == 0.0
