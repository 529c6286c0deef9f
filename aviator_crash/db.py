# db.py
"""
Database Layer

Responsibilities:
- Async database engine & session lifecycle
- Accounts, rounds, bets and deposits tables
- Ledger-safe balance mutation (conditional UPDATE, Decimal arithmetic)
- Append-only transaction log linked to round ids

Atomicity model:
- Every balance change is a single ``UPDATE ... WHERE`` whose WHERE clause
  carries the precondition (row exists, balance sufficient). The row count
  tells the caller whether the precondition held at the instant of the write.
- Callers own the transaction: helpers here never commit.
"""

from __future__ import annotations

import os
import enum
import logging
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

from .errors import AccountNotFound, InsufficientBalance
from .utils import as_float, to_money, utcnow

logger = logging.getLogger("aviator.db")

# =====================================================
# CONFIG
# =====================================================

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./aviator.db"
)

STARTING_BALANCE = Decimal(os.getenv("STARTING_BALANCE", "1000.00"))
DEMO_STARTING_BALANCE = Decimal(os.getenv("DEMO_STARTING_BALANCE", "1000.00"))

DB_ECHO = os.getenv("DB_ECHO", "").lower() in ("1", "true", "yes")

DEMO_PREFIX = "demo:"


# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass


# =====================================================
# ENUMS
# =====================================================

class GameState(str, enum.Enum):
    WAITING = "waiting"   # Accepting bets
    FLYING = "flying"     # Multiplier rising
    CRASHED = "crashed"   # Round ended


class BetStatus(str, enum.Enum):
    ACTIVE = "active"
    CASHED_OUT = "cashed_out"
    LOST = "lost"


class DepositStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CREDITED = "credited"


class TransactionType(str, enum.Enum):
    BET = "bet"
    WIN = "win"
    DEPOSIT = "deposit"


def _values(enum_cls):
    return [member.value for member in enum_cls]


# =====================================================
# MODELS
# =====================================================

class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # PRECISION: 18 digits total, 2 after decimal.
    balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=STARTING_BALANCE,
    )

    is_demo: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="account",
        cascade="all, delete-orphan",
        lazy="raise",
    )


class Transaction(Base):
    """
    Immutable ledger record (append-only).
    One row per balance mutation, linked to the round that caused it.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, name="transaction_type", values_callable=_values),
        nullable=False,
    )

    # Signed amount: -10.00 for bet, +20.00 for win
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    balance_after: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    round_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # e.g. "bet:12", "win:12@x2.50", "deposit:BTC:<tx hash>"
    reference: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    account: Mapped[Account] = relationship(back_populates="transactions")


class RoundRecord(Base):
    """Round history. The crash point is stored at creation but only served once crashed."""

    __tablename__ = "rounds"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    crash_point: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    state: Mapped[GameState] = mapped_column(
        Enum(GameState, name="game_state", values_callable=_values),
        nullable=False,
        default=GameState.WAITING,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    crashed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    bets_lost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        crashed = self.state == GameState.CRASHED
        return {
            "round_id": self.id,
            "status": self.state.value,
            "crash_point": as_float(self.crash_point) if crashed else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "crashed_at": self.crashed_at.isoformat() if self.crashed_at else None,
        }


class Bet(Base):
    __tablename__ = "bets"
    __table_args__ = (
        CheckConstraint("stake > 0", name="ck_bets_stake_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    round_id: Mapped[str] = mapped_column(
        ForeignKey("rounds.id"),
        index=True,
        nullable=False,
    )

    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id"),
        index=True,
        nullable=False,
    )

    stake: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    auto_cashout: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2))

    status: Mapped[BetStatus] = mapped_column(
        Enum(BetStatus, name="bet_status", values_callable=_values),
        nullable=False,
        default=BetStatus.ACTIVE,
        index=True,
    )

    exit_multiplier: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2))

    payout: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=Decimal("0.00"),
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    def to_dict(self) -> dict:
        return {
            "bet_id": self.id,
            "round_id": self.round_id,
            "account_id": self.account_id,
            "stake": float(self.stake),
            "auto_cashout": as_float(self.auto_cashout),
            "status": self.status.value,
            "multiplier": as_float(self.exit_multiplier),
            "payout": float(self.payout),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Deposit(Base):
    __tablename__ = "deposits"
    __table_args__ = (
        # Hard schema invariant: one deposit per on-chain reference and currency
        UniqueConstraint("currency", "external_reference", name="uq_deposits_reference"),
        CheckConstraint("claimed_amount > 0", name="ck_deposits_amount_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id"),
        index=True,
        nullable=False,
    )

    claimed_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    currency: Mapped[str] = mapped_column(String(16), nullable=False, default="BTC")

    external_reference: Mapped[str] = mapped_column(String(128), nullable=False)

    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[DepositStatus] = mapped_column(
        Enum(DepositStatus, name="deposit_status", values_callable=_values),
        nullable=False,
        default=DepositStatus.PENDING,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    credited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    def to_dict(self) -> dict:
        return {
            "deposit_id": self.id,
            "account_id": self.account_id,
            "amount": float(self.claimed_amount),
            "currency": self.currency,
            "reference": self.external_reference,
            "confirmations": self.confirmations,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# =====================================================
# ENGINE & SESSION
# =====================================================

def make_engine(url: str = DATABASE_URL, echo: bool = DB_ECHO) -> AsyncEngine:
    return create_async_engine(
        url,
        echo=echo,
        # SSL is critical for Postgres in production
        connect_args={"ssl": "require"} if "postgresql" in url else {},
    )


def make_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, expire_on_commit=False)


engine = make_engine()

AsyncSessionLocal = make_sessionmaker(engine)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


# =====================================================
# INIT
# =====================================================

async def init_db(bind: AsyncEngine = engine) -> None:
    """
    Creates all tables. Safe to run on every startup.
    """
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# =====================================================
# REPOSITORY HELPERS
# =====================================================

def is_demo_account_id(account_id: str) -> bool:
    return account_id.startswith(DEMO_PREFIX)


async def get_or_create_account(
    session: AsyncSession,
    account_id: str,
) -> Account:
    """
    Fetches an account or creates one with the default balance.
    Ids with the ``demo:`` prefix are practice accounts with their own balance.
    """
    account = await session.get(Account, account_id)
    if account:
        return account

    is_demo = is_demo_account_id(account_id)
    account = Account(
        id=account_id,
        balance=DEMO_STARTING_BALANCE if is_demo else STARTING_BALANCE,
        is_demo=is_demo,
    )
    session.add(account)

    try:
        await session.commit()
        return account
    except IntegrityError:
        # Created in parallel by another request
        await session.rollback()
        return await get_or_create_account(session, account_id)


async def get_balance(session: AsyncSession, account_id: str) -> Decimal:
    balance = await session.scalar(
        select(Account.balance).where(Account.id == account_id)
    )
    if balance is None:
        raise AccountNotFound(f"Account {account_id} not found")
    return balance


async def adjust_balance(
    session: AsyncSession,
    account_id: str,
    amount: Decimal,
    tx_type: TransactionType,
    round_id: str | None = None,
    reference: str | None = None,
) -> Decimal:
    """
    Atomic balance read-modify-write + immutable ledger entry.

    ``amount`` is the signed change. A debit only applies if the balance
    covers it at the instant of the UPDATE. Returns the balance after the
    change. Does not commit.
    """
    amount_quantized = to_money(amount)

    stmt = update(Account).where(Account.id == account_id)
    if amount_quantized < 0:
        stmt = stmt.where(Account.balance >= -amount_quantized)
    stmt = stmt.values(
        balance=Account.balance + amount_quantized,
        updated_at=utcnow(),
    ).execution_options(synchronize_session=False)

    result = await session.execute(stmt)
    if result.rowcount != 1:
        exists = await session.scalar(select(Account.id).where(Account.id == account_id))
        if exists is None:
            raise AccountNotFound(f"Account {account_id} not found")
        raise InsufficientBalance(f"Balance too low for {-amount_quantized}")

    balance_after = await get_balance(session, account_id)

    session.add(Transaction(
        account_id=account_id,
        type=tx_type,
        amount=amount_quantized,
        balance_after=balance_after,
        round_id=round_id,
        reference=reference,
    ))

    return balance_after


async def create_round_record(
    session: AsyncSession,
    round_id: str,
    crash_point: Decimal,
) -> RoundRecord:
    record = RoundRecord(id=round_id, crash_point=crash_point, state=GameState.WAITING)
    session.add(record)
    await session.commit()
    return record


async def update_round_record(session: AsyncSession, round_id: str, **values) -> None:
    await session.execute(
        update(RoundRecord)
        .where(RoundRecord.id == round_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def recent_rounds(session: AsyncSession, limit: int = 20) -> list[RoundRecord]:
    result = await session.execute(
        select(RoundRecord)
        .where(RoundRecord.state == GameState.CRASHED)
        .order_by(RoundRecord.crashed_at.desc())
        .limit(limit)
    )
    return list(result.scalars())
