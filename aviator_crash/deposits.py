# deposits.py
"""
Deposit Confirmation Pipeline

pending -> confirmed -> credited, strictly in that order.

Confirmation events come from outside (verifier callback, operator action,
client-triggered poll) and may be delivered any number of times. Only the
caller whose UPDATE flips ``confirmed -> credited`` touches the balance;
everyone else gets ``AlreadyCredited``.
"""

from __future__ import annotations

import os
import logging
from typing import List

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db import Account, Deposit, DepositStatus, TransactionType, adjust_balance
from .errors import (
    AccountNotFound,
    AlreadyCredited,
    DepositNotAllowed,
    DuplicateReference,
    InvalidAmount,
    InvalidReference,
    NotConfirmed,
    UnknownReference,
)
from .utils import to_money, utcnow

logger = logging.getLogger("aviator.deposits")

# =====================================================
# CONFIG
# =====================================================

REQUIRED_CONFIRMATIONS = int(os.getenv("REQUIRED_CONFIRMATIONS", "1"))

DEFAULT_CURRENCY = "BTC"


class DepositConfirmationPipeline:

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        required_confirmations: int = REQUIRED_CONFIRMATIONS,
    ) -> None:
        self._sessions = sessions
        self.required_confirmations = required_confirmations

    @staticmethod
    def _match(external_reference: str, currency: str):
        return (
            Deposit.currency == currency,
            Deposit.external_reference == external_reference,
        )

    # =====================================================
    # SUBMISSION
    # =====================================================

    async def submit(
        self,
        account_id: str,
        claimed_amount,
        external_reference: str,
        currency: str = DEFAULT_CURRENCY,
    ) -> Deposit:
        try:
            amount = to_money(claimed_amount)
        except ValueError as e:
            raise InvalidAmount(str(e)) from e
        if amount <= 0:
            raise InvalidAmount("Deposit amount must be positive")

        reference = (external_reference or "").strip()
        if not reference:
            raise InvalidReference("Transaction reference is required")

        async with self._sessions() as session:
            account = await session.get(Account, account_id)
            if account is None:
                raise AccountNotFound(f"Account {account_id} not found")
            if account.is_demo:
                raise DepositNotAllowed("Deposits are disabled in demo mode")

            deposit = Deposit(
                account_id=account_id,
                claimed_amount=amount,
                currency=currency,
                external_reference=reference,
                confirmations=0,
                status=DepositStatus.PENDING,
            )
            session.add(deposit)

            try:
                await session.commit()
            except IntegrityError as e:
                # Uniqueness lives in the schema; this is the only place it surfaces
                raise DuplicateReference(
                    f"Reference {reference} already used for {currency}"
                ) from e

        logger.info(f"Deposit {deposit.id} submitted: {account_id} claims {amount} {currency} ({reference})")
        return deposit

    # =====================================================
    # CONFIRMATION
    # =====================================================

    async def record_confirmation(
        self,
        external_reference: str,
        confirmations: int,
        currency: str = DEFAULT_CURRENCY,
    ) -> Deposit:
        """
        Record an observed confirmation count. Counts never go backwards;
        reaching the threshold moves a pending deposit to confirmed.
        """
        if confirmations < 0:
            raise InvalidAmount("Confirmation count must be non-negative")

        match = self._match(external_reference, currency)

        async with self._sessions() as session:
            await session.execute(
                update(Deposit)
                .where(*match, Deposit.confirmations < confirmations)
                .values(confirmations=confirmations)
                .execution_options(synchronize_session=False)
            )

            if confirmations >= self.required_confirmations:
                result = await session.execute(
                    update(Deposit)
                    .where(*match, Deposit.status == DepositStatus.PENDING)
                    .values(status=DepositStatus.CONFIRMED, confirmed_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    logger.info(f"Deposit {external_reference} confirmed ({confirmations} conf)")

            deposit = await session.scalar(select(Deposit).where(*match))
            if deposit is None:
                raise UnknownReference(f"Unknown deposit reference {external_reference}")

            await session.commit()

        return deposit

    async def credit(
        self,
        external_reference: str,
        currency: str = DEFAULT_CURRENCY,
    ) -> Deposit:
        """
        Credit a confirmed deposit exactly once.
        The status compare-and-set and the balance credit commit together.
        """
        match = self._match(external_reference, currency)

        async with self._sessions() as session:
            result = await session.execute(
                update(Deposit)
                .where(*match, Deposit.status == DepositStatus.CONFIRMED)
                .values(status=DepositStatus.CREDITED, credited_at=utcnow())
                .execution_options(synchronize_session=False)
            )

            if result.rowcount != 1:
                await session.rollback()
                deposit = await session.scalar(select(Deposit).where(*match))
                if deposit is None:
                    raise UnknownReference(f"Unknown deposit reference {external_reference}")
                if deposit.status == DepositStatus.CREDITED:
                    raise AlreadyCredited(f"Deposit {external_reference} already credited")
                raise NotConfirmed(f"Deposit {external_reference} is {deposit.status.value}")

            deposit = await session.scalar(select(Deposit).where(*match))
            balance_after = await adjust_balance(
                session,
                deposit.account_id,
                deposit.claimed_amount,
                TransactionType.DEPOSIT,
                reference=f"deposit:{currency}:{external_reference}",
            )
            await session.commit()

        logger.info(
            f"Deposit {external_reference} credited {deposit.claimed_amount} to "
            f"{deposit.account_id} (balance {balance_after})"
        )
        return deposit

    async def confirm(
        self,
        external_reference: str,
        confirmations: int,
        currency: str = DEFAULT_CURRENCY,
    ) -> Deposit:
        """
        Entry point for repeatable confirmation events: record the count and
        credit once the deposit is confirmed. Redelivery after crediting is a
        no-op that returns the credited deposit.
        """
        deposit = await self.record_confirmation(external_reference, confirmations, currency)
        if deposit.status != DepositStatus.CONFIRMED:
            return deposit

        try:
            return await self.credit(external_reference, currency)
        except AlreadyCredited:
            logger.debug(f"Duplicate confirmation for {external_reference} ignored")
            return await self.get(external_reference, currency)

    # =====================================================
    # QUERIES
    # =====================================================

    async def get(self, external_reference: str, currency: str = DEFAULT_CURRENCY) -> Deposit:
        async with self._sessions() as session:
            deposit = await session.scalar(
                select(Deposit).where(*self._match(external_reference, currency))
            )
        if deposit is None:
            raise UnknownReference(f"Unknown deposit reference {external_reference}")
        return deposit

    async def list_for_account(self, account_id: str, limit: int = 50) -> List[Deposit]:
        """Most recent first."""
        async with self._sessions() as session:
            result = await session.execute(
                select(Deposit)
                .where(Deposit.account_id == account_id)
                .order_by(Deposit.id.desc())
                .limit(limit)
            )
            return list(result.scalars())
