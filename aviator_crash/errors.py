# errors.py
"""
Engine error kinds.

Every error is a recoverable, caller-visible outcome. The HTTP layer maps
``status_code`` straight onto the response.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base engine error"""

    status_code = 400

    @property
    def code(self) -> str:
        return type(self).__name__


# =========================
# ROUND STATE
# =========================

class StateError(EngineError):
    """Action performed in invalid state"""

    status_code = 409


class RoundNotAcceptingBets(StateError):
    """Round is not in the waiting phase"""


class RoundNotFlying(StateError):
    """Round has not taken off yet"""


class RoundAlreadyCrashed(StateError):
    """Round crashed before the request was applied"""


class ClockError(StateError):
    """Round clock misuse (restart, bad crash point)"""


# =========================
# BETS
# =========================

class BetError(EngineError):
    """Invalid bet parameters"""


class InvalidStake(BetError):
    pass


class InvalidAutoCashout(BetError):
    pass


class BetNotFound(BetError):
    status_code = 404


class BetNotActive(BetError):
    """Bet already settled (cashed out or lost)"""

    status_code = 409


# =========================
# ACCOUNTS
# =========================

class AccountError(EngineError):
    pass


class AccountNotFound(AccountError):
    status_code = 404


class InsufficientBalance(AccountError):
    status_code = 402


# =========================
# DEPOSITS
# =========================

class DepositError(EngineError):
    pass


class InvalidAmount(DepositError):
    pass


class InvalidReference(DepositError):
    pass


class DepositNotAllowed(DepositError):
    """Deposits are disabled for demo accounts"""

    status_code = 403


class DuplicateReference(DepositError):
    status_code = 409


class UnknownReference(DepositError):
    status_code = 404


class NotConfirmed(DepositError):
    status_code = 409


class AlreadyCredited(DepositError):
    status_code = 409
