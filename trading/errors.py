"""Failure taxonomy shared by the acquisition loop and treasury settlement."""

from __future__ import annotations


class FlywheelError(RuntimeError):
    """Base class for expected flywheel failures."""

    kind = "unexpected"


class TransientError(FlywheelError):
    """RPC timeout or rate limit; safe to retry."""

    kind = "transient"


class EconomicError(FlywheelError):
    """Insufficient balance, cap exceeded, quote unavailable. Skip this cycle."""

    kind = "economic"


class IntegrityError(FlywheelError):
    """Post-condition broken mid-sequence. Abort, keep partial state, alert."""

    kind = "integrity"


class SpendCapExceeded(EconomicError):
    pass


class SlippageExceeded(IntegrityError):
    pass


class TxFailed(FlywheelError):
    """A transaction could not be sent, reverted, or was never confirmed.

    `stage` is one of "preflight" (never broadcast), "reverted" (mined with
    status 0) or "timeout" (broadcast, outcome unknown).
    """

    kind = "tx_failed"

    def __init__(self, message: str, *, stage: str = "preflight", tx_hash: str = "") -> None:
        super().__init__(message)
        self.stage = stage
        self.tx_hash = tx_hash

    @property
    def value_not_spent(self) -> bool:
        return self.stage in ("preflight", "reverted")


def error_kind(exc: BaseException) -> str:
    return getattr(exc, "kind", "unexpected") if isinstance(exc, FlywheelError) else "unexpected"
