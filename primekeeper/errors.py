"""Typed failures raised by the keeper jobs."""
from __future__ import annotations

from typing import Optional


class KeeperError(Exception):
    """Base for every error the CLI turns into a non-zero exit."""


class ConfigError(KeeperError):
    pass


class LedgerUnavailable(KeeperError):
    """RPC endpoint unreachable after the retry budget."""


class PayloadUnavailable(KeeperError):
    """No usable signed price data for the oracle payload."""


class ReadFailed(KeeperError):
    """A view call failed after retries. The value is unknown, not zero."""

    def __init__(self, what: str, cause: Optional[BaseException] = None):
        super().__init__(f"read failed: {what}: {cause}")
        self.what = what
        self.cause = cause


class TransactionReverted(KeeperError):
    def __init__(self, reason: str, tx_hash: Optional[str] = None):
        super().__init__(f"transaction reverted: {reason}" + (f" ({tx_hash})" if tx_hash else ""))
        self.reason = reason
        self.tx_hash = tx_hash


class ConfirmationTimeout(KeeperError):
    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(f"no confirmation for {tx_hash} after {timeout:.0f}s")
        self.tx_hash = tx_hash
        self.timeout = timeout


class ProgressStoreError(KeeperError):
    pass


class StoreLocked(ProgressStoreError):
    """Another process already holds the writer lock for this store."""


class FatalActionError(KeeperError):
    """Unclassified failure of a mutating call; the run must stop."""

    def __init__(self, key: str, cause: BaseException):
        super().__init__(f"fatal error for {key}: {cause}")
        self.key = key
        self.cause = cause
