"""Submit one mutating action and classify what happened.

COMPLETED  - mined with at least ``min_confirmations``; safe to record.
REJECTED   - reverted with a reason matching a configured rejection rule
             (an expected business outcome, e.g. the sweep would leave the
             account insolvent).
FATAL      - anything else. The caller stops the run.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional, Tuple

from .config import Resource
from .errors import TransactionReverted
from .ledger import LedgerClient, Receipt, SignedAction

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    REJECTED = "rejected"
    FATAL = "fatal"


@dataclass
class Outcome:
    kind: OutcomeKind
    receipt: Optional[Receipt] = None
    rule: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[BaseException] = None
    tx_hash: Optional[str] = None

    @classmethod
    def completed(cls, receipt: Receipt) -> "Outcome":
        return cls(OutcomeKind.COMPLETED, receipt=receipt, tx_hash=receipt.tx_hash)

    @classmethod
    def rejected(cls, rule: str, reason: str, tx_hash: Optional[str] = None) -> "Outcome":
        return cls(OutcomeKind.REJECTED, rule=rule, reason=reason, tx_hash=tx_hash)

    @classmethod
    def fatal(cls, error: BaseException, tx_hash: Optional[str] = None) -> "Outcome":
        return cls(OutcomeKind.FATAL, error=error, reason=str(error), tx_hash=tx_hash)


@dataclass(frozen=True)
class RejectionRule:
    name: str
    pattern: str

    def matches(self, reason: str) -> bool:
        return re.search(self.pattern, reason or "", re.IGNORECASE) is not None


class RejectionTaxonomy:
    """Closed list of revert reasons that count as expected rejections."""

    def __init__(self, rules: Iterable[RejectionRule]):
        self.rules = tuple(rules)

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, str]], literal: bool = True) -> "RejectionTaxonomy":
        return cls(RejectionRule(name, re.escape(p) if literal else p) for name, p in pairs)

    def classify(self, reason: str) -> Optional[str]:
        for rule in self.rules:
            if rule.matches(reason):
                return rule.name
        return None


PayloadProvider = Callable[[str, Resource], bytes]


class ActionExecutor:
    def __init__(self, ledger: LedgerClient, taxonomy: RejectionTaxonomy,
                 min_confirmations: int = 1, payload_provider: Optional[PayloadProvider] = None):
        self.ledger = ledger
        self.taxonomy = taxonomy
        self.min_confirmations = max(1, min_confirmations)
        self.payload_provider = payload_provider

    def execute(self, subject: str, resource: Resource,
                on_prepared: Optional[Callable[[SignedAction], None]] = None) -> Outcome:
        """``on_prepared`` runs after signing and before broadcast, so the
        caller can journal the hash of a transaction that may outlive us."""
        tx_hash = None
        try:
            payload = self.payload_provider(subject, resource) if self.payload_provider else b""
            signed = self.ledger.prepare_action(subject, resource, payload)
            tx_hash = signed.tx_hash
            if on_prepared is not None:
                on_prepared(signed)
            logger.info("    Sending transaction...")
            handle = self.ledger.broadcast(signed)
            logger.info(f"    TX submitted: {handle.tx_hash}")
            logger.info("    Waiting for confirmation...")
            receipt = self.ledger.await_confirmation(handle, self.min_confirmations)
        except TransactionReverted as e:
            return self.classify_revert(e.reason, e.tx_hash or tx_hash, e)
        except Exception as e:
            return Outcome.fatal(e, tx_hash)
        logger.info(f"    Success! Block: {receipt.block_number}")
        return Outcome.completed(receipt)

    def classify_revert(self, reason: str, tx_hash: Optional[str], error: BaseException) -> Outcome:
        rule = self.taxonomy.classify(reason)
        if rule is None:
            return Outcome.fatal(error, tx_hash)
        return Outcome.rejected(rule, reason, tx_hash)
