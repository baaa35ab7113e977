"""Batch reconciliation over (account x token) keys for one chain.

For every account from the factory, in batches:

1. skip tokens whose key is already resolved in the progress store,
2. read the remaining balances in parallel (reads only),
3. record ``no_balance`` for empty ones,
4. sweep the rest one at a time and record the outcome.

A key is only ever recorded after its outcome is known. Before a transaction
is broadcast its hash is journaled as pending, and the next run settles any
journaled hash against the chain before it considers resubmitting.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from itertools import islice
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from .config import ChainConfig, Resource
from .errors import FatalActionError, LedgerUnavailable, ReadFailed, TransactionReverted
from .executor import ActionExecutor, OutcomeKind
from .ledger import LedgerClient, TransactionHandle, TxStatus
from .progress import BatchCursor, ProgressStore, ReconciliationKey, State

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    chain: str
    subjects: int = 0
    completed: int = 0
    insolvent: int = 0
    no_balance: int = 0
    read_failed: int = 0
    skipped: int = 0
    recovered: int = 0
    would_act: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)

    def log(self):
        logger.info(f"\n{self.chain} Summary:")
        logger.info(f"  Accounts: {self.subjects}")
        logger.info(f"  Processed: {self.completed}")
        logger.info(f"  Insolvent: {self.insolvent}")
        logger.info(f"  Skipped (no balance): {self.no_balance}")
        logger.info(f"  Skipped (cache): {self.skipped}")
        logger.info(f"  Read failures: {self.read_failed}")
        if self.recovered:
            logger.info(f"  Recovered pending: {self.recovered}")
        if self.would_act:
            logger.info(f"  Would sweep (dry run): {self.would_act}")


def batched(items: Iterable[str], size: int) -> Iterator[List[str]]:
    it = iter(items)
    while True:
        chunk = list(islice(it, size))
        if not chunk:
            return
        yield chunk


class ReconciliationEngine:
    def __init__(self, chain: ChainConfig, ledger: LedgerClient, store: ProgressStore,
                 executor: Optional[ActionExecutor], *, batch_size: int = 100,
                 read_concurrency: int = 8, tx_delay: float = 0.0,
                 skip_no_balance: bool = False, dry_run: bool = False,
                 sleep: Callable[[float], None] = time.sleep):
        if executor is None and not dry_run:
            raise ValueError("an executor is required unless dry_run is set")
        self.chain = chain
        self.ledger = ledger
        self.store = store
        self.executor = executor
        self.batch_size = batch_size
        self.read_concurrency = read_concurrency
        self.tx_delay = tx_delay
        self.skip_no_balance = skip_no_balance
        self.dry_run = dry_run
        self._sleep = sleep
        self._blocked: Set[ReconciliationKey] = set()
        self.summary = RunSummary(chain.name)

    def key(self, subject: str, resource: Resource) -> ReconciliationKey:
        return ReconciliationKey(self.chain.name, subject, resource.address)

    def run(self) -> RunSummary:
        logger.info("\n" + "=" * 60)
        logger.info(f"PROCESSING {self.chain.name.upper()}")
        logger.info("=" * 60)

        self.summary = RunSummary(self.chain.name)
        self._blocked = set()
        if self.dry_run:
            self._blocked = {k for k in self.store.pending() if k.chain == self.chain.name}
        else:
            self.settle_pending()

        logger.info(f"\nFetching prime accounts from {self.chain.name} factory...")
        subjects = list(self.ledger.enumerate_subjects())
        logger.info(f"Found {len(subjects)} prime accounts on {self.chain.name}")
        self.summary.subjects = len(subjects)
        self._track_subjects(subjects)

        if not subjects:
            logger.info(f"No accounts found on {self.chain.name}")
            return self.summary

        with ThreadPoolExecutor(max_workers=self.read_concurrency) as pool:
            position = 0
            for batch_index, batch in enumerate(batched(subjects, self.batch_size)):
                cursor = BatchCursor(self.chain.name, batch_index, self.batch_size, len(subjects))
                logger.info(f"\nProcessing {cursor.describe()}...")
                for subject in batch:
                    position += 1
                    logger.info(f"\n[{position}/{len(subjects)}] Account: {subject}")
                    self.process_subject(subject, pool)
                if not self.dry_run:
                    self.store.save_cursor(cursor)

        self.summary.log()
        return self.summary

    def _track_subjects(self, subjects: List[str]):
        known = self.store.known_subjects(self.chain.name)
        if len(subjects) < len(known):
            logger.warning(f"  registry returned {len(subjects)} accounts but {len(known)} are already known")
        if not self.dry_run:
            added = self.store.remember_subjects(self.chain.name, subjects)
            if added:
                logger.info(f"  {added} new accounts since the last run")

    # -- pending journal -----------------------------------------------------

    def settle_pending(self):
        """Resolve transactions journaled by an earlier run before anything is resubmitted."""
        for key, info in self.store.pending().items():
            if key.chain != self.chain.name:
                continue
            tx_hash = info["tx_hash"]
            logger.info(f"  Pending from an earlier run: {key} ({tx_hash})")
            try:
                status, receipt = self.ledger.transaction_status(tx_hash)
            except ReadFailed as e:
                logger.warning(f"    cannot look up {tx_hash}, leaving {key} for the next run: {e}")
                self._blocked.add(key)
                continue

            mined_ok = status == TxStatus.MINED and receipt is not None and receipt.status == 1
            if status == TxStatus.PENDING or mined_ok:
                if status == TxStatus.PENDING:
                    logger.info("    still in the mempool, waiting for confirmation...")
                if self.executor is None:
                    self._blocked.add(key)
                    continue
                try:
                    receipt = self.ledger.await_confirmation(
                        TransactionHandle(tx_hash, info.get("nonce")), self.executor.min_confirmations)
                except TransactionReverted as e:
                    self._settle_revert(key, tx_hash, e)
                    continue
                except Exception as e:
                    raise FatalActionError(str(key), e) from e
                self.store.record_outcome(key, State.COMPLETED,
                                          {"tx_hash": tx_hash, "block_number": receipt.block_number})
                logger.info(f"    mined in block {receipt.block_number}, marked as processed")
                self.summary.recovered += 1
                continue

            if status == TxStatus.MINED and receipt is not None:
                reason = self.ledger.revert_reason(tx_hash, receipt)
                self._settle_revert(key, tx_hash, TransactionReverted(reason, tx_hash))
                continue

            logger.info("    unknown to the node (dropped or never sent), will re-evaluate")
            self.store.clear_pending(key)

    def _settle_revert(self, key: ReconciliationKey, tx_hash: str, err: TransactionReverted):
        rule = self.executor.taxonomy.classify(err.reason) if self.executor else None
        if rule is not None:
            self.store.record_outcome(key, State.INSOLVENT,
                                      {"tx_hash": tx_hash, "rule": rule, "reason": err.reason})
            logger.info(f"    reverted ({rule}), marked as insolvent")
            self.summary.insolvent += 1
        else:
            logger.info(f"    reverted ({err.reason}), will re-evaluate")
            self.store.clear_pending(key)

    # -- per account ---------------------------------------------------------

    def _needs_check(self, key: ReconciliationKey, resource: Resource) -> bool:
        rec = self.store.get(key)
        if rec is not None:
            if rec.state == State.COMPLETED:
                logger.info(f"  Skipping {resource.name} (already processed)")
                self.summary.skipped += 1
                return False
            if rec.state == State.INSOLVENT:
                logger.info(f"  Skipping {resource.name} (insolvent)")
                self.summary.skipped += 1
                return False
            if rec.state == State.NO_BALANCE and self.skip_no_balance:
                logger.info(f"  Skipping {resource.name} (no balance in cache)")
                self.summary.skipped += 1
                return False
        if key in self._blocked:
            logger.info(f"  Skipping {resource.name} (pending transaction unresolved)")
            self.summary.read_failed += 1
            return False
        return True

    def read_balances(self, subject: str, resources: List[Resource],
                      pool: ThreadPoolExecutor) -> List[Tuple[Resource, Optional[int], Optional[ReadFailed]]]:
        """Per-key ``ReadFailed`` is returned; ``LedgerUnavailable`` aborts the batch."""
        futures = [(r, pool.submit(self.ledger.read_balance, subject, r)) for r in resources]
        out = []
        try:
            for r, fut in futures:
                try:
                    out.append((r, fut.result(), None))
                except ReadFailed as e:
                    out.append((r, None, e))
        except LedgerUnavailable:
            for _, fut in futures:
                fut.cancel()
            raise
        return out

    def process_subject(self, subject: str, pool: ThreadPoolExecutor):
        to_check = [r for r in self.chain.resources if self._needs_check(self.key(subject, r), r)]
        if not to_check:
            return

        logger.info(f"  Checking balances for {len(to_check)} tokens in parallel...")
        with_balance: List[Resource] = []
        for resource, balance, err in self.read_balances(subject, to_check, pool):
            if err is not None:
                logger.warning(f"  Balance unknown for {resource.name} ({err.cause}), skipping this run")
                self.summary.read_failed += 1
            elif balance > 0:
                logger.info(f"  Found balance for {resource.name}")
                with_balance.append(resource)
            else:
                logger.info(f"  No balance for {resource.name}")
                if not self.dry_run:
                    self.store.record_outcome(self.key(subject, resource), State.NO_BALANCE)
                self.summary.no_balance += 1

        # one at a time: a sweep changes the solvency seen by the next one
        for resource in with_balance:
            if self.dry_run:
                logger.info(f"  Would sweep {resource.name} (dry run)")
                self.summary.would_act += 1
                continue
            self.act(subject, resource)
            if self.tx_delay:
                self._sleep(self.tx_delay)

    def act(self, subject: str, resource: Resource):
        key = self.key(subject, resource)
        logger.info(f"\n  Processing: {subject}")
        logger.info(f"    Token: {resource.name} ({resource.address})")

        def journal(signed):
            self.store.record_pending(key, signed.tx_hash, signed.nonce)

        outcome = self.executor.execute(subject, resource, on_prepared=journal)
        if outcome.kind == OutcomeKind.COMPLETED:
            self.store.record_outcome(key, State.COMPLETED, {
                "tx_hash": outcome.receipt.tx_hash,
                "block_number": outcome.receipt.block_number,
            })
            logger.info(f"  Marked as processed: {key}")
            logger.info(f"  TX: {outcome.receipt.tx_hash}")
            self.summary.completed += 1
        elif outcome.kind == OutcomeKind.REJECTED:
            logger.info(f"    Rejected ({outcome.rule}) for {resource.name}, marking and continuing...")
            meta = {"rule": outcome.rule, "reason": outcome.reason}
            if outcome.tx_hash:
                meta["tx_hash"] = outcome.tx_hash
            self.store.record_outcome(key, State.INSOLVENT, meta)
            logger.info(f"  Marked as insolvent: {key}")
            self.summary.insolvent += 1
        else:
            logger.error(f"    FATAL for {resource.name}: {outcome.reason}")
            raise FatalActionError(str(key), outcome.error)
