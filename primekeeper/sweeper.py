"""Fee sweeper: run the reconciliation engine over every configured chain.

One progress store (and one writer lock) covers all chains; keys carry the
chain name so Arbitrum and Avalanche entries never collide.
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional

from .config import ChainConfig, KeeperConfig, signer_address
from .engine import ReconciliationEngine, RunSummary
from .executor import ActionExecutor, PayloadProvider, RejectionTaxonomy
from .ledger import LedgerClient
from .oracle import RedstonePayloadProvider
from .progress import ProgressStore, open_store

logger = logging.getLogger(__name__)

LedgerFactory = Callable[[ChainConfig, KeeperConfig], LedgerClient]
PayloadFactory = Callable[[ChainConfig, KeeperConfig], Optional[PayloadProvider]]


def default_ledger(chain: ChainConfig, config: KeeperConfig) -> LedgerClient:
    return LedgerClient.from_config(chain, config, config.private_key)


def default_payload(chain: ChainConfig, config: KeeperConfig) -> Optional[PayloadProvider]:
    return RedstonePayloadProvider.for_chain(chain, config)


def no_payload(chain: ChainConfig, config: KeeperConfig) -> Optional[PayloadProvider]:
    return None


class FeeSweeper:
    def __init__(self, config: KeeperConfig, *, dry_run: bool = False, skip_no_balance: bool = False,
                 ledger_factory: LedgerFactory = default_ledger,
                 store: Optional[ProgressStore] = None,
                 payload_factory: PayloadFactory = default_payload):
        self.config = config.validate(require_signer=not dry_run)
        self.dry_run = dry_run
        self.skip_no_balance = skip_no_balance
        self.ledger_factory = ledger_factory
        self.store = store or open_store(config.progress_file, lock=not dry_run)
        self.taxonomy = RejectionTaxonomy.from_pairs(config.rejections)
        self.payload_factory = payload_factory

    def run(self) -> List[RunSummary]:
        logger.info("Fee Sweeper Starting...\n")
        if self.config.private_key:
            logger.info(f"Liquidator Address: {signer_address(self.config.private_key)}\n")
        if self.dry_run:
            logger.info("DRY RUN: balances are read, nothing is sent or recorded\n")

        summaries = []
        with self.store:
            counts = self.store.counts()
            for chain, per in counts.items():
                logger.info(f"Loaded progress for {chain}: " + ", ".join(f"{v} {k}" for k, v in per.items()))
            for chain in self.config.chains:
                summaries.append(self.run_chain(chain))

        logger.info("\n" + "=" * 60)
        logger.info("SWEEP COMPLETE" if not self.dry_run else "DRY RUN COMPLETE")
        logger.info("=" * 60)
        logger.info(f"Total processed this run: {sum(s.completed for s in summaries)}")
        logger.info(f"Total insolvent this run: {sum(s.insolvent for s in summaries)}")
        return summaries

    def run_chain(self, chain: ChainConfig) -> RunSummary:
        ledger = self.ledger_factory(chain, self.config)
        executor = None
        if not self.dry_run:
            executor = ActionExecutor(ledger, self.taxonomy,
                                      min_confirmations=self.config.min_confirmations,
                                      payload_provider=self.payload_factory(chain, self.config))
        engine = ReconciliationEngine(
            chain, ledger, self.store, executor,
            batch_size=self.config.batch_size,
            read_concurrency=self.config.read_concurrency,
            tx_delay=self.config.tx_delay,
            skip_no_balance=self.skip_no_balance,
            dry_run=self.dry_run,
        )
        return engine.run()
