"""Command line entry point: ``primekeeper <command>``."""
from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from .config import ChainConfig, KeeperConfig, load_config
from .errors import ConfigError, KeeperError
from .ledger import LedgerClient
from .progress import open_store

logger = logging.getLogger("primekeeper")


def setup_logging(verbose: bool = False):
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    # web3 and urllib3 are chatty at DEBUG
    for name in ("web3", "urllib3"):
        logging.getLogger(name).setLevel(logging.INFO if verbose else logging.WARNING)


def _token_manager_chain(config: KeeperConfig, name: Optional[str]) -> ChainConfig:
    if name:
        chain = config.chain(name)
        if not chain.token_manager:
            raise ConfigError(f"{chain.name} has no TokenManager configured")
        return chain
    for chain in config.chains:
        if chain.token_manager:
            return chain
    raise ConfigError("no configured chain has a TokenManager address")


def cmd_sweep(args, config: KeeperConfig) -> int:
    from .sweeper import FeeSweeper, default_payload, no_payload

    config = config.only(args.chain)
    payload_factory = default_payload
    if args.without_oracle:
        logger.warning("Sending sweeps without the RedStone price payload")
        payload_factory = no_payload
    FeeSweeper(config, dry_run=args.dry_run, skip_no_balance=args.skip_no_balance,
               payload_factory=payload_factory).run()
    return 0


def cmd_coverage(args, config: KeeperConfig) -> int:
    from .coverage import DebtCoverageAnalyzer

    config.validate()
    chain = _token_manager_chain(config, args.chain)
    ledger = LedgerClient.from_config(chain, config)
    DebtCoverageAnalyzer(config, chain, ledger).run(args.mode)
    return 0


def cmd_sync_qa(args, config: KeeperConfig) -> int:
    from .tokensync import TokenManagerSync

    config.validate()
    if not config.deployer_key:
        raise ConfigError("DP_DEPLOYER_KEY environment variable not set")
    chain = _token_manager_chain(config, args.chain)
    ledger = LedgerClient.from_config(chain, config, config.deployer_key)
    report = TokenManagerSync(config, chain, ledger).run()
    return 1 if report.verification_errors else 0


def cmd_benchmarks(args, config: KeeperConfig) -> int:
    from .benchmarks import query_benchmarks

    config.validate()
    chain = config.chain(args.chain or config.chains[0].name)
    markets = None
    if args.market:
        wanted = {m.lower() for m in args.market}
        markets = [r for r in chain.resources if r.name.lower() in wanted or r.address.lower() in wanted]
        if not markets:
            raise ConfigError(f"no {chain.name} market matches {', '.join(args.market)}")
    logger.info(f"Starting GMX Position Benchmark Query on {chain.name}\n")
    ledger = LedgerClient.from_config(chain, config)
    query_benchmarks(ledger, chain, args.account or config.benchmark_account, markets)
    logger.info("\nQuery completed successfully!")
    return 0


def cmd_status(args, config: KeeperConfig) -> int:
    with open_store(config.progress_file, lock=False) as store:
        counts = store.counts()
        pending = store.pending()
        cursor = store.last_cursor()
    logger.info(f"Progress store: {config.progress_file}")
    if not counts:
        logger.info("  (empty)")
    for chain, per in counts.items():
        logger.info(f"  {chain}: " + ", ".join(f"{k}={v}" for k, v in per.items()))
    if cursor:
        logger.info(f"  last batch: {cursor['chain']} {cursor['batch_index'] + 1} of {cursor['total']} accounts")
    for key, info in pending.items():
        logger.info(f"  pending {key}: {info['tx_hash']} (nonce {info.get('nonce')})")
    return 0


def cmd_serve(args, config: KeeperConfig) -> int:
    import uvicorn

    from .status_terminal.server import create_app

    uvicorn.run(create_app(config.progress_file), host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    from .coverage import COVERAGE_MODES

    p = argparse.ArgumentParser(prog="primekeeper", description="Prime account maintenance jobs")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    p.add_argument("--env-file", help="dotenv file to load instead of ./.env")
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("sweep", help="sweep GM fees and update benchmarks on every prime account")
    s.add_argument("--chain", action="append", help="only this chain (repeatable)")
    s.add_argument("--dry-run", action="store_true", help="read balances only, send and record nothing")
    s.add_argument("--skip-no-balance", action="store_true", help="trust cached no-balance entries")
    s.add_argument("--without-oracle", action="store_true", help="do not append RedStone price data to sweeps")
    s.set_defaults(func=cmd_sweep)

    c = sub.add_parser("coverage", help="debt coverage analysis and tier tooling")
    c.add_argument("mode", nargs="?", default="analyze", choices=COVERAGE_MODES)
    c.add_argument("--chain", help="chain whose TokenManager to use")
    c.set_defaults(func=cmd_coverage)

    q = sub.add_parser("sync-qa", help="copy prod TokenManager tokens and tiers to QA")
    q.add_argument("--chain", help="chain whose TokenManager to use")
    q.set_defaults(func=cmd_sync_qa)

    b = sub.add_parser("benchmarks", help="print GMX position benchmarks of a prime account")
    b.add_argument("--account", help="prime account address")
    b.add_argument("--chain", help="chain name (default: first configured)")
    b.add_argument("--market", action="append", help="GM market name or address (repeatable)")
    b.set_defaults(func=cmd_benchmarks)

    st = sub.add_parser("status", help="print progress store counts and pending transactions")
    st.set_defaults(func=cmd_status)

    sv = sub.add_parser("serve", help="serve the read-only status terminal")
    sv.add_argument("--host", default="127.0.0.1")
    sv.add_argument("--port", type=int, default=8787)
    sv.set_defaults(func=cmd_serve)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    try:
        config = load_config(args.env_file)
        return args.func(args, config)
    except KeyboardInterrupt:
        logger.error("\nInterrupted; progress so far is saved.")
        return 130
    except KeeperError as e:
        logger.error(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
