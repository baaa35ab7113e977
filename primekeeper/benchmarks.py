"""Print the stored GMX position benchmark of one prime account per GM market."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from .config import ChainConfig, Resource
from .errors import ReadFailed
from .ledger import LedgerClient

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40

BENCHMARK_ABI = [
    {"inputs": [{"internalType": "address", "name": "market", "type": "address"}],
     "name": "getGmxPositionBenchmark",
     "outputs": [{"components": [
         {"internalType": "uint256", "name": "benchmarkValueUsd", "type": "uint256"},
         {"internalType": "uint256", "name": "underlyingLongTokenAmount", "type": "uint256"},
         {"internalType": "uint256", "name": "underlyingShortTokenAmount", "type": "uint256"},
         {"internalType": "uint256", "name": "benchmarkTimeStamp", "type": "uint256"},
         {"internalType": "address", "name": "longTokenAddress", "type": "address"},
         {"internalType": "address", "name": "shortTokenAddress", "type": "address"},
         {"internalType": "bool", "name": "exists", "type": "bool"},
     ], "internalType": "struct DiamondStorageLib.GmxPositionBenchmark", "name": "benchmark", "type": "tuple"}],
     "stateMutability": "view", "type": "function"},
]


@dataclass(frozen=True)
class Benchmark:
    value_usd: int
    long_amount: int
    short_amount: int
    timestamp: int
    long_token: str
    short_token: str
    exists: bool

    @classmethod
    def from_tuple(cls, raw) -> "Benchmark":
        return cls(int(raw[0]), int(raw[1]), int(raw[2]), int(raw[3]), raw[4], raw[5], bool(raw[6]))


def format_units(value: int, decimals: int = 18) -> str:
    amount = Decimal(value) / (Decimal(10) ** decimals)
    text = f"{amount:,.6f}".rstrip("0")
    whole, _, frac = text.partition(".")
    return f"{whole}.{frac.ljust(2, '0')}"


def format_timestamp(ts: int) -> str:
    if not ts:
        return "Not set"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def truncate_address(address: str) -> str:
    if address.lower() == ZERO_ADDRESS:
        return "Zero Address"
    return f"{address[:6]}...{address[-4:]}"


def query_benchmarks(ledger: LedgerClient, chain: ChainConfig, account: str,
                     markets: Optional[List[Resource]] = None) -> List[Optional[Benchmark]]:
    contract = ledger.contract(account, BENCHMARK_ABI)
    logger.info(f"Querying contract: {account} on {chain.name}\n")
    logger.info("=" * 80)

    results = []
    for market in markets if markets is not None else chain.resources:
        logger.info(f"\nQuerying {market.name}")
        logger.info(f"   Market Address: {market.address}")
        try:
            raw = ledger.call_view(f"getGmxPositionBenchmark({market.name})",
                                   contract.functions.getGmxPositionBenchmark(market.address).call)
        except ReadFailed as e:
            logger.info(f"   Error querying {market.name}: {e.cause}")
            logger.info("-" * 60)
            results.append(None)
            continue
        b = Benchmark.from_tuple(raw)
        results.append(b)
        logger.info("   Results:")
        logger.info(f"      Benchmark Value USD: ${format_units(b.value_usd, 18)}")
        logger.info(f"      Long Token Amount: {format_units(b.long_amount)}")
        logger.info(f"      Short Token Amount: {format_units(b.short_amount, 6)}")
        logger.info(f"      Timestamp: {format_timestamp(b.timestamp)}")
        logger.info(f"      Long Token: {truncate_address(b.long_token)}")
        logger.info(f"      Short Token: {truncate_address(b.short_token)}")
        logger.info(f"      Exists: {'Yes' if b.exists else 'No'}")
        if not b.exists:
            logger.info("      No benchmark data found for this market")
        logger.info("-" * 60)
    return results
