"""Copy token assets and tiered debt coverage from the prod TokenManager to QA.

Only differences are written: missing tokens are added in one
``addTokenAssets`` call, then each tier value that differs is set.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List

from web3 import Web3

from .config import ChainConfig, KeeperConfig
from .coverage import BASIC, PREMIUM, TOKEN_MANAGER_ABI, bytes32_to_str
from .errors import ConfigError, KeeperError, LedgerUnavailable, ReadFailed
from .ledger import LedgerClient

logger = logging.getLogger(__name__)


def format_ether(raw: int) -> str:
    whole, frac = divmod(int(raw), 10 ** 18)
    if not frac:
        return f"{whole}.0"
    return f"{whole}.{str(frac).rjust(18, '0').rstrip('0')}"


@dataclass
class TokenTiers:
    address: str
    symbol: bytes
    basic: int
    premium: int

    @property
    def name(self) -> str:
        return bytes32_to_str(self.symbol)


@dataclass
class SyncReport:
    valid_tokens: List[TokenTiers] = field(default_factory=list)
    added: int = 0
    updates: int = 0
    already_matched: int = 0
    qa_tokens_after: int = 0
    verification_errors: int = 0


class TokenManagerSync:
    def __init__(self, config: KeeperConfig, chain: ChainConfig, ledger: LedgerClient):
        if not chain.token_manager:
            raise ConfigError(f"{chain.name}: no TokenManager address configured")
        if ledger.address is None:
            raise ConfigError("DP_DEPLOYER_KEY environment variable not set")
        self.config = config
        self.ledger = ledger
        self.prod = ledger.contract(chain.token_manager, TOKEN_MANAGER_ABI)
        self.qa = ledger.contract(config.qa_token_manager, TOKEN_MANAGER_ABI)

    def _read(self, what, fn):
        return self.ledger.call_view(what, fn)

    def read_prod(self) -> List[TokenTiers]:
        logger.info("Reading from production TokenManager...")
        fns = self.prod.functions
        addresses = self._read("prod getSupportedTokensAddresses", fns.getSupportedTokensAddresses().call)
        logger.info(f"Found {len(addresses)} supported tokens in production\n")

        tokens = []
        for i, address in enumerate(addresses, 1):
            logger.info(f"Processing token {i}/{len(addresses)}: {address}")
            try:
                symbol = self._read(f"symbol {address}", fns.tokenAddressToSymbol(address).call)
                basic = int(self._read(f"basic {address}", fns.tieredDebtCoverage(BASIC.enum, address).call))
                premium = int(self._read(f"premium {address}", fns.tieredDebtCoverage(PREMIUM.enum, address).call))
            except ReadFailed as e:
                logger.error(f"  Error processing token {address}: {e.cause}")
                continue
            token = TokenTiers(address, bytes(symbol), basic, premium)
            tokens.append(token)
            logger.info(f"  Symbol: {token.name}")
            logger.info(f"  Basic Tier Coverage: {format_ether(basic)}")
            logger.info(f"  Premium Tier Coverage: {format_ether(premium)}\n")
        return tokens

    def qa_tokens(self) -> List[str]:
        try:
            return list(self._read("qa getSupportedTokensAddresses",
                                   self.qa.functions.getSupportedTokensAddresses().call))
        except ReadFailed:
            logger.info("QA environment appears to be empty or inaccessible\n")
            return []

    def _qa_tiers(self, address: str):
        fns = self.qa.functions
        basic = int(self._read(f"qa basic {address}", fns.tieredDebtCoverage(BASIC.enum, address).call))
        premium = int(self._read(f"qa premium {address}", fns.tieredDebtCoverage(PREMIUM.enum, address).call))
        return basic, premium

    def add_missing(self, tokens: List[TokenTiers], qa_tokens: List[str]) -> List[TokenTiers]:
        present = {a.lower() for a in qa_tokens}
        missing = [t for t in tokens if t.address.lower() not in present]
        logger.info(f"Analysis: {len(missing)} tokens need to be added to QA\n")
        if not missing:
            return missing
        logger.info("Adding missing tokens to QA...")
        # basic tier doubles as the default debt coverage
        assets = [(t.symbol, Web3.to_checksum_address(t.address), t.basic) for t in missing]
        receipt = self.ledger.transact(self.qa.functions.addTokenAssets(assets), self.config.min_confirmations)
        logger.info(f"Tokens added successfully (block {receipt.block_number})\n")
        return missing

    def update_tiers(self, tokens: List[TokenTiers], report: SyncReport):
        logger.info("Checking and updating tiered debt coverage...")
        for token in tokens:
            logger.info(f"Checking coverage for {token.name} ({token.address})")
            try:
                qa_values = self._qa_tiers(token.address)
                for tier, want, have in ((BASIC, token.basic, qa_values[0]), (PREMIUM, token.premium, qa_values[1])):
                    label = tier.name.capitalize()
                    if have == want:
                        logger.info(f"  {label} tier already matches: {format_ether(want)}")
                        report.already_matched += 1
                        continue
                    logger.info(f"  {label} tier mismatch - Prod: {format_ether(want)}, QA: {format_ether(have)}")
                    self.ledger.transact(self.qa.functions.setTieredDebtCoverage(tier.enum, token.address, want),
                                         self.config.min_confirmations)
                    logger.info(f"  {label} tier updated")
                    report.updates += 1
            except LedgerUnavailable:
                raise
            except KeeperError as e:
                logger.error(f"  Error checking/setting coverage for {token.address}: {e}")
            logger.info("")
        logger.info(f"Coverage update summary: {report.updates} updates made, "
                    f"{report.already_matched} already matched\n")

    def verify(self, tokens: List[TokenTiers]) -> int:
        logger.info("Verification: Checking QA configuration...")
        errors = 0
        for token in tokens:
            try:
                basic, premium = self._qa_tiers(token.address)
            except ReadFailed as e:
                logger.info(f"Verification error for {token.address}: {e.cause}")
                errors += 1
                continue
            if basic != token.basic or premium != token.premium:
                logger.info(f"Mismatch for {token.name}:")
                logger.info(f"  Basic - Prod: {format_ether(token.basic)}, QA: {format_ether(basic)}")
                logger.info(f"  Premium - Prod: {format_ether(token.premium)}, QA: {format_ether(premium)}")
                errors += 1
        if errors:
            logger.warning(f"Synchronization completed with {errors} verification errors\n")
        else:
            logger.info("All tokens successfully synchronized!\n")
        return errors

    def run(self) -> SyncReport:
        logger.info("Starting TokenManager synchronization...\n")
        logger.info(f"Using wallet: {self.ledger.address}\n")
        report = SyncReport()
        tokens = self.read_prod()
        report.valid_tokens = tokens

        logger.info("Checking QA TokenManager...")
        qa = self.qa_tokens()
        logger.info(f"Found {len(qa)} tokens in QA environment\n")

        report.added = len(self.add_missing(tokens, qa))
        self.update_tiers(tokens, report)
        report.qa_tokens_after = len(self.qa_tokens())
        logger.info(f"QA now has {report.qa_tokens_after} supported tokens")
        report.verification_errors = self.verify(tokens)

        logger.info("Summary:")
        logger.info(f"  Valid production tokens: {len(tokens)}")
        logger.info(f"  Tokens added to QA: {report.added}")
        logger.info(f"  Coverage updates made: {report.updates}")
        logger.info(f"  Coverage values already matched: {report.already_matched}")
        logger.info(f"  QA tokens after sync: {report.qa_tokens_after}")
        logger.info(f"  Verification errors: {report.verification_errors}")
        return report
