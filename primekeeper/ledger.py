"""Everything that talks to the chain RPC goes through ``LedgerClient``.

Reads are retried with exponential backoff. Mutating calls are never retried
here: a transaction is signed locally first (so its hash is known before it
is broadcast), broadcast once, and then waited on.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, Optional, Tuple

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from .config import ChainConfig, KeeperConfig, Resource
from .errors import (ConfigError, ConfirmationTimeout, LedgerUnavailable, ReadFailed,
                     TransactionReverted)

logger = logging.getLogger(__name__)

ERC20_ABI = [
    {"constant": True, "inputs": [{"name": "owner", "type": "address"}], "name": "balanceOf",
     "outputs": [{"name": "", "type": "uint256"}], "stateMutability": "view", "type": "function"},
]

FACTORY_ABI = [
    {"inputs": [], "name": "getAllLoans", "outputs": [{"name": "", "type": "address[]"}],
     "stateMutability": "view", "type": "function"},
]

PRIME_ACCOUNT_ABI = [
    {"inputs": [{"name": "gmToken", "type": "address"}], "name": "sweepFeesAndUpdateBenchMark",
     "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [], "name": "owner", "outputs": [{"name": "", "type": "address"}],
     "stateMutability": "view", "type": "function"},
]


class TxStatus(str, Enum):
    MINED = "mined"
    PENDING = "pending"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SignedAction:
    tx_hash: str
    raw: bytes
    nonce: int


@dataclass(frozen=True)
class TransactionHandle:
    tx_hash: str
    nonce: Optional[int] = None


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    block_number: int
    status: int
    gas_used: Optional[int] = None


def is_connection_error(err: Optional[BaseException]) -> bool:
    return isinstance(err, (requests.ConnectionError, requests.Timeout, ConnectionError, TimeoutError))


def revert_message(err: BaseException) -> str:
    msg = getattr(err, "message", None) or str(err)
    return str(msg)


def connect(chain: ChainConfig, timeout: float) -> Web3:
    """First RPC URL that answers wins; a wrong chain id is a config error."""
    for rpc in chain.rpc_urls:
        try:
            w3 = Web3(Web3.HTTPProvider(rpc, request_kwargs={"timeout": timeout}, session=requests.Session()))
            if not w3.is_connected():
                logger.warning(f"{chain.name}: RPC not reachable: {rpc}")
                continue
            cid = w3.eth.chain_id
        except Exception as e:
            logger.warning(f"{chain.name}: failed {rpc}: {e}")
            continue
        if cid != chain.chain_id:
            raise ConfigError(f"{chain.name}: {rpc} is chain {cid}, expected {chain.chain_id}")
        logger.info(f"Connected to {chain.name} via {rpc} (chain {cid})")
        return w3
    raise LedgerUnavailable(f"{chain.name}: could not connect to any RPC ({len(chain.rpc_urls)} tried)")


class LedgerClient:
    def __init__(self, chain: ChainConfig, w3: Web3, private_key: Optional[str] = None, *,
                 max_read_attempts: int = 4, backoff_seconds: float = 0.5,
                 confirmation_timeout: float = 180.0, poll_interval: float = 2.0,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.chain = chain
        self.w3 = w3
        self.account = Account.from_key(private_key) if private_key else None
        self.max_read_attempts = max_read_attempts
        self.backoff_seconds = backoff_seconds
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(cls, chain: ChainConfig, config: KeeperConfig,
                    private_key: Optional[str] = None) -> "LedgerClient":
        w3 = connect(chain, config.call_timeout)
        return cls(chain, w3, private_key,
                   max_read_attempts=config.max_read_attempts,
                   backoff_seconds=config.backoff_seconds,
                   confirmation_timeout=config.confirmation_timeout)

    @property
    def address(self) -> Optional[str]:
        return self.account.address if self.account else None

    def contract(self, address: str, abi):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    # -- reads ---------------------------------------------------------------

    def call_view(self, what: str, fn: Callable[[], Any]) -> Any:
        """Run a read with retries; ``ReadFailed`` once the budget is spent.

        A last attempt that never reached the endpoint raises
        ``LedgerUnavailable`` instead: the failure is not about this read.
        """
        last: Optional[BaseException] = None
        for attempt in range(self.max_read_attempts):
            try:
                return fn()
            except ContractLogicError as e:
                # deterministic, not retried
                raise ReadFailed(what, e) from e
            except Exception as e:
                last = e
                if attempt + 1 < self.max_read_attempts:
                    delay = self.backoff_seconds * (2 ** attempt)
                    logger.debug(f"{what}: attempt {attempt + 1} failed ({e}), retrying in {delay:.2f}s")
                    self._sleep(delay)
        if is_connection_error(last):
            raise LedgerUnavailable(f"{self.chain.name}: endpoint unreachable ({what}): {last}") from last
        raise ReadFailed(what, last)

    def enumerate_subjects(self) -> Iterator[str]:
        factory = self.contract(self.chain.factory, FACTORY_ABI)
        try:
            loans = self.call_view(f"{self.chain.name} getAllLoans", factory.functions.getAllLoans().call)
        except ReadFailed as e:
            raise LedgerUnavailable(f"{self.chain.name}: registry enumeration failed: {e.cause}") from e
        return iter([Web3.to_checksum_address(a) for a in loans])

    def read_balance(self, subject: str, resource: Resource) -> int:
        token = self.contract(resource.address, ERC20_ABI)
        call = token.functions.balanceOf(Web3.to_checksum_address(subject)).call
        return int(self.call_view(f"{resource.name}.balanceOf({subject})", call))

    # -- writes --------------------------------------------------------------

    def _require_account(self):
        if self.account is None:
            raise ConfigError("no signing key configured for mutating calls")
        return self.account

    def prepare_call(self, contract_fn, payload: bytes = b"", nonce: Optional[int] = None) -> SignedAction:
        """Build, estimate and sign; nothing is sent yet."""
        acct = self._require_account()
        if nonce is None:
            nonce = self.w3.eth.get_transaction_count(acct.address, "pending")
        # gas is estimated below against the final calldata (payload included)
        tx = contract_fn.build_transaction({
            "from": acct.address,
            "nonce": nonce,
            "chainId": self.chain.chain_id,
            "gas": 1,
        })
        if payload:
            tx["data"] = Web3.to_hex(Web3.to_bytes(hexstr=tx["data"]) + payload)
        try:
            tx["gas"] = self.w3.eth.estimate_gas({
                "from": acct.address,
                "to": tx["to"],
                "data": tx["data"],
                "value": tx.get("value", 0),
            })
        except ContractLogicError as e:
            raise TransactionReverted(revert_message(e)) from e
        signed = acct.sign_transaction(tx)
        return SignedAction(tx_hash=Web3.to_hex(signed.hash), raw=bytes(signed.raw_transaction), nonce=nonce)

    def prepare_action(self, subject: str, resource: Resource, payload: bytes = b"") -> SignedAction:
        account = self.contract(subject, PRIME_ACCOUNT_ABI)
        fn = account.functions.sweepFeesAndUpdateBenchMark(Web3.to_checksum_address(resource.address))
        return self.prepare_call(fn, payload)

    def broadcast(self, signed: SignedAction) -> TransactionHandle:
        try:
            self.w3.eth.send_raw_transaction(signed.raw)
        except Exception as e:
            if "already known" not in str(e).lower():
                raise
            logger.debug(f"{signed.tx_hash} already in the mempool")
        return TransactionHandle(tx_hash=signed.tx_hash, nonce=signed.nonce)

    def submit_action(self, subject: str, resource: Resource, payload: bytes = b"") -> TransactionHandle:
        return self.broadcast(self.prepare_action(subject, resource, payload))

    def await_confirmation(self, handle: TransactionHandle, min_confirmations: int = 1) -> Receipt:
        started = self._clock()
        try:
            raw = self.w3.eth.wait_for_transaction_receipt(
                handle.tx_hash, timeout=self.confirmation_timeout, poll_latency=self.poll_interval)
        except TimeExhausted as e:
            raise ConfirmationTimeout(handle.tx_hash, self.confirmation_timeout) from e
        receipt = self._receipt(handle.tx_hash, raw)
        if receipt.status != 1:
            raise TransactionReverted(self.revert_reason(handle.tx_hash, receipt), handle.tx_hash)

        while self.w3.eth.block_number - receipt.block_number + 1 < min_confirmations:
            if self._clock() - started > self.confirmation_timeout:
                raise ConfirmationTimeout(handle.tx_hash, self.confirmation_timeout)
            self._sleep(self.poll_interval)
        if min_confirmations > 1:
            # the receipt can move or vanish on a reorg while we waited
            receipt = self._receipt(handle.tx_hash, self.w3.eth.get_transaction_receipt(handle.tx_hash))
            if receipt.status != 1:
                raise TransactionReverted(self.revert_reason(handle.tx_hash, receipt), handle.tx_hash)
        return receipt

    def transact(self, contract_fn, min_confirmations: int = 1) -> Receipt:
        signed = self.prepare_call(contract_fn)
        handle = self.broadcast(signed)
        logger.info(f"  TX submitted: {handle.tx_hash}")
        return self.await_confirmation(handle, min_confirmations)

    # -- transaction lookups -------------------------------------------------

    def transaction_status(self, tx_hash: str) -> Tuple[TxStatus, Optional[Receipt]]:
        def lookup():
            try:
                return TxStatus.MINED, self._receipt(tx_hash, self.w3.eth.get_transaction_receipt(tx_hash))
            except TransactionNotFound:
                pass
            try:
                self.w3.eth.get_transaction(tx_hash)
                return TxStatus.PENDING, None
            except TransactionNotFound:
                return TxStatus.UNKNOWN, None

        return self.call_view(f"status of {tx_hash}", lookup)

    def revert_reason(self, tx_hash: str, receipt: Receipt) -> str:
        """Replay a reverted transaction at its block to recover the reason."""
        try:
            tx = self.w3.eth.get_transaction(tx_hash)
            self.w3.eth.call({
                "from": tx["from"],
                "to": tx["to"],
                "data": tx["input"],
                "value": tx.get("value", 0),
            }, block_identifier=receipt.block_number)
        except ContractLogicError as e:
            return revert_message(e)
        except Exception as e:
            logger.debug(f"could not replay {tx_hash}: {e}")
            return "reverted (reason unavailable)"
        return "reverted without reason"

    @staticmethod
    def _receipt(tx_hash: str, raw) -> Receipt:
        return Receipt(
            tx_hash=tx_hash,
            block_number=int(raw["blockNumber"]),
            status=int(raw["status"]),
            gas_used=raw.get("gasUsed") if hasattr(raw, "get") else None,
        )
