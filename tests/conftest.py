"""Shared test fixtures."""

import itertools
from typing import Dict, List, Optional, Tuple

import pytest

from primekeeper.config import ARBITRUM_FACTORY, ARBITRUM_GM_TOKENS, DEFAULT_REJECTIONS, ChainConfig, Resource
from primekeeper.errors import LedgerUnavailable, ReadFailed
from primekeeper.executor import ActionExecutor, RejectionTaxonomy
from primekeeper.ledger import Receipt, SignedAction, TransactionHandle, TxStatus
from primekeeper.progress import JsonProgressStore, SqliteProgressStore

INSOLVENT_REASON = "execution reverted: The action may cause an account to become insolvent"

SUBJECT_A = "0x00000000000000000000000000000000000000a1"
SUBJECT_B = "0x00000000000000000000000000000000000000b2"
SUBJECT_C = "0x00000000000000000000000000000000000000c3"


class FakeLedger:
    """Scripted stand-in for ``LedgerClient``.

    ``balances[(subject, resource_address)]`` is an int or an exception to raise.
    A ``LedgerUnavailable`` there is raised as is, like a dead endpoint.
    ``estimate_errors`` raise from ``prepare_action`` (nothing broadcast).
    ``confirm_errors`` raise from ``await_confirmation`` (already broadcast).
    """

    def __init__(self, subjects: List[str]):
        self.subjects = list(subjects)
        self.balances: Dict[Tuple[str, str], object] = {}
        self.estimate_errors: Dict[Tuple[str, str], Exception] = {}
        self.confirm_errors: Dict[Tuple[str, str], Exception] = {}
        self.hashes: Dict[Tuple[str, str], str] = {}
        self.statuses: Dict[str, Tuple[TxStatus, Optional[Receipt]]] = {}
        self.reasons: Dict[str, str] = {}
        self.prepared: List[Tuple[str, str]] = []
        self.payloads: List[bytes] = []
        self.broadcasts: List[str] = []
        self.awaited: List[str] = []
        self.depths: List[int] = []
        self._by_hash: Dict[str, Tuple[str, str]] = {}
        self._nonce = itertools.count()
        self._block = itertools.count(1000)

    def enumerate_subjects(self):
        return iter(list(self.subjects))

    def read_balance(self, subject, resource):
        value = self.balances.get((subject, resource.address), 0)
        if isinstance(value, LedgerUnavailable):
            raise value
        if isinstance(value, Exception):
            raise ReadFailed(f"{resource.name}.balanceOf({subject})", value)
        return value

    def prepare_action(self, subject, resource, payload=b""):
        key = (subject, resource.address)
        if key in self.estimate_errors:
            raise self.estimate_errors[key]
        nonce = next(self._nonce)
        tx_hash = self.hashes.get(key) or "0x" + format(len(self.prepared) + 1, "064x")
        self.prepared.append(key)
        self.payloads.append(payload)
        self._by_hash[tx_hash] = key
        return SignedAction(tx_hash=tx_hash, raw=b"\x02" + payload, nonce=nonce)

    def broadcast(self, signed):
        self.broadcasts.append(signed.tx_hash)
        self.statuses.setdefault(signed.tx_hash, (TxStatus.PENDING, None))
        return TransactionHandle(signed.tx_hash, signed.nonce)

    def await_confirmation(self, handle, min_confirmations=1):
        self.awaited.append(handle.tx_hash)
        self.depths.append(min_confirmations)
        status, mined = self.statuses.get(handle.tx_hash, (None, None))
        if status == TxStatus.MINED and mined is not None:
            return mined
        key = self._by_hash.get(handle.tx_hash)
        if key in self.confirm_errors:
            raise self.confirm_errors[key]
        receipt = Receipt(handle.tx_hash, next(self._block), 1, 21000)
        self.statuses[handle.tx_hash] = (TxStatus.MINED, receipt)
        return receipt

    def transaction_status(self, tx_hash):
        return self.statuses.get(tx_hash, (TxStatus.UNKNOWN, None))

    def revert_reason(self, tx_hash, receipt):
        return self.reasons.get(tx_hash, "execution reverted")

    @property
    def submitted(self):
        return [self._by_hash[h] for h in self.broadcasts]


@pytest.fixture
def resources():
    return tuple(Resource(n, a) for n, a in ARBITRUM_GM_TOKENS[:2])


@pytest.fixture
def chain(resources):
    return ChainConfig(
        name="Arbitrum",
        chain_id=42161,
        rpc_urls=("http://127.0.0.1:8545",),
        factory=ARBITRUM_FACTORY,
        resources=resources,
    )


@pytest.fixture
def taxonomy():
    return RejectionTaxonomy.from_pairs(DEFAULT_REJECTIONS)


@pytest.fixture
def fake_ledger():
    return FakeLedger([SUBJECT_A])


@pytest.fixture
def executor(fake_ledger, taxonomy):
    return ActionExecutor(fake_ledger, taxonomy)


@pytest.fixture
def progress_path(tmp_path):
    return str(tmp_path / "sweep-progress.json")


@pytest.fixture(params=["json", "sqlite"])
def store_factory(request, tmp_path):
    """Returns a callable opening a fresh store object on the same file."""
    if request.param == "json":
        path, cls = str(tmp_path / "sweep-progress.json"), JsonProgressStore
    else:
        path, cls = str(tmp_path / "sweep-progress.db"), SqliteProgressStore
    opened = []

    def make(lock=True):
        store = cls(path, lock=lock)
        opened.append(store)
        return store

    yield make
    for s in opened:
        s.close()


@pytest.fixture
def store(progress_path):
    s = JsonProgressStore(progress_path)
    s.load()
    yield s
    s.close()
