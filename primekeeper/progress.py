"""Durable record of which (chain, account, token) keys are already resolved.

Two backends share one interface:

* ``JsonProgressStore`` keeps the ``sweep-progress.json`` document the
  earlier sweeper wrote (``processed`` / ``noBalance`` / ``insolvent`` lists
  plus ``lastRun``) and rewrites it atomically on every outcome.
* ``SqliteProgressStore`` keeps one row per key, for subject counts where
  rewriting a large JSON file per outcome gets slow.

Every ``record_outcome`` is flushed before it returns. A lost ``completed``
record would make the next run submit the same transaction again.
"""
from __future__ import annotations

import json
import os
import sqlite3
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import ProgressStoreError
from .lock import InstanceLock


class State(str, Enum):
    NO_BALANCE = "no_balance"
    INSOLVENT = "insolvent"
    COMPLETED = "completed"

    @property
    def terminal(self) -> bool:
        # no_balance only holds for the run that wrote it; balances change.
        return self in (State.INSOLVENT, State.COMPLETED)


# JSON list names of the sweep-progress.json format.
JSON_LISTS = {
    State.COMPLETED: "processed",
    State.NO_BALANCE: "noBalance",
    State.INSOLVENT: "insolvent",
}


@dataclass(frozen=True)
class ReconciliationKey:
    chain: str
    subject: str
    resource: str

    def __str__(self):
        return f"{self.chain}-{self.subject}-{self.resource}"

    @classmethod
    def parse(cls, raw: str) -> "ReconciliationKey":
        parts = raw.rsplit("-", 2)
        if len(parts) != 3 or not all(parts):
            raise ProgressStoreError(f"malformed progress key {raw!r}")
        return cls(*parts)


@dataclass
class ProgressRecord:
    key: ReconciliationKey
    state: State
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    timestamp: Optional[int] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": str(self.key),
            "chain": self.key.chain,
            "subject": self.key.subject,
            "resource": self.key.resource,
            "state": self.state.value,
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "timestamp": self.timestamp,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class BatchCursor:
    """Enumeration position. Advisory only, used for progress reporting."""
    chain: str
    batch_index: int
    batch_size: int
    total: int

    @property
    def start(self) -> int:
        return self.batch_index * self.batch_size

    @property
    def end(self) -> int:
        return min(self.start + self.batch_size, self.total)

    @property
    def batch_count(self) -> int:
        return max(1, -(-self.total // self.batch_size))

    def describe(self) -> str:
        return (f"batch {self.batch_index + 1}/{self.batch_count} "
                f"(accounts {self.start + 1}-{self.end} of {self.total})")

    def to_dict(self) -> Dict[str, Any]:
        return {"chain": self.chain, "batch_index": self.batch_index,
                "batch_size": self.batch_size, "total": self.total,
                "ts": int(time.time())}


class ProgressStore(ABC):
    """Key -> outcome mapping. The engine is the only writer."""

    def __init__(self, path: str, lock: bool = True):
        self.path = str(path)
        self._lock = InstanceLock(self.path + ".lock") if lock else None

    def __enter__(self):
        self.load()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def load(self):
        if self._lock is not None and not self._lock.locked:
            self._lock.acquire()
        try:
            self._open()
        except Exception:
            self._release()
            raise

    def close(self):
        try:
            self._close()
        finally:
            self._release()

    def _release(self):
        if self._lock is not None:
            self._lock.release()

    def is_resolved(self, key: ReconciliationKey) -> bool:
        rec = self.get(key)
        return rec is not None and rec.state.terminal

    @abstractmethod
    def _open(self): ...

    @abstractmethod
    def _close(self): ...

    @abstractmethod
    def persist(self): ...

    @abstractmethod
    def get(self, key: ReconciliationKey) -> Optional[ProgressRecord]: ...

    @abstractmethod
    def record_outcome(self, key: ReconciliationKey, state: State,
                       metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Upsert ``key``. No-op (returns False) when the key is already terminal."""

    @abstractmethod
    def record_pending(self, key: ReconciliationKey, tx_hash: str, nonce: Optional[int] = None): ...

    @abstractmethod
    def clear_pending(self, key: ReconciliationKey): ...

    @abstractmethod
    def pending(self) -> Dict[ReconciliationKey, Dict[str, Any]]: ...

    @abstractmethod
    def remember_subjects(self, chain: str, subjects: Iterable[str]) -> int:
        """Union ``subjects`` into the known set; returns how many were new."""

    @abstractmethod
    def known_subjects(self, chain: str) -> List[str]: ...

    @abstractmethod
    def save_cursor(self, cursor: BatchCursor): ...

    @abstractmethod
    def last_cursor(self) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def records(self, state: Optional[State] = None, chain: Optional[str] = None,
                limit: Optional[int] = None, newest_first: bool = False) -> List[ProgressRecord]:
        """Records in the order they were last written, or the reverse."""

    def counts(self) -> Dict[str, Dict[str, int]]:
        out: Dict[str, Dict[str, int]] = {}
        for rec in self.records():
            per = out.setdefault(rec.key.chain, {s.value: 0 for s in State})
            per[rec.state.value] += 1
        for key in self.pending():
            per = out.setdefault(key.chain, {s.value: 0 for s in State})
            per["pending"] = per.get("pending", 0) + 1
        return out


def _split_metadata(metadata: Optional[Dict[str, Any]]):
    meta = dict(metadata or {})
    tx_hash = meta.pop("tx_hash", None)
    block_number = meta.pop("block_number", None)
    ts = meta.pop("timestamp", None) or int(time.time())
    return tx_hash, block_number, ts, meta


class JsonProgressStore(ProgressStore):
    def __init__(self, path: str, lock: bool = True):
        super().__init__(path, lock)
        self._states: Dict[str, State] = {}
        self._details: Dict[str, Dict[str, Any]] = {}
        self._pending: Dict[str, Dict[str, Any]] = {}
        self._subjects: Dict[str, List[str]] = {}
        self._cursor: Optional[Dict[str, Any]] = None
        self._last_run: Optional[str] = None

    def _open(self):
        p = Path(self.path)
        if not p.exists():
            return
        try:
            doc = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            # unreadable is not the same as empty
            raise ProgressStoreError(f"cannot read progress file {self.path}: {e}") from e
        if not isinstance(doc, dict):
            raise ProgressStoreError(f"progress file {self.path} is not a JSON object")

        # Later lists win so a key appears under one state only.
        for state in (State.NO_BALANCE, State.INSOLVENT, State.COMPLETED):
            for raw in doc.get(JSON_LISTS[state]) or []:
                ReconciliationKey.parse(raw)
                self._states.pop(raw, None)
                self._states[raw] = state
        self._details = dict(doc.get("details") or {})
        self._pending = dict(doc.get("pending") or {})
        self._subjects = {k: list(v) for k, v in (doc.get("subjects") or {}).items()}
        self._cursor = doc.get("cursor")
        self._last_run = doc.get("lastRun")

    def _close(self):
        pass

    def _document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {name: [] for name in JSON_LISTS.values()}
        for raw, state in self._states.items():
            doc[JSON_LISTS[state]].append(raw)
        doc["lastRun"] = self._last_run
        doc["details"] = self._details
        doc["pending"] = self._pending
        doc["subjects"] = self._subjects
        doc["cursor"] = self._cursor
        return doc

    def persist(self):
        self._last_run = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        target = Path(self.path)
        directory = target.parent if str(target.parent) else Path(".")
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=target.name + ".", suffix=".tmp", dir=str(directory))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(self._document(), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, target)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise ProgressStoreError(f"cannot write progress file {self.path}: {e}") from e

    def get(self, key: ReconciliationKey) -> Optional[ProgressRecord]:
        raw = str(key)
        state = self._states.get(raw)
        if state is None:
            return None
        return self._record(raw, state)

    def _record(self, raw: str, state: State) -> ProgressRecord:
        detail = dict(self._details.get(raw) or {})
        return ProgressRecord(
            key=ReconciliationKey.parse(raw),
            state=state,
            tx_hash=detail.pop("tx_hash", None),
            block_number=detail.pop("block_number", None),
            timestamp=detail.pop("timestamp", None),
            detail=detail,
        )

    def record_outcome(self, key, state, metadata=None) -> bool:
        raw = str(key)
        current = self._states.get(raw)
        if current is not None and current.terminal:
            return False
        tx_hash, block_number, ts, extra = _split_metadata(metadata)
        self._states.pop(raw, None)
        self._states[raw] = state
        detail = {"timestamp": ts, **extra}
        if tx_hash:
            detail["tx_hash"] = tx_hash
        if block_number is not None:
            detail["block_number"] = block_number
        self._details[raw] = detail
        self._pending.pop(raw, None)
        self.persist()
        return True

    def record_pending(self, key, tx_hash, nonce=None):
        raw = str(key)
        if raw in self._states and self._states[raw].terminal:
            raise ProgressStoreError(f"{raw} is already {self._states[raw].value}")
        self._pending[raw] = {"tx_hash": tx_hash, "nonce": nonce, "created_at": int(time.time())}
        self.persist()

    def clear_pending(self, key):
        if self._pending.pop(str(key), None) is not None:
            self.persist()

    def pending(self):
        return {ReconciliationKey.parse(k): dict(v) for k, v in self._pending.items()}

    def remember_subjects(self, chain, subjects) -> int:
        known = self._subjects.setdefault(chain, [])
        seen = set(known)
        added = 0
        for s in subjects:
            if s not in seen:
                known.append(s)
                seen.add(s)
                added += 1
        if added:
            self.persist()
        return added

    def known_subjects(self, chain):
        return list(self._subjects.get(chain, []))

    def save_cursor(self, cursor):
        self._cursor = cursor.to_dict()
        self.persist()

    def last_cursor(self):
        return dict(self._cursor) if self._cursor else None

    def records(self, state=None, chain=None, limit=None, newest_first=False):
        out = []
        items = list(self._states.items())
        for raw, st in reversed(items) if newest_first else items:
            if state is not None and st != state:
                continue
            rec = self._record(raw, st)
            if chain is not None and rec.key.chain.lower() != chain.lower():
                continue
            out.append(rec)
            if limit is not None and len(out) >= limit:
                break
        return out


_SCHEMA = """
CREATE TABLE IF NOT EXISTS progress (
  key TEXT PRIMARY KEY,
  chain TEXT NOT NULL,
  subject TEXT NOT NULL,
  resource TEXT NOT NULL,
  state TEXT NOT NULL,
  tx_hash TEXT,
  block_number INTEGER,
  detail TEXT,
  updated_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS pending (
  key TEXT PRIMARY KEY,
  tx_hash TEXT NOT NULL,
  nonce INTEGER,
  created_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS subjects (
  chain TEXT NOT NULL,
  subject TEXT NOT NULL,
  first_seen INTEGER NOT NULL,
  PRIMARY KEY (chain, subject)
);
CREATE TABLE IF NOT EXISTS meta (
  name TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
"""


class SqliteProgressStore(ProgressStore):
    def __init__(self, path: str, lock: bool = True):
        super().__init__(path, lock)
        self.con: Optional[sqlite3.Connection] = None

    def _open(self):
        try:
            if self._lock is None:
                con = self._connect_reader()
            else:
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
                con = sqlite3.connect(self.path, isolation_level=None, check_same_thread=False)
                con.execute("PRAGMA journal_mode=WAL")
                con.execute("PRAGMA synchronous=FULL")
                con.executescript(_SCHEMA)
        except sqlite3.Error as e:
            raise ProgressStoreError(f"cannot open progress db {self.path}: {e}") from e
        con.row_factory = sqlite3.Row
        self.con = con

    def _connect_reader(self) -> sqlite3.Connection:
        """Lock-free readers never create or migrate the database file."""
        path = Path(self.path)
        if not path.exists():
            con = sqlite3.connect(":memory:", isolation_level=None, check_same_thread=False)
            con.executescript(_SCHEMA)
            return con
        return sqlite3.connect(path.resolve().as_uri() + "?mode=ro", uri=True,
                               isolation_level=None, check_same_thread=False)

    def _close(self):
        if self.con is not None:
            self.con.close()
            self.con = None

    def persist(self):
        # autocommit connection, every write is already durable
        pass

    def _db(self) -> sqlite3.Connection:
        if self.con is None:
            raise ProgressStoreError("progress store is not loaded")
        return self.con

    def _write(self, sql_batches):
        con = self._db()
        try:
            con.execute("BEGIN IMMEDIATE")
            for sql, args in sql_batches:
                con.execute(sql, args)
            con.execute("COMMIT")
        except sqlite3.Error as e:
            if con.in_transaction:
                con.execute("ROLLBACK")
            raise ProgressStoreError(f"progress db write failed: {e}") from e

    @staticmethod
    def _row_record(row) -> ProgressRecord:
        return ProgressRecord(
            key=ReconciliationKey(row["chain"], row["subject"], row["resource"]),
            state=State(row["state"]),
            tx_hash=row["tx_hash"],
            block_number=row["block_number"],
            timestamp=row["updated_at"],
            detail=json.loads(row["detail"]) if row["detail"] else {},
        )

    def get(self, key):
        row = self._db().execute("SELECT * FROM progress WHERE key=?", (str(key),)).fetchone()
        return self._row_record(row) if row else None

    def record_outcome(self, key, state, metadata=None) -> bool:
        current = self.get(key)
        if current is not None and current.state.terminal:
            return False
        tx_hash, block_number, ts, extra = _split_metadata(metadata)
        self._write([
            (
                """
                INSERT INTO progress (key, chain, subject, resource, state, tx_hash, block_number, detail, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                  state=excluded.state, tx_hash=excluded.tx_hash, block_number=excluded.block_number,
                  detail=excluded.detail, updated_at=excluded.updated_at
                WHERE progress.state NOT IN ('completed', 'insolvent')
                """,
                (str(key), key.chain, key.subject, key.resource, state.value,
                 tx_hash, block_number, json.dumps(extra) if extra else None, ts),
            ),
            ("DELETE FROM pending WHERE key=?", (str(key),)),
        ])
        return True

    def record_pending(self, key, tx_hash, nonce=None):
        current = self.get(key)
        if current is not None and current.state.terminal:
            raise ProgressStoreError(f"{key} is already {current.state.value}")
        self._write([(
            "INSERT OR REPLACE INTO pending (key, tx_hash, nonce, created_at) VALUES (?, ?, ?, ?)",
            (str(key), tx_hash, nonce, int(time.time())),
        )])

    def clear_pending(self, key):
        self._write([("DELETE FROM pending WHERE key=?", (str(key),))])

    def pending(self):
        rows = self._db().execute("SELECT * FROM pending ORDER BY created_at, key").fetchall()
        return {
            ReconciliationKey.parse(r["key"]): {"tx_hash": r["tx_hash"], "nonce": r["nonce"], "created_at": r["created_at"]}
            for r in rows
        }

    def remember_subjects(self, chain, subjects) -> int:
        con = self._db()
        before = con.execute("SELECT COUNT(*) FROM subjects WHERE chain=?", (chain,)).fetchone()[0]
        now = int(time.time())
        self._write([
            ("INSERT OR IGNORE INTO subjects (chain, subject, first_seen) VALUES (?, ?, ?)", (chain, s, now))
            for s in subjects
        ])
        after = con.execute("SELECT COUNT(*) FROM subjects WHERE chain=?", (chain,)).fetchone()[0]
        return after - before

    def known_subjects(self, chain):
        rows = self._db().execute("SELECT subject FROM subjects WHERE chain=? ORDER BY rowid", (chain,)).fetchall()
        return [r[0] for r in rows]

    def save_cursor(self, cursor):
        self._write([("INSERT OR REPLACE INTO meta (name, value) VALUES ('cursor', ?)", (json.dumps(cursor.to_dict()),))])

    def last_cursor(self):
        row = self._db().execute("SELECT value FROM meta WHERE name='cursor'").fetchone()
        return json.loads(row[0]) if row else None

    def records(self, state=None, chain=None, limit=None, newest_first=False):
        sql = "SELECT * FROM progress WHERE 1=1"
        args: List[Any] = []
        if state is not None:
            sql += " AND state=?"
            args.append(state.value)
        if chain is not None:
            sql += " AND lower(chain)=lower(?)"
            args.append(chain)
        sql += " ORDER BY updated_at DESC, rowid DESC" if newest_first else " ORDER BY updated_at, rowid"
        if limit is not None:
            sql += " LIMIT ?"
            args.append(int(limit))
        return [self._row_record(r) for r in self._db().execute(sql, args).fetchall()]


def open_store(path: str, lock: bool = True) -> ProgressStore:
    """Pick the backend from the file suffix (.db / .sqlite -> sqlite, else JSON)."""
    if Path(path).suffix.lower() in (".db", ".sqlite", ".sqlite3"):
        return SqliteProgressStore(path, lock=lock)
    return JsonProgressStore(path, lock=lock)
