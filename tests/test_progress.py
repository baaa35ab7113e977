"""Progress store behaviour shared by the JSON and sqlite backends."""

import json

import pytest

from primekeeper.errors import ProgressStoreError, StoreLocked
from primekeeper.lock import InstanceLock
from primekeeper.progress import (BatchCursor, JsonProgressStore, ReconciliationKey, SqliteProgressStore, State,
                                  open_store)

from conftest import SUBJECT_A, SUBJECT_B

GM_ETH = "0x70d95587d40A2caf56bd97485aB3Eec10Bee6336"
GM_ARB = "0xC25cEf6061Cf5dE5eb761b50E4743c1F5D7E5407"

K1 = ReconciliationKey("Arbitrum", SUBJECT_A, GM_ETH)
K2 = ReconciliationKey("Arbitrum", SUBJECT_A, GM_ARB)
K3 = ReconciliationKey("Avalanche", SUBJECT_B, GM_ETH)


def test_key_round_trips_through_string():
    assert str(K1) == f"Arbitrum-{SUBJECT_A}-{GM_ETH}"
    assert ReconciliationKey.parse(str(K1)) == K1


def test_malformed_key_is_rejected():
    with pytest.raises(ProgressStoreError):
        ReconciliationKey.parse("no-dashes")


def test_outcome_survives_reopen(store_factory):
    with store_factory() as s:
        assert s.record_outcome(K1, State.COMPLETED, {"tx_hash": "0xdeadbeef", "block_number": 12})
    with store_factory() as s:
        rec = s.get(K1)
    assert rec.state == State.COMPLETED
    assert rec.tx_hash == "0xdeadbeef"
    assert rec.block_number == 12


def test_terminal_states_are_never_overwritten(store_factory):
    with store_factory() as s:
        s.record_outcome(K1, State.COMPLETED, {"tx_hash": "0x01"})
        s.record_outcome(K2, State.INSOLVENT, {"rule": "insolvent"})
        assert s.record_outcome(K1, State.NO_BALANCE) is False
        assert s.record_outcome(K2, State.COMPLETED) is False
        assert s.get(K1).state == State.COMPLETED
        assert s.get(K1).tx_hash == "0x01"
        assert s.get(K2).state == State.INSOLVENT
        assert s.is_resolved(K1) and s.is_resolved(K2)


def test_no_balance_can_move_to_completed(store_factory):
    with store_factory() as s:
        s.record_outcome(K1, State.NO_BALANCE)
        assert not s.is_resolved(K1)
        assert s.record_outcome(K1, State.COMPLETED, {"tx_hash": "0x02"})
        assert s.get(K1).state == State.COMPLETED


def test_pending_journal(store_factory):
    with store_factory() as s:
        s.record_pending(K1, "0xaaa", nonce=7)
        s.record_pending(K3, "0xccc")
    with store_factory() as s:
        pending = s.pending()
        assert pending[K1]["tx_hash"] == "0xaaa"
        assert pending[K1]["nonce"] == 7
        s.record_outcome(K1, State.COMPLETED, {"tx_hash": "0xaaa"})
        s.clear_pending(K3)
        assert s.pending() == {}


def test_pending_on_terminal_key_is_refused(store_factory):
    with store_factory() as s:
        s.record_outcome(K1, State.INSOLVENT)
        with pytest.raises(ProgressStoreError):
            s.record_pending(K1, "0xaaa")


def test_subjects_union_and_cursor(store_factory):
    with store_factory() as s:
        assert s.remember_subjects("Arbitrum", [SUBJECT_A, SUBJECT_B]) == 2
        assert s.remember_subjects("Arbitrum", [SUBJECT_B]) == 0
        s.save_cursor(BatchCursor("Arbitrum", 3, 100, 950))
    with store_factory() as s:
        assert s.known_subjects("Arbitrum") == [SUBJECT_A, SUBJECT_B]
        assert s.known_subjects("Avalanche") == []
        assert s.last_cursor()["batch_index"] == 3


def test_records_filter_and_counts(store_factory):
    with store_factory() as s:
        s.record_outcome(K1, State.COMPLETED)
        s.record_outcome(K2, State.NO_BALANCE)
        s.record_outcome(K3, State.INSOLVENT)
        s.record_pending(K2, "0xbbb")
        assert [r.key for r in s.records(state=State.COMPLETED)] == [K1]
        assert {r.key for r in s.records(chain="arbitrum")} == {K1, K2}
        assert len(s.records(limit=2)) == 2
        counts = s.counts()
    assert counts["Arbitrum"] == {"no_balance": 1, "insolvent": 0, "completed": 1, "pending": 1}
    assert counts["Avalanche"]["insolvent"] == 1


def test_second_writer_is_locked_out(store_factory):
    with store_factory():
        with pytest.raises(StoreLocked):
            store_factory().load()
        reader = store_factory(lock=False)
        reader.load()
        reader.close()


def test_json_reads_legacy_progress_file(tmp_path):
    path = tmp_path / "sweep-progress.json"
    path.write_text(json.dumps({
        "processed": [str(K1)],
        "noBalance": [str(K2)],
        "insolvent": [str(K3)],
        "lastRun": "2025-06-01T10:00:00.000Z",
    }))
    with JsonProgressStore(str(path)) as s:
        assert s.get(K1).state == State.COMPLETED
        assert s.get(K2).state == State.NO_BALANCE
        assert s.get(K3).state == State.INSOLVENT
        assert s.pending() == {}


def test_json_keeps_legacy_layout_and_leaves_no_temp_files(tmp_path):
    path = tmp_path / "sweep-progress.json"
    with JsonProgressStore(str(path)) as s:
        s.record_outcome(K1, State.COMPLETED, {"tx_hash": "0xdeadbeef"})
        s.record_outcome(K2, State.NO_BALANCE)

    doc = json.loads(path.read_text())
    assert doc["processed"] == [str(K1)]
    assert doc["noBalance"] == [str(K2)]
    assert doc["insolvent"] == []
    assert doc["lastRun"]
    assert doc["details"][str(K1)]["tx_hash"] == "0xdeadbeef"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["sweep-progress.json", "sweep-progress.json.lock"]


def test_json_refuses_corrupt_file(tmp_path):
    path = tmp_path / "sweep-progress.json"
    path.write_text('{"processed": [')
    with pytest.raises(ProgressStoreError):
        JsonProgressStore(str(path)).load()
    # the lock is released on a failed load
    with InstanceLock(str(path) + ".lock"):
        pass


def test_open_store_picks_backend_from_suffix(tmp_path):
    assert isinstance(open_store(str(tmp_path / "p.json")), JsonProgressStore)
    assert isinstance(open_store(str(tmp_path / "p.db")), SqliteProgressStore)
    assert isinstance(open_store(str(tmp_path / "p.sqlite")), SqliteProgressStore)


def test_records_newest_first(store_factory):
    with store_factory() as s:
        s.record_outcome(K1, State.NO_BALANCE, {"timestamp": 100})
        s.record_outcome(K2, State.COMPLETED, {"timestamp": 200})
        s.record_outcome(K3, State.INSOLVENT, {"timestamp": 300})
        s.record_outcome(K1, State.COMPLETED, {"timestamp": 400})
        assert [r.key for r in s.records(newest_first=True)] == [K1, K3, K2]
        assert [r.key for r in s.records(newest_first=True, limit=2)] == [K1, K3]


def test_writer_creates_missing_state_directory(tmp_path):
    path = tmp_path / "state" / "sweep-progress.json"
    with JsonProgressStore(str(path)) as s:
        s.record_outcome(K1, State.COMPLETED)
    assert path.exists()


def test_unusable_lock_path_is_a_store_error(tmp_path):
    blocker = tmp_path / "state"
    blocker.write_text("not a directory")
    with pytest.raises(ProgressStoreError):
        JsonProgressStore(str(blocker / "sweep-progress.json")).load()


def test_sqlite_reader_never_creates_a_database(tmp_path):
    path = tmp_path / "typo" / "sweep-progress.db"
    with SqliteProgressStore(str(path), lock=False) as s:
        assert s.records() == []
        assert s.pending() == {}
        assert s.counts() == {}
    assert not path.parent.exists()


def test_sqlite_reader_is_read_only(tmp_path):
    path = str(tmp_path / "sweep-progress.db")
    with SqliteProgressStore(path) as writer:
        writer.record_outcome(K1, State.COMPLETED, {"tx_hash": "0x01"})
    with SqliteProgressStore(path, lock=False) as reader:
        assert reader.get(K1).tx_hash == "0x01"
        with pytest.raises(ProgressStoreError):
            reader.record_outcome(K2, State.NO_BALANCE)
