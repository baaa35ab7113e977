"""Tests for CLI commands."""

import logging
import subprocess
import sys

import pytest

from primekeeper import cli
from primekeeper.errors import FatalActionError
from primekeeper.progress import JsonProgressStore, ReconciliationKey, State
from primekeeper.sweeper import FeeSweeper, default_payload, no_payload

from conftest import SUBJECT_A

TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


@pytest.fixture(autouse=True)
def env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("LIQUIDATOR_PRIVATE_KEY", "KEEPER_CHAINS", "DP_DEPLOYER_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("KEEPER_PROGRESS_FILE", str(tmp_path / "sweep-progress.json"))
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    yield
    root.handlers[:], level = saved
    root.setLevel(level)


def test_cli_help():
    result = subprocess.run([sys.executable, "-m", "primekeeper", "--help"], capture_output=True, text=True)
    assert result.returncode == 0
    assert "sweep" in result.stdout


def test_status_on_empty_store(capsys):
    assert cli.main(["status"]) == 0
    assert "(empty)" in capsys.readouterr().out


def test_status_lists_counts_and_pending(tmp_path, capsys):
    with JsonProgressStore(str(tmp_path / "sweep-progress.json")) as store:
        store.record_outcome(ReconciliationKey("Arbitrum", SUBJECT_A, "0x70d95587d40A2caf56bd97485aB3Eec10Bee6336"),
                             State.COMPLETED)
        store.record_pending(ReconciliationKey("Arbitrum", SUBJECT_A, "0xC25cEf6061Cf5dE5eb761b50E4743c1F5D7E5407"),
                             "0xabc")
    assert cli.main(["status"]) == 0
    out = capsys.readouterr().out
    assert "completed=1" in out
    assert "0xabc" in out


def test_sweep_without_key_exits_nonzero(capsys):
    assert cli.main(["sweep"]) == 1
    assert "LIQUIDATOR_PRIVATE_KEY" in capsys.readouterr().out


def test_unknown_chain_exits_nonzero(monkeypatch):
    monkeypatch.setenv("LIQUIDATOR_PRIVATE_KEY", TEST_KEY)
    assert cli.main(["sweep", "--chain", "polygon"]) == 1


def test_fatal_error_exits_nonzero(monkeypatch):
    monkeypatch.setenv("LIQUIDATOR_PRIVATE_KEY", TEST_KEY)

    def boom(self):
        raise FatalActionError("Arbitrum-0x1-0x2", RuntimeError("execution reverted: Oracle stale"))

    monkeypatch.setattr(FeeSweeper, "run", boom)
    assert cli.main(["sweep"]) == 1


def test_interrupt_exits_130(monkeypatch):
    monkeypatch.setenv("LIQUIDATOR_PRIVATE_KEY", TEST_KEY)

    def interrupted(self):
        raise KeyboardInterrupt

    monkeypatch.setattr(FeeSweeper, "run", interrupted)
    assert cli.main(["sweep", "--dry-run"]) == 130


def test_sync_qa_requires_deployer_key():
    assert cli.main(["sync-qa"]) == 1


def test_coverage_rejects_unknown_mode():
    with pytest.raises(SystemExit) as exc:
        cli.main(["coverage", "deploy"])
    assert exc.value.code == 2


@pytest.mark.parametrize("flags,expected", [([], default_payload), (["--without-oracle"], no_payload)])
def test_sweep_wires_the_oracle_payload(monkeypatch, flags, expected):
    monkeypatch.setenv("LIQUIDATOR_PRIVATE_KEY", TEST_KEY)
    seen = []

    def run(self):
        seen.append(self.payload_factory)
        return []

    monkeypatch.setattr(FeeSweeper, "run", run)
    assert cli.main(["sweep"] + flags) == 0
    assert seen == [expected]


def test_store_in_missing_directory_is_created(monkeypatch, tmp_path):
    monkeypatch.setenv("KEEPER_PROGRESS_FILE", str(tmp_path / "state" / "sweep-progress.json"))
    assert cli.main(["status"]) == 0
    monkeypatch.setenv("LIQUIDATOR_PRIVATE_KEY", TEST_KEY)

    def run(self):
        with self.store:
            return []

    monkeypatch.setattr(FeeSweeper, "run", run)
    assert cli.main(["sweep"]) == 0
    assert (tmp_path / "state" / "sweep-progress.json.lock").exists()
