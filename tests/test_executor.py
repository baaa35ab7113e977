"""Outcome classification of a single mutating action."""

import pytest

from primekeeper.config import Resource
from primekeeper.errors import ConfirmationTimeout, TransactionReverted
from primekeeper.executor import ActionExecutor, OutcomeKind, RejectionTaxonomy

from conftest import INSOLVENT_REASON, SUBJECT_A, FakeLedger

GM = Resource("GM_ETH_WETH_USDC", "0x70d95587d40A2caf56bd97485aB3Eec10Bee6336")


def test_taxonomy_matches_case_insensitively(taxonomy):
    assert taxonomy.classify(INSOLVENT_REASON.upper()) == "insolvent"
    assert taxonomy.classify("execution reverted: Oracle stale") is None
    assert taxonomy.classify("") is None


def test_literal_patterns_are_escaped():
    tax = RejectionTaxonomy.from_pairs([("paused", "Pausable: paused (x)")])
    assert tax.classify("Pausable: paused (x)") == "paused"
    assert tax.classify("Pausable: paused x") is None


def test_regex_patterns_when_not_literal():
    tax = RejectionTaxonomy.from_pairs([("cooldown", r"cooldown \d+s")], literal=False)
    assert tax.classify("reverted: cooldown 30s left") == "cooldown"


def test_success_journals_before_broadcast(taxonomy):
    ledger = FakeLedger([SUBJECT_A])
    seen = []

    def journal(signed):
        seen.append((signed.tx_hash, list(ledger.broadcasts)))

    outcome = ActionExecutor(ledger, taxonomy).execute(SUBJECT_A, GM, on_prepared=journal)

    assert outcome.kind == OutcomeKind.COMPLETED
    assert seen == [(outcome.tx_hash, [])]
    assert ledger.broadcasts == [outcome.tx_hash]


def test_payload_provider_is_appended(taxonomy):
    ledger = FakeLedger([SUBJECT_A])
    ActionExecutor(ledger, taxonomy, payload_provider=lambda s, r: b"\xca\xfe").execute(SUBJECT_A, GM)
    assert ledger.payloads == [b"\xca\xfe"]


def test_estimate_revert_matching_rule_is_rejected(taxonomy):
    ledger = FakeLedger([SUBJECT_A])
    ledger.estimate_errors[(SUBJECT_A, GM.address)] = TransactionReverted(INSOLVENT_REASON)

    outcome = ActionExecutor(ledger, taxonomy).execute(SUBJECT_A, GM)

    assert outcome.kind == OutcomeKind.REJECTED
    assert outcome.rule == "insolvent"
    assert outcome.tx_hash is None
    assert ledger.broadcasts == []


@pytest.mark.parametrize("error", [
    TransactionReverted("execution reverted: Oracle stale"),
    ConfirmationTimeout("0xabc", 180),
    IOError("connection reset"),
])
def test_everything_else_is_fatal(taxonomy, error):
    ledger = FakeLedger([SUBJECT_A])
    ledger.confirm_errors[(SUBJECT_A, GM.address)] = error

    outcome = ActionExecutor(ledger, taxonomy).execute(SUBJECT_A, GM)

    assert outcome.kind == OutcomeKind.FATAL
    assert outcome.error is error
    assert outcome.tx_hash == ledger.broadcasts[0]


def test_min_confirmations_is_at_least_one(taxonomy):
    assert ActionExecutor(FakeLedger([]), taxonomy, min_confirmations=0).min_confirmations == 1
