"""
Tests for escrow purchase orchestration.

Runs against the in-memory ledger; the fake wallet applies make_escrow the
way the program does.
"""
import base64
import logging
from decimal import Decimal
from unittest.mock import Mock

import pytest
from solders.pubkey import Pubkey

from payment_engine.core.config import LedgerConfig
from payment_engine.core.errors import (
    EscrowError,
    InsufficientFundsError,
    PlanNotFoundError,
    SubmissionRejectedError,
    SubmissionUnknownError,
    TransientReadError,
    WalletNotConfiguredError,
)
from payment_engine.features.escrow.service import EscrowOrchestrator
from payment_engine.features.ledger.addresses import AddressDeriver
from payment_engine.features.ledger.rpc import LedgerUnavailableError
from payment_engine.models.escrow import EscrowOutcome, EscrowRequest, SubmissionStatus
from payment_engine.tests.fakes import FakeWallet, encode_purchase_event


def _request(accounts, seed=1000, plan_id=1) -> EscrowRequest:
    return EscrowRequest(seed=seed, plan_id=plan_id, **accounts)


def test_available_plans(orchestrator):
    plans = orchestrator.get_available_plans()
    assert [p.id for p in plans] == [1, 2, 3]


def test_end_to_end_purchase(orchestrator, ledger, wallet, accounts):
    ledger.set_balance(accounts["funding_account"], 15)

    result = orchestrator.make_escrow(_request(accounts))

    assert result.outcome is EscrowOutcome.SUCCESS
    assert result.transaction_ref
    assert result.failure_reason is None
    expected = AddressDeriver(ledger.config.program_id).derive_address("escrow", wallet.public_key, 1000)
    assert result.escrow_address == expected

    record = orchestrator.get_escrow(result.escrow_address)
    assert record.seed == 1000
    assert record.selected_plan.id == 1

    account = orchestrator.get_user_account(str(wallet.public_key))
    assert account.total_requests_granted == 20
    assert account.active_plan.name == "Basic"


def test_unknown_plan_fails_before_balance_check(orchestrator, ledger, wallet, accounts):
    result = orchestrator.make_escrow(_request(accounts, plan_id=99))

    assert result.outcome is EscrowOutcome.FAILURE
    assert isinstance(result.failure_reason, PlanNotFoundError)
    assert ledger.calls.get("get_token_account_amount", 0) == 0
    assert wallet.submissions == 0


def test_insufficient_funds_does_not_submit(orchestrator, ledger, wallet, accounts):
    ledger.set_balance(accounts["funding_account"], 5)

    result = orchestrator.make_escrow(_request(accounts, plan_id=1))

    assert isinstance(result.failure_reason, InsufficientFundsError)
    assert result.failure_reason.required == Decimal("10")
    assert result.failure_reason.available == Decimal("5")
    assert wallet.submissions == 0


def test_exact_balance_is_sufficient(orchestrator, ledger, accounts):
    ledger.set_balance(accounts["funding_account"], 10)
    assert orchestrator.make_escrow(_request(accounts)).ok


def test_unreadable_balance_counts_as_insufficient(orchestrator, ledger, wallet, accounts):
    ledger.offline = True

    result = orchestrator.make_escrow(_request(accounts))

    assert isinstance(result.failure_reason, InsufficientFundsError)
    assert wallet.submissions == 0


def test_reused_seed_is_rejected(orchestrator, ledger, wallet, accounts):
    ledger.set_balance(accounts["funding_account"], 100)

    first = orchestrator.make_escrow(_request(accounts, seed=1000))
    second = orchestrator.make_escrow(_request(accounts, seed=1000))

    assert first.ok
    assert second.outcome is EscrowOutcome.FAILURE
    assert isinstance(second.failure_reason, SubmissionRejectedError)
    assert "AccountAlreadyInUse" in second.failure_reason.message
    assert wallet.submissions == 2


def test_distinct_seeds_create_independent_escrows(orchestrator, ledger, wallet, accounts):
    ledger.set_balance(accounts["funding_account"], 100)

    first = orchestrator.make_escrow(_request(accounts, seed=1))
    second = orchestrator.make_escrow(_request(accounts, seed=2, plan_id=3))

    assert first.ok and second.ok
    assert first.escrow_address != second.escrow_address
    escrows = orchestrator.list_escrows_by_owner(accounts["service_account"])
    assert {e.seed for e in escrows} == {1, 2}
    assert all(e.owner == accounts["service_account"] for e in escrows)
    assert orchestrator.list_escrows_by_owner(str(wallet.public_key)) == []
    account = orchestrator.get_user_account(str(wallet.public_key))
    assert [p.name for p in account.subscribed_plans] == ["Basic", "Premium"]
    assert account.active_plan.name == "Premium"
    assert account.total_requests_granted == 120


def test_program_rejection_keeps_program_error(ledger, accounts):
    wrong_mint = ledger.config.model_copy(update={"funding_mint": str(Pubkey.new_unique())})
    orchestrator = EscrowOrchestrator(wrong_mint, ledger, FakeWallet(ledger))
    ledger.set_balance(accounts["funding_account"], 15)

    result = orchestrator.make_escrow(_request(accounts))

    assert isinstance(result.failure_reason, SubmissionRejectedError)
    assert "InvalidMint" in result.failure_reason.program_error


def test_unconfirmed_submission_is_unknown(ledger, accounts):
    wallet = FakeWallet(ledger, status=SubmissionStatus.UNKNOWN)
    orchestrator = EscrowOrchestrator(ledger.config, ledger, wallet)
    ledger.set_balance(accounts["funding_account"], 15)

    result = orchestrator.make_escrow(_request(accounts))

    assert isinstance(result.failure_reason, SubmissionUnknownError)
    assert result.failure_reason.signature == "sig1"
    assert result.failure_reason.seed == 1000
    assert result.failure_reason.escrow_address == orchestrator.get_escrow_address(1000, str(wallet.public_key))
    assert not isinstance(result.failure_reason, SubmissionRejectedError)


def test_ledger_down_before_send_is_transient(ledger, accounts):
    wallet = Mock()
    wallet.public_key = Pubkey.new_unique()
    wallet.sign_and_submit.side_effect = LedgerUnavailableError("getLatestBlockhash timed out")
    orchestrator = EscrowOrchestrator(ledger.config, ledger, wallet)
    ledger.set_balance(accounts["funding_account"], 15)

    result = orchestrator.make_escrow(_request(accounts))

    assert isinstance(result.failure_reason, TransientReadError)
    assert isinstance(result.failure_reason.__cause__, LedgerUnavailableError)


def test_unexpected_wallet_error_is_unknown(ledger, accounts):
    wallet = Mock()
    wallet.public_key = Pubkey.new_unique()
    wallet.sign_and_submit.side_effect = RuntimeError("bridge crashed")
    orchestrator = EscrowOrchestrator(ledger.config, ledger, wallet)
    ledger.set_balance(accounts["funding_account"], 15)

    result = orchestrator.make_escrow(_request(accounts))

    assert isinstance(result.failure_reason, SubmissionUnknownError)


def test_unexpected_error_before_submit_is_returned(ledger, wallet, accounts):
    catalog = Mock()
    catalog.validate_plan.side_effect = KeyError("boom")
    orchestrator = EscrowOrchestrator(ledger.config, ledger, wallet, catalog=catalog)

    result = orchestrator.make_escrow(_request(accounts))

    assert result.outcome is EscrowOutcome.FAILURE
    assert type(result.failure_reason) is EscrowError
    assert "validating" in result.failure_reason.message
    assert wallet.submissions == 0


def test_missing_wallet_is_a_failure_result(ledger, accounts):
    orchestrator = EscrowOrchestrator(ledger.config, ledger)
    result = orchestrator.make_escrow(_request(accounts))
    assert isinstance(result.failure_reason, WalletNotConfiguredError)


def test_state_transitions_are_logged_in_order(orchestrator, ledger, accounts, caplog):
    ledger.set_balance(accounts["funding_account"], 15)
    with caplog.at_level(logging.INFO, logger="payment_engine"):
        orchestrator.make_escrow(_request(accounts))

    states = [r.state for r in caplog.records if r.getMessage() == "escrow.state"]
    assert states == ["validating", "checking_funds", "deriving", "submitting", "committed"]


def test_instruction_account_layout(orchestrator, wallet, accounts):
    request = _request(accounts)
    escrow = orchestrator.get_escrow_address(request.seed, str(wallet.public_key))
    subscription = orchestrator.get_user_account_address(str(wallet.public_key))

    ix = orchestrator.build_make_escrow_instruction(request, wallet.public_key, escrow, subscription)

    keys = [str(m.pubkey) for m in ix.accounts]
    cfg = orchestrator.config
    assert keys == [
        str(wallet.public_key),
        escrow,
        subscription,
        cfg.funding_mint,
        accounts["service_account"],
        accounts["funding_account"],
        accounts["service_funding_account"],
        cfg.system_program,
        cfg.token_program,
        cfg.associated_token_program,
    ]
    assert ix.accounts[0].is_signer and ix.accounts[0].is_writable
    assert [m.is_writable for m in ix.accounts[1:]] == [True, True, False, False, True, True, False, False, False]
    assert ix.program_id == orchestrator.program_id


def test_reconcile_escrow_after_commit(orchestrator, ledger, accounts):
    request = _request(accounts, seed=77)
    assert orchestrator.reconcile_escrow(request) is None

    ledger.set_balance(accounts["funding_account"], 15)
    orchestrator.make_escrow(request)

    record = orchestrator.reconcile_escrow(request)
    assert record is not None
    assert record.seed == 77


def test_purchase_events(orchestrator, ledger, wallet):
    data = encode_purchase_event(str(wallet.public_key), 1, 10, 1_700_000_000)
    ledger.transaction_logs["sig9"] = [f"Program data: {base64.b64encode(data).decode()}"]

    events = orchestrator.get_purchase_events("sig9")

    assert [(e.plan_id, e.amount) for e in events] == [(1, 10)]
    assert orchestrator.get_purchase_events("missing") == []


def test_purchase_events_outage(orchestrator, ledger):
    ledger.offline = True
    with pytest.raises(TransientReadError):
        orchestrator.get_purchase_events("sig")


def test_configs_for_two_clusters_coexist(ledger):
    other = LedgerConfig.for_cluster("devnet", program_id=str(Pubkey.new_unique()))
    local = EscrowOrchestrator(ledger.config, ledger)
    remote = EscrowOrchestrator(other, ledger)
    owner = str(Pubkey.new_unique())

    assert local.get_user_account_address(owner) != remote.get_user_account_address(owner)
