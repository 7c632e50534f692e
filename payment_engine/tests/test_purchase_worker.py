"""
Tests for the command-line plan purchase worker.
"""
import json

import pytest

from payment_engine.features.escrow.service import EscrowOrchestrator
from payment_engine.models.escrow import SubmissionStatus
from payment_engine.tests.fakes import FakeLedger, FakeWallet
from payment_engine.workers import purchase_plan


def _run(orchestrator, accounts, seed=None, plan_id=1):
    request = purchase_plan.build_request(plan_id=plan_id, seed=seed, **accounts)
    return purchase_plan.run_purchase(orchestrator, request)


def _argv(accounts, *extra):
    return [
        "--plan-id", "1",
        "--funding-account", accounts["funding_account"],
        "--service-account", accounts["service_account"],
        "--service-token-account", accounts["service_funding_account"],
        "--keypair", "id.json",
        *extra,
    ]


def test_success_exit_code_and_output(orchestrator, ledger, accounts, capsys):
    ledger.set_balance(accounts["funding_account"], 15)

    code = _run(orchestrator, accounts, seed=9)

    assert code == 0
    output = json.loads(capsys.readouterr().out)
    assert output["seed"] == 9
    assert output["outcome"] == "success"


def test_failure_exit_code(orchestrator, ledger, accounts, capsys):
    ledger.set_balance(accounts["funding_account"], 1)

    assert _run(orchestrator, accounts, seed=9) == 1
    assert json.loads(capsys.readouterr().out)["error"]["code"] == "insufficient_funds"


def test_unknown_outcome_prints_reconcile_details(ledger, accounts, capsys):
    orchestrator = EscrowOrchestrator(ledger.config, ledger, FakeWallet(ledger, status=SubmissionStatus.UNKNOWN))
    ledger.set_balance(accounts["funding_account"], 15)

    assert _run(orchestrator, accounts) == 2
    output = json.loads(capsys.readouterr().out)
    assert output["error"]["code"] == "submission_unknown"
    assert output["error"]["seed"] == output["seed"]
    assert output["error"]["escrow_address"]
    assert output["error"]["signature"] == "sig1"


def test_main_requires_keypair():
    with pytest.raises(SystemExit) as exc_info:
        purchase_plan.main(["--plan-id", "1", "--funding-account", "Addr", "--keypair", ""])
    assert exc_info.value.code == 2


def test_main_rejects_malformed_address_as_usage_error(accounts, capsys):
    accounts["funding_account"] = "not-a-key"

    with pytest.raises(SystemExit) as exc_info:
        purchase_plan.main(_argv(accounts))

    assert exc_info.value.code == 2
    assert "Invalid ledger address" in capsys.readouterr().err


def test_main_rejects_unknown_cluster(accounts):
    with pytest.raises(SystemExit) as exc_info:
        purchase_plan.main(_argv(accounts, "--cluster", "nowhere"))
    assert exc_info.value.code == 2


def test_main_applies_ledger_settings(monkeypatch, accounts, capsys):
    created = []

    def recording_ledger(config):
        ledger = FakeLedger(config)
        created.append(ledger)
        return ledger

    tuned = purchase_plan.settings.model_copy(update={
        "LEDGER_SKIP_PREFLIGHT": False,
        "LEDGER_CONFIRM_ATTEMPTS": 7,
        "LEDGER_CONFIRM_INTERVAL_SECONDS": 0.25,
    })
    monkeypatch.setattr(purchase_plan, "settings", tuned)
    monkeypatch.setattr(purchase_plan, "LedgerRpcClient", recording_ledger)
    monkeypatch.setattr(purchase_plan, "configure_logging", lambda env: None)
    monkeypatch.setattr(
        purchase_plan.KeypairWallet,
        "from_file",
        classmethod(lambda cls, path, rpc: FakeWallet(rpc)),
    )

    code = purchase_plan.main(_argv(accounts, "--cluster", "localnet", "--seed", "3"))

    assert code == 1
    config = created[0].config
    assert config.cluster == "localnet"
    assert config.skip_preflight is False
    assert config.confirm_attempts == 7
    assert config.confirm_interval_seconds == 0.25
    assert json.loads(capsys.readouterr().out)["seed"] == 3
