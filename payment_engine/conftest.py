# payment_engine/conftest.py
import sys
import pytest
from pathlib import Path

# Add repository root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from payment_engine.features.escrow.service import EscrowOrchestrator
from payment_engine.tests.fakes import FakeLedger, FakeWallet
from solders.pubkey import Pubkey


@pytest.fixture
def ledger():
    """In-memory ledger standing in for the JSON-RPC client."""
    return FakeLedger()


@pytest.fixture
def wallet(ledger):
    """Wallet that executes make_escrow against the in-memory ledger."""
    return FakeWallet(ledger)


@pytest.fixture
def orchestrator(ledger, wallet):
    return EscrowOrchestrator(ledger.config, ledger, wallet)


@pytest.fixture
def accounts():
    """Fresh funding / service addresses for a purchase."""
    return {
        "funding_account": str(Pubkey.new_unique()),
        "service_funding_account": str(Pubkey.new_unique()),
        "service_account": str(Pubkey.new_unique()),
    }
