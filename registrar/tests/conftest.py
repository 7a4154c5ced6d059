"""
Shared pytest fixtures: temporary SQLite store and a fake ledger client that
counts grading calls instead of talking to a node.
"""

import os
import sys
import threading

import pytest

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.config import LedgerConfig
from engine.errors import StoreUnavailableError
from engine.ledger_gateway import LedgerGateway, LedgerReceipt, derive_address_from_credential
from engine.submission_store import SubmissionStore

# Hardhat / Anvil account #0: public test key, never funded outside devnets
TEST_REGISTRAR_KEY     = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_REGISTRAR_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
TEST_MODERATOR_KEY     = "test-moderator-key"


class BrokenCommitStore(SubmissionStore):
    """Store whose decision write fails; the database went away mid-request."""

    def finalize_decision(self, *args, **kwargs):
        raise StoreUnavailableError("disk I/O error")


class FakeLedgerClient:
    """
    Stand-in for Web3LedgerClient.
      receipt : returned by submit_and_confirm
      error   : raised instead, if set
      release : optional Event the call blocks on (concurrency tests)
    """

    def __init__(self):
        self.calls   = []
        self.receipt = LedgerReceipt(tx_id="0x1", reverted=False)
        self.error   = None
        self.release = None
        self.entered = threading.Event()
        self._lock   = threading.Lock()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def derive_address_from_credential(self, secret: str) -> str:
        return derive_address_from_credential(secret)

    def submit_and_confirm(self, contract_address: str, encoded_call: bytes) -> LedgerReceipt:
        with self._lock:
            self.calls.append((contract_address, encoded_call))
        self.entered.set()
        if self.release is not None:
            self.release.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.receipt


@pytest.fixture
def ledger_config():
    return LedgerConfig(
        network_url="http://127.0.0.1:1",
        registrar_private_key=TEST_REGISTRAR_KEY,
        chain_id=1337,
    )


@pytest.fixture
def fake_ledger():
    return FakeLedgerClient()


@pytest.fixture
def gateway(ledger_config, fake_ledger):
    return LedgerGateway(ledger_config, client=fake_ledger)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'submissions.db'}"


@pytest.fixture
def store(database_url):
    s = SubmissionStore(database_url)
    s.init_schema()
    yield s
    s.engine.dispose()
