"""
Shared fixtures for the ILP paywall tests.
"""
from decimal import Decimal
from typing import Any, List

import pytest

from app.core.config import settings
from app.ilp.errors import FulfillmentFailure, TransportNotConnected
from app.ilp.ledger import BalanceLedger
from app.ilp.paywall import Paywall, reset_paywall
from app.ilp.receiver import CreditPolicy
from app.ilp.transport import IncomingPayment, PaymentTransport

TEST_ACCOUNT = "test.alice"


class FakeTransport(PaymentTransport):
    """In-process transport recording connects and RPC calls."""

    def __init__(self, account: str = TEST_ACCOUNT, fail_connect: bool = False):
        super().__init__()
        self.account = account
        self.fail_connect = fail_connect
        self.connected = False
        self.connect_calls = 0
        self.rpc_calls: List[Any] = []
        self.rpc_prefixes: List[Any] = []

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.fail_connect:
            raise TransportNotConnected("connector unreachable")
        self.connected = True

    def is_connected(self) -> bool:
        return self.connected

    def get_account(self) -> str:
        return self.account

    async def handle_rpc(self, method: str, payload: Any, prefix=None) -> Any:
        self.rpc_calls.append((method, payload))
        self.rpc_prefixes.append(prefix)
        if method == "explode":
            raise ValueError("downstream failure")
        return {"method": method, "echo": payload}


def make_payment(amount="5", data: bytes = b"\x01" * 16, fail: bool = False):
    """IncomingPayment whose fulfill() records calls and optionally fails."""
    calls = []

    async def fulfill():
        calls.append(True)
        if fail:
            raise FulfillmentFailure("connector refused")

    payment = IncomingPayment(
        amount=Decimal(amount),
        data=data,
        fulfill=fulfill,
        transfer_id="transfer-1",
    )
    return payment, calls


@pytest.fixture(autouse=True)
def audit_log_path(tmp_path, monkeypatch):
    """Keep audit logs inside the test's temp directory."""
    path = tmp_path / "audit" / "ilp_audit.jsonl"
    monkeypatch.setattr(settings, "ILP_AUDIT_LOG_PATH", str(path))
    monkeypatch.setattr(settings, "ILP_AUDIT_ENABLED", True)
    return path


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def ledger():
    return BalanceLedger()


@pytest.fixture
def paywall(transport, ledger):
    paywall = Paywall(
        transport=transport,
        ledger=ledger,
        receiver_secret=b"s" * 32,
        credit_policy=CreditPolicy.AFTER_FULFILL
    )
    yield paywall
    reset_paywall()
