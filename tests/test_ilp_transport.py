"""
Unit tests for the HTTP connector transport.
"""
import asyncio
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError

from app.ilp.errors import (
    FulfillmentFailure,
    InvalidPayment,
    InvalidTokenLength,
    TransportNotConnected,
)
from app.ilp.ledger import BalanceLedger
from app.ilp.psk import base64url, generate_params
from app.ilp.receiver import PaymentReceiver
from app.ilp.transport import ConnectorTransport, build_transfer

SECRET = b"\x05" * 32
ACCOUNT = "test.alice"
CONNECTOR_URL = "http://connector.local:7768"
TOKEN_BYTES = b"\x09" * 16


def standalone_transport():
    transport = ConnectorTransport(account=ACCOUNT)
    received = []

    async def listener(payment):
        received.append(payment)

    transport.listen(SECRET, listener)
    return transport, received


def json_response(data):
    response = MagicMock()
    response.json.return_value = data
    response.raise_for_status.return_value = None
    return response


class TestConnect:
    """Test connection handling."""

    def test_standalone_uses_configured_account(self):
        transport = ConnectorTransport(account=ACCOUNT)
        assert transport.is_connected() is False

        asyncio.run(transport.connect())

        assert transport.is_connected() is True
        assert transport.get_account() == ACCOUNT

    def test_no_account_no_connector(self):
        with pytest.raises(TransportNotConnected):
            asyncio.run(ConnectorTransport().connect())

    def test_get_account_before_connect(self):
        with pytest.raises(TransportNotConnected):
            ConnectorTransport(account=ACCOUNT).get_account()

    @patch("app.ilp.transport.requests")
    def test_connector_assigns_account(self, mock_requests):
        mock_requests.get.return_value = json_response({"account": "g.connector.alice"})
        transport = ConnectorTransport(connector_url=CONNECTOR_URL, account=ACCOUNT, timeout=3)

        asyncio.run(transport.connect())
        asyncio.run(transport.connect())

        assert transport.get_account() == "g.connector.alice"
        mock_requests.get.assert_called_once_with(f"{CONNECTOR_URL}/account", timeout=3)

    @patch("app.ilp.transport.requests")
    def test_connector_unreachable(self, mock_requests):
        mock_requests.get.side_effect = RequestsConnectionError("refused")
        transport = ConnectorTransport(connector_url=CONNECTOR_URL)

        with pytest.raises(TransportNotConnected):
            asyncio.run(transport.connect())
        assert transport.is_connected() is False

    @patch("app.ilp.transport.requests")
    def test_connector_response_without_account(self, mock_requests):
        mock_requests.get.return_value = json_response({"status": "ok"})
        transport = ConnectorTransport(connector_url=CONNECTOR_URL)

        with pytest.raises(TransportNotConnected):
            asyncio.run(transport.connect())


class TestHandleTransfer:
    """Test inbound prepared transfers."""

    def test_valid_transfer_delivered(self):
        transport, received = standalone_transport()
        params = generate_params(ACCOUNT, SECRET)
        transfer = build_transfer(params, "15", TOKEN_BYTES, "t-1")

        result = asyncio.run(transport.handle_rpc("send_transfer", transfer))

        assert result["id"] == "t-1"
        assert result["fulfillment"]
        assert len(received) == 1
        assert received[0].amount == Decimal("15")
        assert received[0].data == TOKEN_BYTES
        assert received[0].destination == params.destination_account

    def test_tampered_amount_rejected(self):
        transport, received = standalone_transport()
        transfer = build_transfer(generate_params(ACCOUNT, SECRET), "15", TOKEN_BYTES, "t-1")
        transfer["amount"] = "1500"

        with pytest.raises(InvalidPayment):
            asyncio.run(transport.handle_transfer(transfer))
        assert received == []

    def test_other_receiver_rejected(self):
        transport, received = standalone_transport()
        params = generate_params(ACCOUNT, b"\x06" * 32)
        transfer = build_transfer(params, "15", TOKEN_BYTES, "t-1")

        with pytest.raises(InvalidPayment):
            asyncio.run(transport.handle_transfer(transfer))
        assert received == []

    def test_wrong_account_rejected(self):
        transport, _ = standalone_transport()
        transfer = build_transfer(generate_params("test.bob", SECRET), "15", TOKEN_BYTES, "t-1")

        with pytest.raises(InvalidPayment):
            asyncio.run(transport.handle_transfer(transfer))

    def test_malformed_transfer(self):
        transport, _ = standalone_transport()
        with pytest.raises(InvalidPayment):
            asyncio.run(transport.handle_transfer({"id": "t-1"}))

    def test_non_positive_amount(self):
        transport, _ = standalone_transport()
        transfer = build_transfer(generate_params(ACCOUNT, SECRET), "0", TOKEN_BYTES, "t-1")
        with pytest.raises(InvalidPayment):
            asyncio.run(transport.handle_transfer(transfer))

    def test_no_listener(self):
        transport = ConnectorTransport(account=ACCOUNT)
        transfer = build_transfer(generate_params(ACCOUNT, SECRET), "1", TOKEN_BYTES, "t-1")
        with pytest.raises(InvalidPayment):
            asyncio.run(transport.handle_transfer(transfer))

    @patch("app.ilp.transport.requests")
    def test_protocol_violation_rejects_at_connector(self, mock_requests):
        mock_requests.get.return_value = json_response({"account": ACCOUNT})
        mock_requests.post.return_value = json_response({})
        transport = ConnectorTransport(connector_url=CONNECTOR_URL)

        async def listener(payment):
            raise InvalidTokenLength(len(payment.data))

        transport.listen(SECRET, listener)
        transfer = build_transfer(generate_params(ACCOUNT, SECRET), "1", b"\x01" * 4, "t-9")

        with pytest.raises(InvalidPayment):
            asyncio.run(transport.handle_transfer(transfer))

        url = mock_requests.post.call_args[0][0]
        assert url == f"{CONNECTOR_URL}/reject"
        assert mock_requests.post.call_args[1]["json"]["id"] == "t-9"


class TestFulfill:
    """Test fulfillment against the connector."""

    @patch("app.ilp.transport.requests")
    def test_fulfill_posts_fulfillment(self, mock_requests):
        mock_requests.get.return_value = json_response({"account": ACCOUNT})
        mock_requests.post.return_value = json_response({})
        transport = ConnectorTransport(connector_url=CONNECTOR_URL)

        async def listener(payment):
            await payment.fulfill()

        transport.listen(SECRET, listener)
        transfer = build_transfer(generate_params(ACCOUNT, SECRET), "2", TOKEN_BYTES, "t-2")

        result = asyncio.run(transport.handle_transfer(transfer))

        assert mock_requests.post.call_args[0][0] == f"{CONNECTOR_URL}/fulfill"
        body = mock_requests.post.call_args[1]["json"]
        assert body == {"id": "t-2", "fulfillment": result["fulfillment"]}

    @patch("app.ilp.transport.requests")
    def test_fulfill_failure_raises(self, mock_requests):
        mock_requests.get.return_value = json_response({"account": ACCOUNT})
        mock_requests.post.side_effect = RequestsConnectionError("connector down")
        transport = ConnectorTransport(connector_url=CONNECTOR_URL)
        errors = []

        async def listener(payment):
            try:
                await payment.fulfill()
            except FulfillmentFailure as e:
                errors.append(e)

        transport.listen(SECRET, listener)
        transfer = build_transfer(generate_params(ACCOUNT, SECRET), "2", TOKEN_BYTES, "t-3")
        asyncio.run(transport.handle_transfer(transfer))

        assert len(errors) == 1
        assert "t-3" in str(errors[0])

    @patch("app.ilp.transport.requests")
    def test_unsettled_payment_not_fulfilled(self, mock_requests):
        """A transfer the receiver could not credit is rejected, not fulfilled."""
        mock_requests.get.return_value = json_response({"account": ACCOUNT})
        mock_requests.post.side_effect = RequestsConnectionError("connector down")
        ledger = BalanceLedger()
        transport = ConnectorTransport(connector_url=CONNECTOR_URL)
        transport.listen(SECRET, PaymentReceiver(ledger))
        transfer = build_transfer(generate_params(ACCOUNT, SECRET), "2", TOKEN_BYTES, "t-5")

        with pytest.raises(InvalidPayment) as exc_info:
            asyncio.run(transport.handle_rpc("send_transfer", transfer))

        assert "t-5" in str(exc_info.value)
        assert ledger.snapshot() == {}
        urls = [call[0][0] for call in mock_requests.post.call_args_list]
        assert urls == [f"{CONNECTOR_URL}/fulfill", f"{CONNECTOR_URL}/reject"]

    def test_listener_declining_payment(self):
        transport = ConnectorTransport(account=ACCOUNT)

        async def listener(payment):
            return False

        transport.listen(SECRET, listener)
        transfer = build_transfer(generate_params(ACCOUNT, SECRET), "2", TOKEN_BYTES, "t-6")

        with pytest.raises(InvalidPayment):
            asyncio.run(transport.handle_transfer(transfer))

        info = asyncio.run(transport.handle_rpc("get_balance", {}))
        assert info["balance"] == "0"


class TestRpcMethods:
    """Test other RPC methods."""

    def test_get_info(self):
        transport, _ = standalone_transport()
        asyncio.run(transport.connect())
        info = asyncio.run(transport.handle_rpc("get_info", None))
        assert info == {"account": ACCOUNT, "connected": True}

    def test_get_balance_counts_settled_transfers(self):
        transport, _ = standalone_transport()
        params = generate_params(ACCOUNT, SECRET)

        async def run():
            await transport.handle_rpc("send_transfer", build_transfer(params, "15", TOKEN_BYTES, "t-1"))
            await transport.handle_rpc("send_transfer", build_transfer(params, "2.5", TOKEN_BYTES, "t-2"))
            return await transport.handle_rpc("get_balance", {})

        assert asyncio.run(run()) == {"account": ACCOUNT, "balance": "17.5"}

    def test_get_balance_starts_at_zero(self):
        transport, _ = standalone_transport()
        assert asyncio.run(transport.handle_rpc("get_balance", None))["balance"] == "0"

    def test_matching_prefix(self):
        transport, _ = standalone_transport()
        info = asyncio.run(transport.handle_rpc("get_info", None, prefix="test."))
        assert info["account"] == ACCOUNT

    def test_foreign_prefix_refused(self):
        transport, received = standalone_transport()
        transfer = build_transfer(generate_params(ACCOUNT, SECRET), "1", TOKEN_BYTES, "t-7")

        with pytest.raises(ValueError):
            asyncio.run(transport.handle_rpc("send_transfer", transfer, prefix="g.other."))
        assert received == []

    def test_unknown_method(self):
        transport, _ = standalone_transport()
        with pytest.raises(ValueError):
            asyncio.run(transport.handle_rpc("no_such_method", {}))

    def test_build_transfer_encodes_data(self):
        params = generate_params(ACCOUNT, SECRET)
        transfer = build_transfer(params, 3, TOKEN_BYTES, "t-4")
        assert transfer["ilp"]["data"] == base64url(TOKEN_BYTES)
        assert transfer["amount"] == "3"
