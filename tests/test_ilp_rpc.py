"""
Unit tests for the /__ilp_rpc passthrough.
"""
from unittest.mock import patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.ilp import rpc
from app.ilp.paywall import get_paywall

RPC_TOKEN = "rpc-secret"


@pytest.fixture
def client(paywall):
    app = FastAPI()
    app.include_router(rpc.router)
    app.dependency_overrides[get_paywall] = lambda: paywall
    return TestClient(app)


def auth(token: str = RPC_TOKEN) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestRpcAuth:
    """Test bearer authentication."""

    @patch("app.ilp.rpc.settings")
    def test_missing_authorization(self, mock_settings, client):
        mock_settings.ILP_RPC_TOKEN = RPC_TOKEN
        response = client.post("/__ilp_rpc?method=get_info", json={})
        assert response.status_code == 401

    @patch("app.ilp.rpc.settings")
    def test_wrong_token(self, mock_settings, client):
        mock_settings.ILP_RPC_TOKEN = RPC_TOKEN
        response = client.post("/__ilp_rpc?method=get_info", json={}, headers=auth("nope"))
        assert response.status_code == 401

    @patch("app.ilp.rpc.settings")
    def test_wrong_scheme(self, mock_settings, client):
        mock_settings.ILP_RPC_TOKEN = RPC_TOKEN
        response = client.post(
            "/__ilp_rpc?method=get_info",
            json={},
            headers={"Authorization": f"Basic {RPC_TOKEN}"}
        )
        assert response.status_code == 401

    @patch("app.ilp.rpc.settings")
    def test_disabled_without_token(self, mock_settings, client, transport):
        mock_settings.ILP_RPC_TOKEN = None
        response = client.post("/__ilp_rpc?method=get_info", json={}, headers=auth())
        assert response.status_code == 404
        assert transport.rpc_calls == []


class TestRpcForwarding:
    """Test forwarding to the transport."""

    @patch("app.ilp.rpc.settings")
    def test_forwards_payload(self, mock_settings, client, transport):
        mock_settings.ILP_RPC_TOKEN = RPC_TOKEN
        response = client.post(
            "/__ilp_rpc?method=send_message",
            json={"hello": "world"},
            headers=auth()
        )

        assert response.status_code == 200
        assert response.json() == {"method": "send_message", "echo": {"hello": "world"}}
        assert transport.rpc_calls == [("send_message", {"hello": "world"})]
        assert transport.rpc_prefixes == [None]

    @patch("app.ilp.rpc.settings")
    def test_forwards_prefix(self, mock_settings, client, transport):
        mock_settings.ILP_RPC_TOKEN = RPC_TOKEN
        response = client.post(
            "/__ilp_rpc?method=get_balance&prefix=test.alice.",
            json={},
            headers=auth()
        )

        assert response.status_code == 200
        assert transport.rpc_prefixes == ["test.alice."]

    @patch("app.ilp.rpc.settings")
    def test_missing_method(self, mock_settings, client, transport):
        mock_settings.ILP_RPC_TOKEN = RPC_TOKEN
        response = client.post("/__ilp_rpc", json={}, headers=auth())
        assert response.status_code == 400
        assert transport.rpc_calls == []

    @patch("app.ilp.rpc.settings")
    def test_downstream_error(self, mock_settings, client):
        mock_settings.ILP_RPC_TOKEN = RPC_TOKEN
        response = client.post("/__ilp_rpc?method=explode", json={}, headers=auth())
        assert response.status_code == 422
        assert response.json()["detail"] == "downstream failure"
