from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from conftest import NOW
from telemetry.api.schemas import HistoryQuery
from telemetry.channel import build_transport
from telemetry.channel.history_client import HistoryClient
from telemetry.channel.websocket_channel import WebSocketTransport, build_ws_url
from telemetry.errors import QueryError


def make_response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.content = b"x" if payload is not None or text else b""
    response.text = text
    if payload is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    return response


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def query():
    return HistoryQuery(device_id="m-1", range_start=NOW, range_end=NOW, limit=10)


class TestHistoryClient:
    def test_request_shape(self, session, query):
        session.get.return_value = make_response(payload={"rows": [{"_time": NOW.isoformat()}]})
        client = HistoryClient("http://history.local/", api_key="secret", timeout=2.0, session=session)

        response = client.fetch_blocking(query)

        assert len(response.rows) == 1
        url = session.get.call_args.args[0]
        kwargs = session.get.call_args.kwargs
        assert url == "http://history.local/history"
        assert kwargs["params"]["deviceId"] == "m-1"
        assert kwargs["params"]["limit"] == 10
        assert kwargs["headers"] == {"X-API-Key": "secret"}
        assert kwargs["timeout"] == 2.0
        assert session.trust_env is False

    @pytest.mark.asyncio
    async def test_fetch_runs_in_worker_thread(self, session, query):
        session.get.return_value = make_response(payload={"rows": None})
        client = HistoryClient("http://history.local", session=session)
        response = await client.fetch(query)
        assert response.rows == []

    @pytest.mark.parametrize("status_code, retryable", [(503, True), (502, True), (401, False), (404, False)])
    def test_http_errors(self, session, query, status_code, retryable):
        session.get.return_value = make_response(status_code, payload={"detail": "nope"})
        client = HistoryClient("http://history.local", session=session)

        with pytest.raises(QueryError) as excinfo:
            client.fetch_blocking(query)

        assert excinfo.value.retryable is retryable
        assert excinfo.value.status_code == status_code
        assert "nope" in str(excinfo.value)

    def test_network_errors_are_retryable(self, session, query):
        session.get.side_effect = requests.ConnectionError("refused")
        client = HistoryClient("http://history.local", session=session)

        with pytest.raises(QueryError) as excinfo:
            client.fetch_blocking(query)

        assert excinfo.value.retryable

    def test_malformed_body(self, session, query):
        session.get.return_value = make_response(payload={"rows": "lots"})
        client = HistoryClient("http://history.local", session=session)

        with pytest.raises(QueryError) as excinfo:
            client.fetch_blocking(query)

        assert not excinfo.value.retryable


class TestTransports:
    def test_api_key_is_added_to_ws_url(self):
        assert build_ws_url("ws://host:8000/ws", "k") == "ws://host:8000/ws?api_key=k"
        assert build_ws_url("ws://host/ws?x=1", "k") == "ws://host/ws?x=1&api_key=k"
        assert build_ws_url("ws://host/ws", None) == "ws://host/ws"

    def test_build_transport(self):
        transport = build_transport({"url": "wss://host/ws", "api_key": "k"})
        assert isinstance(transport, WebSocketTransport)
        assert transport.url == "wss://host/ws?api_key=k"

        with pytest.raises(ValueError):
            build_transport({"url": "http://host/ws"})
