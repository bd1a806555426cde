from __future__ import annotations

from typing import Any

import pytest
import requests

from ralphloop.dispatch import RemoteDispatcher, build_dispatch_payload, remote_branch_name
from ralphloop.models import DispatchRequest, RemoteConfig, SetupError, TransientDispatchError


class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    def __init__(self, *, post: Any = None, get: Any = None) -> None:
        self.auth: Any = None
        self._post = post
        self._get = get
        self.posts: list[tuple[str, dict[str, Any], float]] = []
        self.gets: list[str] = []

    def post(self, url: str, *, json: dict[str, Any], timeout: float) -> FakeResponse:
        self.posts.append((url, json, timeout))
        if isinstance(self._post, Exception):
            raise self._post
        return self._post

    def get(self, url: str, *, timeout: float) -> FakeResponse:
        self.gets.append(url)
        if isinstance(self._get, Exception):
            raise self._get
        return self._get


def _config(model: str = "") -> RemoteConfig:
    return RemoteConfig(enabled=True, api_url="https://api.example.test", model=model, timeout_seconds=30.0)


def _request() -> DispatchRequest:
    return DispatchRequest(
        repository="https://github.com/acme/widgets",
        ref="main",
        branch_name=remote_branch_name(6),
        prompt="# Ralph Iteration 6",
        model="model-x",
    )


def test_branch_name() -> None:
    assert remote_branch_name(12) == "ralph-iteration-12"


def test_payload_shape() -> None:
    payload = build_dispatch_payload(_request())
    assert payload == {
        "prompt": {"text": "# Ralph Iteration 6"},
        "source": {"repository": "https://github.com/acme/widgets", "ref": "main"},
        "target": {"branchName": "ralph-iteration-6", "autoCreatePr": False},
        "model": "model-x",
    }


def test_missing_api_key_is_a_setup_error() -> None:
    with pytest.raises(SetupError):
        RemoteDispatcher(_config(), api_key="", session=FakeSession())


# ===================================================================
# dispatch
# ===================================================================


class TestDispatch:
    def test_success_returns_run_id_and_monitor_url(self) -> None:
        session = FakeSession(
            post=FakeResponse(201, {"id": "bc-123", "target": {"url": "https://cursor.test/agents/bc-123"}})
        )
        dispatcher = RemoteDispatcher(_config(), api_key="key-1", session=session)
        result = dispatcher.dispatch(_request())
        assert result.run_id == "bc-123"
        assert result.monitor_url == "https://cursor.test/agents/bc-123"
        assert result.branch_name == "ralph-iteration-6"
        assert session.auth == ("key-1", "")
        url, body, timeout = session.posts[0]
        assert url == "https://api.example.test/v0/agents"
        assert body["target"]["autoCreatePr"] is False
        assert timeout == 30.0

    def test_missing_run_id_is_transient(self) -> None:
        session = FakeSession(post=FakeResponse(400, {"error": "bad repository"}))
        dispatcher = RemoteDispatcher(_config(), api_key="k", session=session)
        with pytest.raises(TransientDispatchError, match="bad repository"):
            dispatcher.dispatch(_request())

    def test_non_json_response_is_transient(self) -> None:
        session = FakeSession(post=FakeResponse(502, None, text="Bad Gateway"))
        dispatcher = RemoteDispatcher(_config(), api_key="k", session=session)
        with pytest.raises(TransientDispatchError, match="Bad Gateway"):
            dispatcher.dispatch(_request())

    def test_unreachable_endpoint_is_transient(self) -> None:
        session = FakeSession(post=requests.exceptions.ConnectionError("refused"))
        dispatcher = RemoteDispatcher(_config(), api_key="k", session=session)
        with pytest.raises(TransientDispatchError, match="unreachable"):
            dispatcher.dispatch(_request())


# ===================================================================
# model selection
# ===================================================================


class TestSelectModel:
    def test_configured_model_wins(self) -> None:
        session = FakeSession()
        dispatcher = RemoteDispatcher(_config(model="configured"), api_key="k", session=session)
        assert dispatcher.select_model() == "configured"
        assert session.gets == []

    def test_first_listed_model(self) -> None:
        session = FakeSession(get=FakeResponse(200, {"models": ["listed-1", "listed-2"]}))
        dispatcher = RemoteDispatcher(_config(), api_key="k", session=session)
        assert dispatcher.select_model() == "listed-1"
        assert session.gets == ["https://api.example.test/v0/models"]

    def test_fallback_when_listing_fails(self) -> None:
        session = FakeSession(get=requests.exceptions.Timeout("slow"))
        dispatcher = RemoteDispatcher(_config(), api_key="k", session=session)
        assert dispatcher.select_model() == "claude-4.5-opus-high-thinking"

    def test_fallback_when_listing_is_empty(self) -> None:
        session = FakeSession(get=FakeResponse(200, {"models": []}))
        dispatcher = RemoteDispatcher(_config(), api_key="k", session=session)
        assert dispatcher.select_model() == "claude-4.5-opus-high-thinking"
