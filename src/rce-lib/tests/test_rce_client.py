"""
tests/test_rce_client.py — RceClient against a scripted HTTP session.

Coverage:
  - Pull mode delivers every chunk in cursor order, then the exit status.
  - 409 polls are waited out without consuming the retry budget.
  - 403/416 on a chunk fetch mean "not consistent yet".
  - 401 fails fast; 5xx and connection errors are retried, then exhausted.
  - Push mode submits once and returns the sentinel without polling.
"""

from __future__ import annotations

import json
from collections import deque
from typing import Any

import pytest
import requests
from rce.client import RceClient, execute
from rce.exceptions import ApiRequestError, FatalError, TransportError, Unauthorized
from rce.models import PUSH_MODE_SENTINEL, PollOutcome, PollResult, PushTargets

BASE_URL = "https://rce.example.com"
JOB_ID = "1700000000.0b8e0c1e-4f7a-4b8e-9d2c-3a1f5e6d7c8b"


class FakeResponse:
    def __init__(self, status_code: int, body: Any = None) -> None:
        self.status_code = status_code
        self._body = body
        if isinstance(body, (dict, list)):
            self.text = json.dumps(body)
        else:
            self.text = body or ""
        self.content = self.text.encode("utf-8")

    def json(self) -> Any:
        return self._body


class ScriptedSession:
    """Answers API calls and chunk GETs from per-route queues."""

    def __init__(self) -> None:
        self.api: deque[Any] = deque()
        self.chunks: deque[Any] = deque()
        self.requests: list[dict[str, Any]] = []
        self.gets: list[str] = []

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append({"method": method, "url": url, **kwargs})
        answer = self.api.popleft()
        if isinstance(answer, Exception):
            raise answer
        return answer

    def get(self, url: str, **_kwargs: Any) -> FakeResponse:
        self.gets.append(url)
        answer = self.chunks.popleft()
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def session() -> ScriptedSession:
    return ScriptedSession()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def client(session: ScriptedSession, sleeps: list[float]) -> RceClient:
    return RceClient(BASE_URL + "/", "cred", session=session, attempts=3, sleep=sleeps.append)


class TestSubmitAndPoll:
    def test_submit_sends_argv_and_auth_header(
        self, client: RceClient, session: ScriptedSession
    ) -> None:
        session.api.append(FakeResponse(200, {"uid": JOB_ID}))

        assert client.submit(["echo", "hi"]) == JOB_ID

        sent = session.requests[0]
        assert sent["method"] == "POST"
        assert sent["url"] == f"{BASE_URL}/api/exec"
        assert sent["json"] == {"argv": ["echo", "hi"]}
        assert sent["headers"] == {"auth": "cred"}

    def test_poll_409_is_not_ready(self, client: RceClient, session: ScriptedSession) -> None:
        session.api.append(FakeResponse(409))
        assert client.poll(JOB_ID, 2).outcome == "not_ready"
        assert session.requests[0]["params"] == {"uid": JOB_ID, "cursor": 2}

    def test_401_fails_fast(self, client: RceClient, session: ScriptedSession) -> None:
        session.api.append(FakeResponse(401, "bad auth"))
        with pytest.raises(Unauthorized):
            client.submit(["ls"])
        assert len(session.requests) == 1

    def test_400_is_not_retried(self, client: RceClient, session: ScriptedSession) -> None:
        session.api.append(FakeResponse(400, {"error": {"code": "BAD_REQUEST"}}))
        with pytest.raises(ApiRequestError) as exc_info:
            client.submit(["ls"])
        assert exc_info.value.status_code == 400
        assert len(session.requests) == 1

    def test_5xx_and_connection_errors_are_retried(
        self, client: RceClient, session: ScriptedSession, sleeps: list[float]
    ) -> None:
        session.api.extend(
            [
                FakeResponse(502, "bad gateway"),
                requests.ConnectionError("reset"),
                FakeResponse(200, {"uid": JOB_ID}),
            ]
        )
        assert client.submit(["ls"]) == JOB_ID
        assert len(sleeps) == 2

    def test_retry_exhaustion_raises_transport_error(
        self, client: RceClient, session: ScriptedSession
    ) -> None:
        session.api.extend([FakeResponse(503)] * 3)
        with pytest.raises(TransportError):
            client.submit(["ls"])


class TestFetch:
    def test_403_and_416_are_waited_out(
        self, client: RceClient, session: ScriptedSession
    ) -> None:
        session.chunks.extend([FakeResponse(403), FakeResponse(416), FakeResponse(200, "data")])
        assert client.fetch("https://s3/chunk") == "data"
        assert len(session.gets) == 3

    def test_persistent_403_is_eventually_fatal(
        self, client: RceClient, session: ScriptedSession
    ) -> None:
        session.chunks.extend([FakeResponse(403)] * 3)
        with pytest.raises(TransportError):
            client.fetch("https://s3/chunk")


class TestExecute:
    def test_pull_mode_delivers_chunks_in_order(
        self, client: RceClient, session: ScriptedSession, sleeps: list[float]
    ) -> None:
        session.api.extend(
            [
                FakeResponse(200, {"uid": JOB_ID}),
                FakeResponse(409),
                FakeResponse(200, {"more-url": "https://s3/0"}),
                FakeResponse(200, {"more-url": "https://s3/1"}),
                FakeResponse(409),
                FakeResponse(200, {"exit": 1}),
            ]
        )
        session.chunks.extend([FakeResponse(200, "line one"), FakeResponse(200, "line two")])
        received: list[str] = []

        status = client.execute(["make"], received.append)

        assert status == 1
        assert received == ["line one", "line two"]
        cursors = [r["params"]["cursor"] for r in session.requests if r["method"] == "GET"]
        assert cursors == [0, 0, 1, 2, 2]
        assert session.gets == ["https://s3/0", "https://s3/1"]
        assert len(sleeps) == 2

    def test_many_not_ready_polls_do_not_exhaust_retries(
        self, client: RceClient, session: ScriptedSession
    ) -> None:
        session.api.append(FakeResponse(200, {"uid": JOB_ID}))
        session.api.extend([FakeResponse(409)] * 20)
        session.api.append(FakeResponse(200, {"exit": 0}))

        assert client.execute(["sleep", "20"], lambda _text: None) == 0

    def test_push_mode_returns_sentinel_without_polling(
        self, client: RceClient, session: ScriptedSession
    ) -> None:
        targets = PushTargets(log="https://l", size="https://s", exit="https://e")
        session.api.append(FakeResponse(200, {"uid": JOB_ID}))

        assert client.execute(["ls"], push_targets=targets) == PUSH_MODE_SENTINEL
        assert len(session.requests) == 1
        assert session.requests[0]["json"]["push-urls"] == targets.to_dict()

    def test_module_level_execute(self, session: ScriptedSession) -> None:
        session.api.extend([FakeResponse(200, {"uid": JOB_ID}), FakeResponse(200, {"exit": 0})])
        assert execute(BASE_URL, "cred", ["true"], lambda _t: None, session=session) == 0

    def test_chunk_result_without_url_is_fatal(
        self, client: RceClient, session: ScriptedSession, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        session.api.append(FakeResponse(200, {"uid": JOB_ID}))
        monkeypatch.setattr(
            client, "poll", lambda _job_id, _cursor: PollResult(outcome=PollOutcome.MORE)
        )

        with pytest.raises(FatalError, match="no chunk url"):
            client.execute(["ls"], lambda _text: None)

    def test_terminal_result_without_status_is_fatal(
        self, client: RceClient, session: ScriptedSession, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        session.api.append(FakeResponse(200, {"uid": JOB_ID}))
        monkeypatch.setattr(
            client, "poll", lambda _job_id, _cursor: PollResult(outcome=PollOutcome.TERMINAL)
        )

        with pytest.raises(FatalError, match="no exit status"):
            client.execute(["ls"], lambda _text: None)
