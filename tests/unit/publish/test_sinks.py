import json

import pytest
import requests

from helpers.fakes import change, update
from term_engine.contracts.decision import ViolationAlert
from term_engine.exceptions.core import FatalPublishError, TransientIOError
from term_engine.publish.sinks import (
    IDEMPOTENCY_HEADER,
    HttpAlertSink,
    InMemoryDeadLetterSink,
    JsonlDeadLetterSink,
)
from term_engine.rules.evaluator import evaluate


def _alert():
    d = evaluate(update(7), [change().to_term()], decided_ts=1).decisions[0]
    return ViolationAlert(decision=d).next_attempt()


class _Resp:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


class FakeSession:
    def __init__(self, status=200, exc=None):
        self.status = status
        self.exc = exc
        self.posts = []
        self.closed = False

    def post(self, url, data=None, headers=None, timeout=None):
        self.posts.append({"url": url, "data": data, "headers": headers, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return _Resp(self.status, "nope")

    def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_http_sink_posts_wire_form_with_idempotency_header():
    session = FakeSession(200)
    sink = HttpAlertSink(url="http://alerts/api", session=session, headers={"X-Team": "risk"})
    alert = _alert()
    await sink.send(alert)
    post = session.posts[0]
    assert post["url"] == "http://alerts/api"
    assert post["headers"][IDEMPOTENCY_HEADER] == alert.idempotency_key
    assert post["headers"]["X-Team"] == "risk"
    assert json.loads(post["data"])["term_id"] == "RATE_CAP_5PCT"
    sink.close()
    assert session.closed


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [408, 429, 500, 503])
async def test_http_sink_retryable_statuses(status):
    with pytest.raises(TransientIOError):
        await HttpAlertSink(url="http://x", session=FakeSession(status)).send(_alert())


@pytest.mark.asyncio
async def test_http_sink_client_error_is_fatal():
    with pytest.raises(FatalPublishError):
        await HttpAlertSink(url="http://x", session=FakeSession(422)).send(_alert())


@pytest.mark.asyncio
async def test_http_sink_connection_error_is_transient():
    session = FakeSession(exc=requests.ConnectionError("refused"))
    with pytest.raises(TransientIOError):
        await HttpAlertSink(url="http://x", session=session).send(_alert())


@pytest.mark.asyncio
async def test_dead_letter_sinks(tmp_path):
    mem = InMemoryDeadLetterSink()
    await mem.put({"reason": "malformed"})
    assert mem.entries == [{"reason": "malformed"}]

    path = tmp_path / "dl" / "dead.jsonl"
    sink = JsonlDeadLetterSink(path)
    await sink.put({"reason": "malformed", "payload": {"seq": 1}})
    await sink.put({"reason": "publish_budget_exhausted", "error": ValueError("x")})
    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(x)["reason"] for x in lines] == ["malformed", "publish_budget_exhausted"]
