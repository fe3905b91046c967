from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from pg_change_events.dispatch import (
    CollectingDispatcher,
    DispatchError,
    FanoutDispatcher,
    HttpEventDispatcher,
    LoggingDispatcher,
    RetryPolicy,
)
from pg_change_events.entities import EntitySnapshot, EventModelsGroup, Operation


def _group() -> EventModelsGroup:
    group = EventModelsGroup(Operation.UPDATE, "users", "User")
    snapshot = EntitySnapshot.with_original("User", {"id": 1, "name": "a"})
    snapshot.set_attribute("name", "b")
    group.add(snapshot)
    return group


def _dispatcher(handler, *, retries: int = 2, **kwargs):
    sleeps: List[float] = []
    client = httpx.Client(transport=httpx.MockTransport(handler))
    dispatcher = HttpEventDispatcher(
        "https://hooks.example/events",
        client=client,
        retry_policy=RetryPolicy(
            retries=retries,
            base_delay=0.5,
            max_delay=1.0,
            jitter=lambda limit: limit,
        ),
        sleep=sleeps.append,
        **kwargs,
    )
    return dispatcher, sleeps


@pytest.mark.unit
def test_retry_policy_backoff_doubles_up_to_the_cap():
    policy = RetryPolicy(
        retries=4, base_delay=0.5, max_delay=1.5, jitter=lambda ceiling: ceiling
    )

    assert policy.max_attempts == 5
    assert policy.ceilings() == [0.5, 1.0, 1.5, 1.5]
    assert policy.delay(0) == 0.0
    assert policy.delay(1) == 0.5
    assert policy.delay(9) == 1.5


@pytest.mark.unit
def test_retry_policy_jitter_stays_within_ceiling():
    policy = RetryPolicy(retries=2, base_delay=0.4, max_delay=1.0)

    assert all(0.0 <= policy.delay(2) <= 0.8 for _ in range(50))
    assert RetryPolicy().max_attempts == 4


@pytest.mark.unit
@pytest.mark.parametrize(
    "kwargs", [{"retries": -1}, {"base_delay": 0}, {"max_delay": -1.0}]
)
def test_retry_policy_rejects_invalid_values(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


@pytest.mark.unit
def test_http_dispatcher_posts_group_payload():
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(202)

    dispatcher, sleeps = _dispatcher(handler)
    dispatcher.dispatch(_group())

    [request] = requests
    body = json.loads(request.content)
    assert request.method == "POST"
    assert body["operation"] == "update"
    assert body["entities"][0]["changes"] == {"name": "b"}
    assert sleeps == []
    assert dispatcher.metrics.snapshot()["success_total"] == 1


@pytest.mark.unit
def test_http_dispatcher_retries_server_errors():
    statuses = iter([503, 429, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses))

    dispatcher, sleeps = _dispatcher(handler)
    dispatcher.dispatch(_group())

    assert sleeps == [0.5, 1.0]
    assert dispatcher.metrics.retry_total == 2
    assert dispatcher.metrics.success_total == 1


@pytest.mark.unit
def test_http_dispatcher_dead_letters_client_errors():
    dead_letters = []

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "bad payload"})

    dispatcher, sleeps = _dispatcher(
        handler,
        dead_letter_handler=lambda group, error: dead_letters.append((group, error)),
    )

    with pytest.raises(DispatchError):
        dispatcher.dispatch(_group())

    assert sleeps == []
    [(group, error)] = dead_letters
    assert group.entity_kind == "users"
    assert isinstance(error, httpx.HTTPStatusError)
    assert dispatcher.metrics.dead_letter_total == 1
    assert dispatcher.metrics.failure_total == 1


@pytest.mark.unit
def test_http_dispatcher_gives_up_after_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    dispatcher, sleeps = _dispatcher(handler, retries=1)

    with pytest.raises(DispatchError) as excinfo:
        dispatcher.dispatch(_group())

    assert "after 2 attempt(s)" in str(excinfo.value)
    assert sleeps == [0.5]


@pytest.mark.unit
def test_http_dispatcher_requires_url():
    with pytest.raises(ValueError):
        HttpEventDispatcher("")


@pytest.mark.unit
def test_logging_dispatcher_appends_jsonl(tmp_path, caplog):
    caplog.set_level("INFO")
    target = tmp_path / "events.jsonl"
    dispatcher = LoggingDispatcher(jsonl_path=target)

    dispatcher.dispatch(_group())
    dispatcher.dispatch(_group())

    lines = target.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["entity_type"] == "User"
    assert "change event update users -> User (1 entities)" in caplog.text


@pytest.mark.unit
def test_fanout_dispatches_to_each_target_in_order():
    first, second = CollectingDispatcher(), CollectingDispatcher()
    group = _group()

    FanoutDispatcher([first, second]).dispatch(group)

    assert first.groups == [group]
    assert second.groups == [group]


@pytest.mark.unit
def test_payloads_with_lone_surrogates_are_delivered(tmp_path):
    group = EventModelsGroup(Operation.INSERT, "notes", "Note")
    group.add(EntitySnapshot.with_original("Note", {"body": "half \ud800"}))
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200)

    dispatcher, _ = _dispatcher(handler)
    dispatcher.dispatch(group)
    target = tmp_path / "events.jsonl"
    LoggingDispatcher(jsonl_path=target).dispatch(group)

    assert bodies[0]["entities"][0]["attributes"] == {"body": "half \ud800"}
    restored = json.loads(target.read_text(encoding="utf-8"))
    assert restored["entities"][0]["original"] == {"body": "half \ud800"}
