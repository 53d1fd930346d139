import json

import pytest

from pipewright.model import Event, EventKind, TriggerRule
from pipewright.triggers import InMemoryEventQueue, RedisEventQueue, TriggerEvaluator, event_from_webhook

from conftest import make_definition, make_job


@pytest.fixture
def main_pipeline():
    return make_definition(
        make_job("build"),
        name="main",
        triggers=[
            TriggerRule(EventKind.PUSH, ("master",)),
            TriggerRule(EventKind.PULL_REQUEST, ("master",)),
            TriggerRule(EventKind.MANUAL),
        ],
    )


def test_push_to_matching_branch(main_pipeline):
    evaluator = TriggerEvaluator([main_pipeline])
    assert evaluator.match(Event(kind=EventKind.PUSH, branch="master")) is main_pipeline


def test_push_to_other_branch_starts_nothing(main_pipeline):
    evaluator = TriggerEvaluator([main_pipeline])
    assert evaluator.match(Event(kind=EventKind.PUSH, branch="feature/x")) is None


def test_manual_dispatch_matches_any_branch(main_pipeline):
    evaluator = TriggerEvaluator([main_pipeline])
    assert evaluator.match(Event(kind=EventKind.MANUAL, branch="")) is main_pipeline
    assert evaluator.match(Event(kind=EventKind.MANUAL, branch="feature/x")) is main_pipeline


def test_manual_dispatch_needs_a_manual_trigger():
    push_only = make_definition(make_job("build"), triggers=[TriggerRule(EventKind.PUSH)])
    assert TriggerEvaluator([push_only]).match(Event(kind=EventKind.MANUAL, branch="master")) is None


def test_empty_branch_filter_matches_every_branch():
    rule = TriggerRule(EventKind.PUSH)
    assert rule.matches(Event(kind=EventKind.PUSH, branch="anything"))
    assert not rule.matches(Event(kind=EventKind.PULL_REQUEST, branch="anything"))


def test_first_matching_definition_wins(main_pipeline):
    catch_all = make_definition(make_job("x"), name="catch_all", triggers=[TriggerRule(EventKind.PUSH)])
    evaluator = TriggerEvaluator([main_pipeline])
    evaluator.add(catch_all)
    assert evaluator.match(Event(kind=EventKind.PUSH, branch="master")) is main_pipeline
    assert evaluator.match(Event(kind=EventKind.PUSH, branch="dev")) is catch_all


def test_push_webhook():
    event = event_from_webhook("push", {"ref": "refs/heads/master", "after": "abc"})
    assert event.kind is EventKind.PUSH
    assert event.branch == "master"
    assert event.sha == "abc"


def test_pull_request_webhook_uses_base_branch():
    payload = {"pull_request": {"base": {"ref": "master"}, "head": {"ref": "feature", "sha": "f00"}}}
    event = event_from_webhook("pull_request", payload)
    assert event.kind is EventKind.PULL_REQUEST
    assert event.branch == "master"
    assert event.sha == "f00"


def test_unsupported_webhook_event():
    with pytest.raises(ValueError):
        event_from_webhook("issues", {})


def test_event_dict_round_trip_keeps_identity():
    event = Event(kind=EventKind.MANUAL, branch="main", payload={"inputs": {"x": 1}})
    restored = Event.from_dict(json.loads(json.dumps(event.to_dict())))
    assert restored.id == event.id
    assert restored.kind is EventKind.MANUAL
    assert restored.received_at == event.received_at


def test_in_memory_queue_is_fifo():
    q = InMemoryEventQueue()
    first, second = Event(kind=EventKind.PUSH, branch="a"), Event(kind=EventKind.PUSH, branch="b")
    q.put(first)
    q.put(second)
    assert len(q) == 2
    assert q.get(timeout=0.1) is first
    assert q.get(timeout=0.1) is second
    assert q.get(timeout=0.01) is None


class FakeRedis:
    def __init__(self):
        self.lists = {}

    def rpush(self, name, value):
        self.lists.setdefault(name, []).append(value)

    def blpop(self, name, timeout=0):
        items = self.lists.get(name)
        if not items:
            return None
        return name, items.pop(0)

    def llen(self, name):
        return len(self.lists.get(name, []))


def test_redis_queue_serialises_events():
    client = FakeRedis()
    q = RedisEventQueue(client, "events")
    event = Event(kind=EventKind.PUSH, branch="master", sha="abc")
    q.put(event)
    assert len(q) == 1
    assert json.loads(client.lists["events"][0])["branch"] == "master"

    got = q.get(timeout=1)
    assert got.id == event.id and got.kind is EventKind.PUSH
    assert q.get(timeout=1) is None


def test_redis_queue_drops_malformed_items():
    client = FakeRedis()
    client.rpush("events", "{not json")
    assert RedisEventQueue(client, "events").get(timeout=1) is None
