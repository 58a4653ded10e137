import asyncio

import pytest

from conftest import ALICE, ROOM
from multibot.agent import Agent
from multibot.errors import HandlerTimeout
from multibot.events import InboundEvent
from multibot.router import EventRouter, Subscription
from multibot.signals import handler_failed


def member_event(room_id=ROOM, sender=ALICE):
    return InboundEvent("m.room.member", room_id, sender, {"membership": "join"})


@pytest.fixture
async def agent(runtime, client):
    return await runtime.start_agent(Agent, "router-bot", client)


@pytest.mark.asyncio
async def test_handlers_run_in_subscription_order(agent):
    router = EventRouter()
    calls = []

    router.subscribe("m.room.member", lambda ctx: calls.append("first"))

    @router.subscribe("m.room.member")
    async def second(ctx):
        calls.append(("second", ctx.event.sender))

    router.subscribe("m.room.topic", lambda ctx: calls.append("topic"))

    result = await router.route(agent, member_event())
    assert calls == ["first", ("second", ALICE)]
    assert result.handled == 2
    assert result.ok


@pytest.mark.asyncio
async def test_failures_are_isolated(agent):
    router = EventRouter()
    calls = []

    def bad(ctx):
        raise ValueError("nope")

    router.subscribe("m.room.member", lambda ctx: calls.append(1))
    bad_sub = router.subscribe("m.room.member", bad)
    router.subscribe("m.room.member", lambda ctx: calls.append(3))

    failed = []

    def receiver(sender, **kwargs):
        failed.append(kwargs["error"])

    with handler_failed.connected_to(receiver):
        result = await router.route(agent, member_event())

    assert calls == [1, 3]
    assert result.handled == 2
    assert not result.ok
    assert len(result.failures) == 1
    assert result.failures[0].subscription == bad_sub
    assert isinstance(result.failures[0].error, ValueError)
    assert len(failed) == 1


@pytest.mark.asyncio
async def test_priority_orders_handlers(agent):
    router = EventRouter()
    calls = []

    router.subscribe("m.room.member", lambda ctx: calls.append("low"), priority=10)
    router.subscribe("m.room.member", lambda ctx: calls.append("default-a"))
    router.subscribe("m.room.member", lambda ctx: calls.append("high"), priority=90)
    router.subscribe("m.room.member", lambda ctx: calls.append("default-b"))

    await router.route(agent, member_event())
    assert calls == ["high", "default-a", "default-b", "low"]


@pytest.mark.asyncio
async def test_filters_and_wildcard(agent):
    router = EventRouter()
    calls = []

    router.subscribe("m.room.member", lambda ctx: calls.append("room"), room_id="!other:example.org")
    router.subscribe("m.room.member", lambda ctx: calls.append("bob"), sender="@bob:example.org")
    router.subscribe("*", lambda ctx: calls.append(("any", ctx.event.type)))

    await router.route(agent, member_event())
    assert calls == [("any", "m.room.member")]

    calls.clear()
    await router.route(agent, member_event(room_id="!other:example.org", sender="@bob:example.org"))
    assert calls == ["room", "bob", ("any", "m.room.member")]


@pytest.mark.asyncio
async def test_unsubscribe(agent):
    router = EventRouter()
    calls = []

    sub = router.subscribe("m.room.member", lambda ctx: calls.append("gone"))
    router.subscribe("m.room.member", lambda ctx: calls.append("kept"))

    assert isinstance(sub, Subscription)
    assert router.unsubscribe(sub)
    assert not router.unsubscribe(sub)

    await router.route(agent, member_event())
    assert calls == ["kept"]
    assert len(router) == 1


@pytest.mark.asyncio
async def test_no_matching_handlers(agent):
    result = await EventRouter().route(agent, member_event())
    assert result.handled == 0
    assert result.ok


@pytest.mark.asyncio
async def test_slow_handler_times_out(runtime, client):
    agent = await runtime.start_agent(Agent, "impatient", client, settings={"handler_timeout": 0.05})
    router = EventRouter()
    calls = []

    async def slow(ctx):
        await asyncio.sleep(10)

    router.subscribe("m.room.member", slow)
    router.subscribe("m.room.member", lambda ctx: calls.append("after"))

    result = await asyncio.wait_for(router.route(agent, member_event()), 5)
    assert isinstance(result.failures[0].error, HandlerTimeout)
    assert calls == ["after"]


def test_subscribe_validation():
    router = EventRouter()
    with pytest.raises(ValueError):
        router.subscribe("", lambda ctx: None)
    with pytest.raises(TypeError):
        router.subscribe("m.room.member", "not callable")


def test_event_types_and_copy():
    router = EventRouter()
    router.subscribe("m.room.member", lambda ctx: None)
    router.subscribe("m.room.topic", lambda ctx: None, priority=99)
    router.subscribe("m.room.member", lambda ctx: None)

    assert router.event_types() == ["m.room.member", "m.room.topic"]

    copied = router.copy()
    copied.subscribe("m.reaction", lambda ctx: None)
    assert len(copied) == 4
    assert len(router) == 3
