import asyncio
import time

import pytest

from conftest import ALICE, FakeClient
from multibot.agent import Agent
from multibot.commands import Argument, CommandRegistry, CommandSpec, command, optional, variadic
from multibot.dispatcher import Outcome, bind_arguments, parse_command, tokenize
from multibot.errors import (
    HandlerTimeout,
    InvalidArgument,
    MissingArgument,
    ParseError,
    ScopeDenied,
    UnknownCommand,
)
from multibot.events import InboundEvent
from multibot.signals import command_dispatched


@command(arguments=[optional("count", default=5)], scope="dm")
async def spam(ctx, count):
    """
    Send a burst of messages
    """
    try:
        count = int(count)
    except (TypeError, ValueError):
        raise InvalidArgument("count", count, "must be an integer") from None
    ctx.agent.calls.append(("spam", count))
    return count


@command(arguments=[Argument("first"), optional("second", default="two")])
def pair(ctx, first, second):
    ctx.agent.calls.append(("pair", first, second))
    return first, second


@command(arguments=[Argument("target"), variadic("words")])
def tell(ctx, target, words):
    ctx.agent.calls.append(("tell", target, words))


@command(arguments=[Argument("times", type=int)])
def repeat(ctx, times):
    ctx.agent.calls.append(("repeat", times))


@command
def hello(ctx):
    ctx.agent.calls.append(("hello",))
    return "hi"


@command
async def boom(ctx):
    raise RuntimeError("exploded")


@command
async def hang(ctx):
    await asyncio.sleep(10)


@command
def block(ctx):
    time.sleep(0.5)
    ctx.agent.calls.append(("block",))


@command(arguments=[Argument("query")])
def search(ctx, query):
    ctx.agent.calls.append(("search", query, dict(ctx.flags)))


@command(arguments=[optional("name")])
async def greet(ctx, name):
    if not name:
        raise MissingArgument("name")
    ctx.agent.calls.append(("greet", name))


@command(scope=lambda ctx: 1 / 0)
def broken_scope(ctx):
    ctx.agent.calls.append(("broken-scope",))


@command(scope=lambda ctx: ctx.can_send("m.reaction"))
def react(ctx):
    ctx.agent.calls.append(("react",))


class DispatchBot(Agent):
    commands = CommandRegistry([spam, pair, tell, repeat, hello, boom, hang, block, search, greet, broken_scope, react])
    settings_overrides = {"handler_timeout": 0.2}

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.calls = []


@pytest.fixture
async def bot(runtime, client):
    return await runtime.start_agent(DispatchBot, "dispatch-bot", client)


async def dispatch(bot, event):
    result = await bot.handle_event(event)
    return result.dispatch


def test_tokenize():
    assert tokenize("say hello world") == ["say", "hello", "world"]
    assert tokenize('say "hello world" again') == ["say", "hello world", "again"]
    assert tokenize("say 'it is' \"x 'y'\"") == ["say", "it is", "x 'y'"]
    assert tokenize("say don't stop") == ["say", "don't", "stop"]
    assert tokenize('say ""') == ["say", ""]
    assert tokenize("  spaced\tout  ") == ["spaced", "out"]


def test_tokenize_unterminated_quote():
    with pytest.raises(ParseError):
        tokenize('say "hello world')


def test_parse_command():
    request = parse_command("!Tell bob hi there", "!")
    assert request.command == "tell"
    assert request.args == ["bob", "hi", "there"]
    assert request.raw_args == "bob hi there"

    assert parse_command("hello there", "!") is None
    assert parse_command("!", "!") is None
    assert parse_command("  !   ", "!") is None
    assert parse_command("!!ping", "!!").command == "ping"
    assert parse_command("!ping", "!").flags == {}


def test_parse_command_flags():
    request = parse_command('!greet Bob --name=Alice --formal -ab "-x" -5 --', "!")
    assert request.command == "greet"
    assert request.args == ["Bob", "-x", "-5", "--"]
    assert request.flags == {"name": "Alice", "formal": True, "a": True, "b": True}
    assert "formal" in request.flags
    assert request.flags.get("quiet", False) is False
    assert request.raw_args == "Bob --name=Alice --formal -ab -x -5 --"


def test_bind_arguments():
    pair_spec = pair._cmd
    assert bind_arguments(pair_spec, ["a"]) == ["a", "two"]
    assert bind_arguments(pair_spec, ["a", "b"]) == ["a", "b"]
    # Surplus words are kept with the last argument
    assert bind_arguments(pair_spec, ["a", "b", "c", "d"]) == ["a", "b c d"]

    with pytest.raises(MissingArgument):
        bind_arguments(pair_spec, [])

    tell_spec = tell._cmd
    assert bind_arguments(tell_spec, ["bob"]) == ["bob", []]
    assert bind_arguments(tell_spec, ["bob", "x", "y", "z"]) == ["bob", ["x", "y", "z"]]

    assert bind_arguments(hello._cmd, ["ignored", "words"]) == []

    with pytest.raises(InvalidArgument) as exc_info:
        bind_arguments(repeat._cmd, ["abc"])
    assert exc_info.value.token == "abc"
    assert exc_info.value.reason == "must be an integer"
    assert bind_arguments(repeat._cmd, ["3"]) == [3]


def test_float_coercion_message():
    spec = CommandSpec("f", lambda ctx, x: x, arguments=(Argument("x", type=float),))
    with pytest.raises(InvalidArgument) as exc_info:
        bind_arguments(spec, ["nope"])
    assert exc_info.value.reason == "must be a number"


@pytest.mark.asyncio
async def test_spam_in_direct_message_uses_default(bot, make_event):
    result = await dispatch(bot, make_event("!spam", is_direct=True))
    assert result.outcome is Outcome.HANDLED
    assert result.result == 5
    assert bot.calls == [("spam", 5)]


@pytest.mark.asyncio
async def test_spam_in_room_is_denied(bot, make_event):
    result = await dispatch(bot, make_event("!spam"))
    assert result.outcome is Outcome.SCOPE_DENIED
    assert isinstance(result.error, ScopeDenied)
    assert bot.calls == []


@pytest.mark.asyncio
async def test_spam_with_non_numeric_count(bot, make_event):
    result = await dispatch(bot, make_event("!spam abc", is_direct=True))
    assert result.outcome is Outcome.INVALID_ARGUMENT
    assert isinstance(result.error, InvalidArgument)
    assert result.error.token == "abc"
    assert bot.calls == []


@pytest.mark.asyncio
async def test_handler_invoked_once_with_positional_args(bot, make_event):
    result = await dispatch(bot, make_event("!pair one"))
    assert result.outcome is Outcome.HANDLED
    assert result.args == ["one", "two"]
    assert bot.calls == [("pair", "one", "two")]

    await dispatch(bot, make_event("!PAIR one two"))
    assert bot.calls[-1] == ("pair", "one", "two")
    assert len(bot.calls) == 2


@pytest.mark.asyncio
async def test_variadic_receives_words_in_order(bot, make_event):
    await dispatch(bot, make_event("!tell bob see you at 'the pub'"))
    assert bot.calls == [("tell", "bob", ["see", "you", "at", "the pub"])]


@pytest.mark.asyncio
async def test_flags_reach_the_handler(bot, make_event):
    result = await dispatch(bot, make_event("!search --limit=5 python -v"))
    assert result.outcome is Outcome.HANDLED
    assert result.args == ["python"]
    assert bot.calls == [("search", "python", {"limit": "5", "v": True})]

    await dispatch(bot, make_event('!search "--literal"'))
    assert bot.calls[-1] == ("search", "--literal", {})

    result = await dispatch(bot, make_event("!search --verbose"))
    assert result.outcome is Outcome.MISSING_ARGUMENT


@pytest.mark.asyncio
async def test_zero_argument_command_ignores_extra_words(bot, make_event):
    result = await dispatch(bot, make_event("!hello there friend"))
    assert result.outcome is Outcome.HANDLED
    assert result.result == "hi"


@pytest.mark.asyncio
async def test_not_a_command(bot, make_event):
    result = await dispatch(bot, make_event("just chatting"))
    assert result.outcome is Outcome.NOT_A_COMMAND
    assert result.ok


@pytest.mark.asyncio
async def test_non_message_events_are_not_dispatched(bot):
    event = InboundEvent("m.room.member", "!room:example.org", ALICE, {"membership": "join"})
    result = await bot.handle_event(event)
    assert result.dispatch is None


@pytest.mark.asyncio
async def test_unknown_and_disabled_commands(runtime, make_event):
    bot = await runtime.start_agent(
        DispatchBot, "limited", FakeClient("@limited:example.org"),
        settings={"disabled_commands": ["hello"]},
    )

    result = await dispatch(bot, make_event("!nope"))
    assert result.outcome is Outcome.UNKNOWN_COMMAND
    assert isinstance(result.error, UnknownCommand)
    assert result.command == "nope"

    result = await dispatch(bot, make_event("!hello"))
    assert result.outcome is Outcome.UNKNOWN_COMMAND
    assert bot.calls == []


@pytest.mark.asyncio
async def test_parse_error(bot, make_event):
    result = await dispatch(bot, make_event('!tell bob "unfinished'))
    assert result.outcome is Outcome.PARSE_ERROR
    assert isinstance(result.error, ParseError)
    assert bot.calls == []


@pytest.mark.asyncio
async def test_missing_argument(bot, make_event):
    result = await dispatch(bot, make_event("!pair"))
    assert result.outcome is Outcome.MISSING_ARGUMENT
    assert result.error.argument == "first"


@pytest.mark.asyncio
async def test_handler_raised_missing_argument(bot, make_event):
    result = await dispatch(bot, make_event("!greet"))
    assert result.outcome is Outcome.MISSING_ARGUMENT
    assert isinstance(result.error, MissingArgument)


@pytest.mark.asyncio
async def test_invalid_argument_from_coercion(bot, make_event):
    result = await dispatch(bot, make_event("!repeat often"))
    assert result.outcome is Outcome.INVALID_ARGUMENT
    assert "often" in str(result.error)


@pytest.mark.asyncio
async def test_handler_failure_is_isolated(bot, make_event):
    result = await dispatch(bot, make_event("!boom"))
    assert result.outcome is Outcome.HANDLER_FAILED
    assert isinstance(result.error, RuntimeError)
    assert not result.ok

    result = await dispatch(bot, make_event("!hello"))
    assert result.outcome is Outcome.HANDLED


@pytest.mark.asyncio
async def test_handler_timeout_frees_the_agent(bot, make_event):
    result = await asyncio.wait_for(dispatch(bot, make_event("!hang")), 5)
    assert result.outcome is Outcome.HANDLER_TIMEOUT
    assert isinstance(result.error, HandlerTimeout)

    result = await dispatch(bot, make_event("!hello"))
    assert result.outcome is Outcome.HANDLED


@pytest.mark.asyncio
async def test_blocking_handler_times_out(bot, make_event):
    loop = asyncio.get_running_loop()
    ticks = []

    async def ticker():
        while True:
            ticks.append(loop.time())
            await asyncio.sleep(0.01)

    task = asyncio.ensure_future(ticker())
    started = loop.time()
    try:
        result = await dispatch(bot, make_event("!block"))
    finally:
        task.cancel()

    assert result.outcome is Outcome.HANDLER_TIMEOUT
    assert isinstance(result.error, HandlerTimeout)
    assert loop.time() - started < 0.45
    assert len(ticks) > 5

    result = await dispatch(bot, make_event("!hello"))
    assert result.outcome is Outcome.HANDLED


@pytest.mark.asyncio
async def test_scope_predicate_that_raises_denies(bot, make_event):
    result = await dispatch(bot, make_event("!broken-scope"))
    assert result.outcome is Outcome.SCOPE_DENIED
    assert bot.calls == []


@pytest.mark.asyncio
async def test_scope_predicate_sees_client_capabilities(runtime, make_event):
    client = FakeClient("@react:example.org", forbidden=[("!quiet:example.org", "m.reaction")])
    bot = await runtime.start_agent(DispatchBot, "reactor", client)

    result = await dispatch(bot, make_event("!react", room_id="!quiet:example.org"))
    assert result.outcome is Outcome.SCOPE_DENIED

    result = await dispatch(bot, make_event("!react"))
    assert result.outcome is Outcome.HANDLED


@pytest.mark.asyncio
async def test_custom_prefix(runtime, make_event):
    bot = await runtime.start_agent(
        DispatchBot, "slashy", FakeClient("@slashy:example.org"),
        settings={"command_prefix": "/"},
    )
    assert (await dispatch(bot, make_event("!hello"))).outcome is Outcome.NOT_A_COMMAND
    assert (await dispatch(bot, make_event("/hello"))).outcome is Outcome.HANDLED


@pytest.mark.asyncio
async def test_command_dispatched_signal(bot, make_event):
    seen = []

    def receiver(sender, **kwargs):
        seen.append((sender, kwargs["result"].outcome))

    with command_dispatched.connected_to(receiver):
        await dispatch(bot, make_event("!hello"))
        await dispatch(bot, make_event("plain text"))

    assert seen == [(bot, Outcome.HANDLED)]
