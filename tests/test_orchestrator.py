import pytest

from bots.smolbot.history import MessageHistory
from bots.smolbot.orchestrator import DISCORD_MESSAGE_LIMIT, ResponseOrchestrator, calculate_typing_delay, fit_message
from common.config import TYPING_MAX_DELAY, TYPING_MIN_DELAY
from emotes import PopularityCache, SymbolRecord
from queueing import QueuedItem, QueueManager
from upstream import AnthropicBackend, FallbackRetrier, ModelLadder, RetryResult, RetryStatus, UpstreamExhausted
from tests.fakes import FakeAnthropicClient, FakeChannel, FakeMessage, SleepRecorder, make_user

KEY = "1:10"


class FakeBackend:
    def __init__(self, replies=(), error=None):
        self.replies = list(replies)
        self.error = error
        self.calls = []

    async def generate_reply(self, system_prompt, turns, bot_name=""):
        self.calls.append({"system": system_prompt, "turns": turns, "bot_name": bot_name})
        if self.error:
            raise self.error
        return self.replies.pop(0)


def lowest(a, b):
    return a


def make_orchestrator(backend, sleep=None):
    popularity = PopularityCache(store=None)
    popularity.ingest_known_symbols("1", [
        SymbolRecord("wave", "123", origin_group="1"),
        SymbolRecord("hype", "456", origin_group="1"),
    ])
    history = MessageHistory()
    orchestrator = ResponseOrchestrator(
        backend=backend,
        history=history,
        popularity=popularity,
        persona_prompt="You are {bot_name}, talking to {username}.",
        sleep=sleep or SleepRecorder(),
        rand=lowest,
    )
    orchestrator.set_identity(99, "SmolBot")
    return orchestrator, history, popularity


@pytest.mark.asyncio
async def test_process_replies_with_rewritten_text():
    sleep = SleepRecorder()
    backend = FakeBackend(["hi :wave:"])
    orchestrator, history, popularity = make_orchestrator(backend, sleep)
    channel = FakeChannel()
    message = FakeMessage(1, "<@99> hello", author=make_user(1, "alice"), channel=channel)
    await history.cache_message(KEY, message, bot_mentioned=True)

    await orchestrator.process(QueuedItem(message))

    assert message.replies == ["hi <:wave:123>"]
    # The bot's own emotes never count
    assert popularity.count("wave") == 0
    assert popularity.last_self_used == "wave"

    (call,) = backend.calls
    assert call["bot_name"] == "SmolBot"
    assert call["turns"] == [{"role": "user", "content": "alice: <@99> hello"}]
    assert call["system"].startswith("You are SmolBot, talking to alice.")
    assert ":wave:" in call["system"]

    # thinking, typing lead, then typing proportional to the reply
    assert sleep.calls[:2] == [1.0, 0.5]
    assert sleep.calls[2] == calculate_typing_delay("hi :wave:", lowest)
    assert channel.typing_entered == 2


@pytest.mark.asyncio
async def test_prompt_leaves_out_the_emote_used_last():
    backend = FakeBackend(["hi :wave:", "ok"])
    orchestrator, history, _ = make_orchestrator(backend)
    first = FakeMessage(1, "<@99> one")
    second = FakeMessage(2, "<@99> two")
    await history.cache_message(KEY, first)
    await orchestrator.process(QueuedItem(first))
    await history.cache_message(KEY, second)
    await orchestrator.process(QueuedItem(second))

    emote_line = backend.calls[1]["system"].split("Available emotes:\n")[1].splitlines()[0]
    assert emote_line == ":hype:"


@pytest.mark.asyncio
async def test_uncached_message_still_gets_a_turn():
    backend = FakeBackend(["sure"])
    orchestrator, _, _ = make_orchestrator(backend)
    message = FakeMessage(7, "<@99> are you there", author=make_user(3, "carol"))

    await orchestrator.process(QueuedItem(message))

    assert backend.calls[0]["turns"] == [{"role": "user", "content": "carol: <@99> are you there"}]
    assert message.replies == ["sure"]


@pytest.mark.asyncio
async def test_typing_failures_do_not_fail_the_reply():
    backend = FakeBackend(["still here"])
    orchestrator, _, _ = make_orchestrator(backend)
    message = FakeMessage(1, "<@99> hi", channel=FakeChannel(typing_fails=True))

    await orchestrator.process(QueuedItem(message))

    assert message.replies == ["still here"]


@pytest.mark.asyncio
async def test_backend_failure_propagates():
    error = UpstreamExhausted(RetryResult(RetryStatus.OVERLOADED_EXHAUSTED, error=RuntimeError("429")))
    orchestrator, _, _ = make_orchestrator(FakeBackend(error=error))
    message = FakeMessage(1, "<@99> hi")

    with pytest.raises(UpstreamExhausted):
        await orchestrator.process(QueuedItem(message))
    assert message.replies == []


@pytest.mark.asyncio
async def test_worker_failure_sends_one_apology():
    error = UpstreamExhausted(RetryResult(RetryStatus.FAILED, error=ValueError("bad")))
    orchestrator, _, _ = make_orchestrator(FakeBackend(error=error))
    manager = QueueManager(orchestrator.process, on_failure=orchestrator.notify_failure, processing_delay=0)
    message = FakeMessage(1, "<@99> hi", author=make_user(1, "alice"))

    manager.admit(KEY, message)
    await manager.drain(timeout=1)

    assert message.replies == ["Sorry alice, I encountered an error while processing your message."]


@pytest.mark.asyncio
async def test_busy_notice():
    orchestrator, _, _ = make_orchestrator(FakeBackend())
    message = FakeMessage(1, "<@99> hi", author=make_user(1, "bob"))

    await orchestrator.notify_busy(message)

    assert message.replies == ["Sorry bob, there are too many pending messages. Please try again later."]


def test_typing_delay_is_clamped():
    assert calculate_typing_delay("", lowest) == TYPING_MIN_DELAY
    assert calculate_typing_delay("x" * 5000, lowest) == TYPING_MAX_DELAY
    assert TYPING_MIN_DELAY <= calculate_typing_delay("a normal sized reply") <= TYPING_MAX_DELAY


@pytest.mark.asyncio
async def test_queued_message_is_answered_without_later_replies():
    client = FakeAnthropicClient(["hi bob"])
    backend = AnthropicBackend(
        client=client,
        retrier=FallbackRetrier(sleep=SleepRecorder()),
        text_ladder=ModelLadder("text", ["text-a"]),
        vision_ladder=ModelLadder("vision", ["vision-a"]),
    )
    orchestrator, history, _ = make_orchestrator(backend)
    first = FakeMessage(1, "<@99> hi", author=make_user(1, "alice"))
    second = FakeMessage(2, "<@99> me too", author=make_user(2, "bob"))
    await history.cache_message(KEY, first, bot_mentioned=True)
    await history.cache_message(KEY, second, bot_mentioned=True)
    # Reply to the first item lands before the second is processed
    await history.cache_message(KEY, FakeMessage(3, "hewwo alice", author=make_user(99, "SmolBot", bot=True)))

    await orchestrator.process(QueuedItem(second))

    sent = client.messages.calls[0]["messages"]
    assert sent == [{"role": "user", "content": "alice: <@99> hi\nbob: <@99> me too"}]
    assert second.replies == ["hi bob"]


@pytest.mark.asyncio
async def test_message_pushed_out_of_history_is_still_answered():
    backend = FakeBackend(["still here"])
    orchestrator, _, _ = make_orchestrator(backend)
    history = orchestrator.history = MessageHistory(max_messages=2)
    waiting = FakeMessage(1, "<@99> you there?", author=make_user(1, "alice"))
    await history.cache_message(KEY, waiting, bot_mentioned=True)
    await history.cache_message(KEY, FakeMessage(2, "spam", author=make_user(2, "bob")))
    await history.cache_message(KEY, FakeMessage(3, "more spam", author=make_user(2, "bob")))

    await orchestrator.process(QueuedItem(waiting))

    assert backend.calls[0]["turns"] == [{"role": "user", "content": "alice: <@99> you there?"}]
    assert waiting.replies == ["still here"]


@pytest.mark.asyncio
async def test_long_reply_is_cut_before_an_emote_tag():
    backend = FakeBackend(["a" * (DISCORD_MESSAGE_LIMIT - 5) + " :wave:"])
    orchestrator, _, _ = make_orchestrator(backend)
    message = FakeMessage(1, "<@99> talk a lot")

    await orchestrator.process(QueuedItem(message))

    assert message.replies == ["a" * (DISCORD_MESSAGE_LIMIT - 5) + " "]


def test_fit_message_cuts_plain_text_at_the_limit():
    assert fit_message("short") == "short"
    assert fit_message("b" * 2500) == "b" * DISCORD_MESSAGE_LIMIT
    assert fit_message("xx <:wave:123>", limit=8) == "xx "
