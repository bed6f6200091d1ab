import pytest

from bots.smolbot.history import IMAGE_TOO_LARGE, MessageHistory, truncate
from tests.fakes import FakeAttachment, FakeChannel, FakeMessage, make_user

KEY = "1:10"
BOT = make_user(99, "SmolBot", bot=True)
ALICE = make_user(1, "alice")
BOB = make_user(2, "bob")


class FakeVision:
    def __init__(self, fails=False):
        self.fails = fails
        self.calls = []

    async def __call__(self, url, detailed=False):
        self.calls.append((url, detailed))
        if self.fails:
            raise RuntimeError("vision down")
        return f"{'detailed' if detailed else 'brief'} view of {url.rsplit('/', 1)[-1]}"


@pytest.mark.asyncio
async def test_turns_use_names_and_roles():
    history = MessageHistory()
    await history.cache_message(KEY, FakeMessage(1, "hi smol", author=ALICE))
    await history.cache_message(KEY, FakeMessage(2, "hewwo", author=BOT))

    assert history.build_turns(KEY, bot_id=99) == [
        {"role": "user", "content": "alice: hi smol"},
        {"role": "assistant", "content": "SmolBot: hewwo"},
    ]


@pytest.mark.asyncio
async def test_history_is_bounded_per_channel():
    history = MessageHistory(max_messages=3)
    for i in range(5):
        await history.cache_message(KEY, FakeMessage(i, f"msg {i}"))
    await history.cache_message("1:20", FakeMessage(50, "other channel"))

    assert [m.content for m in history.messages(KEY)] == ["msg 2", "msg 3", "msg 4"]
    assert len(history.messages("1:20")) == 1


@pytest.mark.asyncio
async def test_same_message_is_not_stored_twice():
    history = MessageHistory()
    await history.cache_message(KEY, FakeMessage(1, "first"))
    await history.cache_message(KEY, FakeMessage(1, "edited"))

    assert [m.content for m in history.messages(KEY)] == ["edited"]


@pytest.mark.asyncio
async def test_long_content_is_truncated_in_turns():
    history = MessageHistory(max_message_length=10)
    await history.cache_message(KEY, FakeMessage(1, "abcdefghijklmnop", author=ALICE))

    assert history.build_turns(KEY)[0]["content"] == "alice: abcdefg..."
    assert truncate("short", 10) == "short"


@pytest.mark.asyncio
async def test_images_described_and_detailed_only_for_current_message():
    vision = FakeVision()
    history = MessageHistory(describe_image=vision)
    older = FakeMessage(1, "look", author=BOB, attachments=[FakeAttachment("https://cdn/old.png")])
    current = FakeMessage(2, "<@99> what is this", author=ALICE, attachments=[FakeAttachment("https://cdn/new.png")])

    await history.cache_message(KEY, older, bot_mentioned=True)
    await history.cache_message(KEY, current, bot_mentioned=True)

    turns = history.build_turns(KEY, current_message_id=2, bot_id=99)
    assert turns[0]["content"] == "bob: look\n[Image Description: brief view of old.png]"
    assert turns[1]["content"] == "alice: <@99> what is this\n[Image Description: detailed view of new.png]"


@pytest.mark.asyncio
async def test_unmentioned_messages_only_get_brief_descriptions():
    vision = FakeVision()
    history = MessageHistory(describe_image=vision)
    await history.cache_message(KEY, FakeMessage(1, "", attachments=[FakeAttachment()]))

    assert vision.calls == [("https://cdn.example/cat.png", False)]


@pytest.mark.asyncio
async def test_non_image_and_oversized_attachments():
    vision = FakeVision()
    history = MessageHistory(describe_image=vision, max_image_bytes=100)
    attachments = [
        FakeAttachment("https://cdn/notes.txt", content_type="text/plain"),
        FakeAttachment("https://cdn/huge.png", size=101),
        FakeAttachment("https://cdn/ok.jpg", content_type="image/jpeg; charset=binary", size=50),
    ]

    cached = await history.cache_message(KEY, FakeMessage(1, "files", attachments=attachments))

    assert [d.brief for d in cached.image_descriptions] == [IMAGE_TOO_LARGE, "brief view of ok.jpg"]
    assert vision.calls == [("https://cdn/ok.jpg", False)]


@pytest.mark.asyncio
async def test_vision_failure_omits_description():
    history = MessageHistory(describe_image=FakeVision(fails=True))
    cached = await history.cache_message(KEY, FakeMessage(1, "pic", attachments=[FakeAttachment()]))

    assert cached.image_descriptions == []
    assert history.build_turns(KEY)[0]["content"] == "alice: pic"


@pytest.mark.asyncio
async def test_referenced_message_is_included():
    vision = FakeVision()
    history = MessageHistory(describe_image=vision)
    original = FakeMessage(5, "smol said a thing", author=BOT, attachments=[FakeAttachment("https://cdn/meme.png")])
    reply = FakeMessage(6, "lol what", author=ALICE, referenced=original)

    cached = await history.cache_message(KEY, reply)

    assert cached.referenced.author_id == "99"
    assert history.build_turns(KEY, current_message_id=6)[0]["content"] == (
        "alice: lol what\n"
        "[Referenced Message from SmolBot: smol said a thing]\n"
        "[Referenced Image Description: brief view of meme.png]"
    )


@pytest.mark.asyncio
async def test_reference_fetch_failure_is_ignored():
    history = MessageHistory()
    cached = await history.cache_message(KEY, FakeMessage(6, "replying", reference_fails=True))

    assert cached.referenced is None
    assert history.build_turns(KEY)[0]["content"] == "alice: replying"


@pytest.mark.asyncio
async def test_ensure_channel_backfills_once_in_order():
    channel = FakeChannel(history=[FakeMessage(1, "old", author=BOB), FakeMessage(2, "newer", author=ALICE)])
    history = MessageHistory()

    await history.ensure_channel(KEY, channel)
    await history.ensure_channel(KEY, channel)

    assert channel.fetch_calls == 1
    assert [m.content for m in history.messages(KEY)] == ["old", "newer"]


@pytest.mark.asyncio
async def test_ensure_channel_failure_is_ignored():
    channel = FakeChannel(fetch_fails=True)
    history = MessageHistory()

    await history.ensure_channel(KEY, channel)

    assert history.messages(KEY) == []


@pytest.mark.asyncio
async def test_turns_stop_at_the_message_being_answered():
    history = MessageHistory()
    await history.cache_message(KEY, FakeMessage(1, "<@99> first", author=ALICE))
    await history.cache_message(KEY, FakeMessage(2, "<@99> second", author=BOB))
    await history.cache_message(KEY, FakeMessage(3, "hi alice", author=BOT))

    assert history.build_turns(KEY, current_message_id=1, bot_id=99) == [
        {"role": "user", "content": "alice: <@99> first"},
    ]


@pytest.mark.asyncio
async def test_turns_for_evicted_message_use_its_own_content():
    history = MessageHistory(max_messages=2)
    waiting = FakeMessage(1, "<@99> still there?", author=ALICE)
    await history.cache_message(KEY, waiting)
    await history.cache_message(KEY, FakeMessage(2, "newer", author=BOB))
    await history.cache_message(KEY, FakeMessage(3, "newest", author=BOB))

    assert history.turns_for(KEY, waiting, bot_id=99) == [
        {"role": "user", "content": "alice: <@99> still there?"},
    ]
