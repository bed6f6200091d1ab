"""
SmolBot - a Smol Brain persona bot for Discord.
Responds when mentioned or replied to, describes images, and uses the
server's most popular custom emotes.

Setup:
    1. Create a Discord application and bot with the Message Content intent
    2. Put DISCORD_TOKEN and ANTHROPIC_API_KEY in .env
    3. Optionally edit bots/smolbot/system_prompt.txt
    4. Run: python -m bots.smolbot.smolbot   (or python run_all.py)
"""

import asyncio
import atexit
import logging
import signal
import sys
import time
from dataclasses import dataclass
from typing import Optional

import aiohttp
import anthropic
from interactions import (
    Client,
    Embed,
    Intents,
    IntervalTrigger,
    SlashContext,
    Task,
    listen,
    slash_command,
)
from interactions.api.events import MessageCreate

from common.config import (
    ANTHROPIC_API_KEY,
    DATA_DIR,
    DISCORD_TOKEN,
    EMOJI_RANKINGS_PATH,
    EMOJI_REFRESH_MINUTES,
    LOG_FILE,
    PERSONA_PROMPT_PATH,
    PORT,
    TEXT_MODELS,
    VISION_MODELS,
    require_env,
)
from common.logger import setup_logging
from emotes import PopularityCache, RankingStore, SymbolRecord
from queueing import QueueManager
from upstream import AnthropicBackend, FallbackRetrier, ModelLadder

from bots.smolbot.events import channel_key, is_bot_mentioned
from bots.smolbot.health import HealthServer
from bots.smolbot.history import MessageHistory
from bots.smolbot.orchestrator import ResponseOrchestrator
from bots.smolbot.prompts import load_persona_prompt

setup_logging(level=logging.INFO, log_file=LOG_FILE)
logger = logging.getLogger("smolbot")

client = Client(
    token=DISCORD_TOKEN or None,
    intents=Intents.GUILDS | Intents.GUILD_MESSAGES | Intents.MESSAGE_CONTENT |
            Intents.DIRECT_MESSAGES | Intents.GUILD_EMOJIS_AND_STICKERS,
)


# ============== SERVICES ==============

@dataclass
class SmolServices:
    backend: AnthropicBackend
    history: MessageHistory
    popularity: PopularityCache
    orchestrator: ResponseOrchestrator
    queues: QueueManager
    health: HealthServer


services: Optional[SmolServices] = None


def build_services() -> SmolServices:
    """Wire every collaborator together. Nothing here touches the network."""
    backend = AnthropicBackend(
        client=anthropic.AsyncAnthropic(api_key=ANTHROPIC_API_KEY, max_retries=0),
        retrier=FallbackRetrier(),
        text_ladder=ModelLadder("text", TEXT_MODELS),
        vision_ladder=ModelLadder("vision", VISION_MODELS),
    )
    history = MessageHistory(describe_image=backend.describe_image)
    popularity = PopularityCache(RankingStore(EMOJI_RANKINGS_PATH))
    orchestrator = ResponseOrchestrator(
        backend=backend,
        history=history,
        popularity=popularity,
        persona_prompt=load_persona_prompt(PERSONA_PROMPT_PATH),
    )
    queues = QueueManager(orchestrator.process, on_failure=orchestrator.notify_failure)

    svc = SmolServices(backend, history, popularity, orchestrator, queues, health=None)
    svc.health = HealthServer(PORT, status=lambda: status_snapshot(svc))
    return svc


def status_snapshot(svc: SmolServices) -> dict:
    emote_stats = svc.popularity.stats()
    return {
        "queues": svc.queues.stats(),
        "models": svc.backend.models(),
        "emojis": {
            "known": emote_stats["known_emojis"],
            "ranked": emote_stats["total_emojis"],
            "total_usage": emote_stats["total_usage"],
        },
    }


async def ingest_guild_emotes(guild) -> int:
    emojis = await guild.fetch_all_custom_emojis()
    records = [SymbolRecord.from_emoji(emoji, str(guild.id)) for emoji in emojis]
    return services.popularity.ingest_known_symbols(str(guild.id), records)


@Task.create(IntervalTrigger(minutes=EMOJI_REFRESH_MINUTES))
async def refresh_emotes():
    """Pick up emotes added or removed since the last refresh."""
    if services is None:
        return
    for guild in client.guilds:
        try:
            await ingest_guild_emotes(guild)
        except Exception as e:
            logger.error(f"Failed to refresh emojis for guild {guild.id}: {e}")


# ============== EVENT HANDLERS ==============

@listen()
async def on_startup():
    """Called once when the bot has connected."""
    global services

    if services is not None:
        # Restarted inside the same process: old tasks died with the old loop
        services.popularity.flush_sync()
    services = build_services()
    services.orchestrator.set_identity(client.user.id, client.user.username)

    logger.info(f"Logged in as {client.user.username} (ID: {client.user.id})")
    logger.info(f"Text models: {', '.join(TEXT_MODELS)}")
    logger.info(f"Vision models: {', '.join(VISION_MODELS)}")

    total = 0
    for guild in client.guilds:
        try:
            total += await ingest_guild_emotes(guild)
        except Exception as e:
            logger.error(f"Failed to load emojis for guild {guild.id}: {e}")
    logger.info(f"Initialization complete: {len(client.guilds)} guilds, {total} emojis")

    services.popularity.start()
    refresh_emotes.start()

    try:
        await services.health.start()
    except OSError as e:
        logger.error(f"Health check server failed to start on port {PORT}: {e}")


@listen()
async def on_message_create(event: MessageCreate):
    """Track emotes, cache every message, and queue the ones addressed to the bot."""
    message = event.message
    if services is None:
        return

    try:
        key = channel_key(message)
        bot_id = str(client.user.id)
        author_id = str(message.author.id)

        await services.history.ensure_channel(key, message.channel)

        # Usage tracking only, the rewritten text is not used
        if not message.author.bot:
            services.popularity.rewrite(message.content or "", attributed_to_self=False)

        mentioned = is_bot_mentioned(message.content, bot_id)
        cached = await services.history.cache_message(key, message, bot_mentioned=mentioned)

        if author_id == bot_id or message.author.bot:
            return

        replied_to_bot = cached.referenced is not None and cached.referenced.author_id == bot_id
        if not (mentioned or replied_to_bot):
            return

        if not services.queues.admit(key, message):
            await services.orchestrator.notify_busy(message)
    except Exception as e:
        logger.error(f"Error handling message {message.id}: {e}", exc_info=True)


# ============== SLASH COMMANDS ==============

@slash_command(
    name="smol_status",
    description="Check SmolBot's queues, models and emotes",
)
async def status_cmd(ctx: SlashContext):
    """Show bot status."""
    if services is None:
        await ctx.send("Still starting up, try again in a moment.", ephemeral=True)
        return

    queue_stats = services.queues.stats()
    models = services.backend.models()
    emote_stats = services.popularity.stats()

    embed = Embed(title="SmolBot Status", color=0x9c92d1)

    pending = queue_stats["pending"]
    embed.add_field(
        name="Queues",
        value=f"Channels: {queue_stats['channels']}\n"
              f"Active workers: {queue_stats['active_workers']}\n"
              f"Pending: {sum(pending.values())}",
        inline=True
    )

    embed.add_field(
        name="Models",
        value=f"Text: {models['text']}\n"
              f"Vision: {models['vision']}",
        inline=True
    )

    top = ", ".join(f":{name}: ({count})" for name, count in list(emote_stats["top_emojis"].items())[:5])
    embed.add_field(
        name="Emotes",
        value=f"Known: {emote_stats['known_emojis']}\n"
              f"Ranked: {emote_stats['total_emojis']}\n"
              f"Total usage: {emote_stats['total_usage']}\n"
              f"Top: {top or 'none yet'}",
        inline=False
    )

    await ctx.send(embed=embed, ephemeral=True)


# ============== SHUTDOWN ==============

def cleanup():
    """Save emote rankings before the process exits."""
    if services is not None:
        logger.info("Cleaning up...")
        services.popularity.flush_sync()


def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info(f"Received {sig_name}, shutting down gracefully...")
    cleanup()
    sys.exit(0)


# Transient network errors that warrant an automatic restart
RESTARTABLE_EXCEPTIONS = (
    aiohttp.ClientConnectorError,
    aiohttp.ClientOSError,
    aiohttp.ServerDisconnectedError,
    ConnectionResetError,
    OSError,
)

MAX_BACKOFF_SECONDS = 300  # 5 minute cap


# ============== RUN ==============

if __name__ == "__main__":
    try:
        require_env()
    except RuntimeError as e:
        print("=" * 50)
        print(f"ERROR: {e}")
        print("Set them in .env or the environment")
        print("=" * 50)
        sys.exit(1)

    DATA_DIR.mkdir(parents=True, exist_ok=True)

    atexit.register(cleanup)
    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    consecutive_failures = 0
    while True:
        try:
            logger.info("Starting SmolBot...")
            client.start()
            logger.info("Bot stopped cleanly, exiting.")
            break
        except RESTARTABLE_EXCEPTIONS as exc:
            consecutive_failures += 1
            backoff = min(2 ** consecutive_failures, MAX_BACKOFF_SECONDS)
            logger.warning(
                f"Bot crashed with transient error ({type(exc).__name__}: {exc}). "
                f"Restarting in {backoff}s (attempt #{consecutive_failures})..."
            )
            time.sleep(backoff)
            # Re-create the event loop since the old one is closed after start()
            asyncio.set_event_loop(asyncio.new_event_loop())
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt, exiting.")
            break
