"""
Emote popularity tracking.

PopularityCache owns three pieces of state:

- known records: every custom emote the bot can render, one entry per
  lower-cased name, grouped by the guild they came from
- rankings: name -> usage count, the durable source of truth, persisted
  to JSON through a RankingStore
- hot set: the top emotes by count, rebuilt from the two above and used
  to tell the model which emotes are worth using

Usage:
    cache = PopularityCache(RankingStore(EMOJI_RANKINGS_PATH))
    cache.ingest_known_symbols(str(guild.id), records)
    cache.start()                       # periodic save + hot set rebuild
    text = cache.rewrite(reply_text, attributed_to_self=True)
    await cache.close()
"""

import asyncio
import contextlib
import logging
import threading
import time
from dataclasses import replace
from typing import Iterable, Optional

from common.config import EMOJI_SAVE_INTERVAL, EMOJI_UPDATE_INTERVAL, MAX_DISPLAYED_EMOJIS

from .records import SymbolRecord, is_valid_name, normalize
from .store import RankingStore
from .tokenizer import Segment, SegmentKind, tokenize

logger = logging.getLogger(__name__)


class PopularityCache:
    def __init__(
        self,
        store: Optional[RankingStore] = None,
        max_hot: int = MAX_DISPLAYED_EMOJIS,
        save_interval: float = EMOJI_SAVE_INTERVAL,
        update_interval: float = EMOJI_UPDATE_INTERVAL,
    ):
        self._store = store
        self.max_hot = max_hot
        self._save_interval = save_interval
        self._update_interval = update_interval

        # Guards rankings, records and the hot set if touched from threads
        self._lock = threading.RLock()
        self._records: dict[str, SymbolRecord] = {}
        self._rankings: dict[str, int] = store.load() if store else {}
        self._hot: list[SymbolRecord] = []

        self.last_self_used: Optional[str] = None

        self._dirty = False
        self._persist_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._last_save_log = 0.0

    # ============== RANKINGS ==============

    def count(self, name: str) -> int:
        return self._rankings.get(normalize(name), 0)

    def snapshot(self) -> dict[str, int]:
        """Copy of the ranking table, safe to serialize at any time."""
        with self._lock:
            return dict(self._rankings)

    def record_use(self, name: str, attributed_to_self: bool = False) -> None:
        """Count one use of *name*. The bot's own emotes never count."""
        if attributed_to_self:
            return

        key = normalize(name)
        with self._lock:
            new_count = self._rankings.get(key, 0) + 1
            self._rankings[key] = new_count
            if self._could_enter_hot_set(new_count):
                self.recompute_hot_set()

        if new_count % 10 == 0:
            logger.debug(f"Emoji usage milestone: :{name}: used {new_count} times")

        self._schedule_persist()

    def _could_enter_hot_set(self, count: int) -> bool:
        if len(self._hot) < self.max_hot:
            return True
        lowest = min(self._rankings.get(record.key, 0) for record in self._hot)
        return count >= lowest

    # ============== HOT SET ==============

    def recompute_hot_set(self) -> None:
        with self._lock:
            ranked = sorted(
                self._records.values(),
                key=lambda record: (-self._rankings.get(record.key, 0), record.key),
            )
            self._hot = ranked[:self.max_hot]

    @property
    def hot_set(self) -> list[SymbolRecord]:
        with self._lock:
            return list(self._hot)

    def hot_set_display(self, exclude_last_used: bool = False) -> list[str]:
        """Hot emote names, most used first, for the prompt's emote list."""
        names = []
        for record in self.hot_set:
            if exclude_last_used and record.key == self.last_self_used:
                continue
            names.append(record.canonical_name)
        return names

    # ============== KNOWN EMOTES ==============

    def ingest_known_symbols(self, origin_group: str, records: Iterable[SymbolRecord]) -> int:
        """
        Replace the emotes known for one guild.

        Emotes from other guilds are kept. A name shared by two guilds keeps
        a single entry, owned by whichever guild was ingested last. Counts of
        names already ranked are never reset.

        Returns the number of emotes accepted.
        """
        origin_group = str(origin_group)
        incoming: dict[str, SymbolRecord] = {}
        for record in records:
            if not is_valid_name(record.canonical_name) or not record.external_id:
                logger.warning(
                    f"Skipping invalid emoji {record.canonical_name!r} ({record.external_id}) in {origin_group}"
                )
                continue
            if record.origin_group != origin_group:
                record = replace(record, origin_group=origin_group)
            incoming[record.key] = record

        new_names = 0
        with self._lock:
            previous_size = len(self._records)
            stale = [
                key for key, record in self._records.items()
                if record.origin_group == origin_group and key not in incoming
            ]
            for key in stale:
                del self._records[key]

            for key, record in incoming.items():
                existing = self._records.get(key)
                if existing and existing.origin_group != origin_group:
                    logger.debug(
                        f"Emoji :{record.canonical_name}: from {origin_group} "
                        f"replaces the one from {existing.origin_group}"
                    )
                self._records[key] = record
                if key not in self._rankings:
                    self._rankings[key] = 0
                    new_names += 1

            self.recompute_hot_set()
            cache_size = len(self._records)

        logger.info(
            f"Updated emoji cache for {origin_group}: {len(incoming)} emojis, "
            f"{len(stale)} removed, {new_names} newly ranked, cache {previous_size} -> {cache_size}"
        )
        if new_names:
            self._schedule_persist()
        return len(incoming)

    def lookup(self, name: str) -> Optional[SymbolRecord]:
        return self._records.get(normalize(name))

    # ============== TEXT REWRITING ==============

    def rewrite(self, text: str, attributed_to_self: bool = False) -> str:
        """
        Turn :name: tokens into Discord emote tags and count emote usage.

        Known bare tokens become <:name:id> / <a:name:id>. Existing tags are
        counted when they match a known emote and are always kept as they
        are. Anything unrecognized is left untouched.
        """
        if not text:
            return ""

        parts = []
        for segment in tokenize(text):
            if segment.kind is SegmentKind.BARE:
                parts.append(self._resolve_bare(segment, attributed_to_self))
            elif segment.kind is SegmentKind.CANONICAL:
                self._verify_canonical(segment, attributed_to_self)
                parts.append(segment.text)
            else:
                parts.append(segment.text)
        return "".join(parts)

    def _resolve_bare(self, segment: Segment, attributed_to_self: bool) -> str:
        if not is_valid_name(segment.name):
            logger.debug(f"Invalid emoji name: {segment.name!r}")
            return segment.text

        record = self.lookup(segment.name)
        if record is None:
            logger.debug(f"Emoji :{segment.name}: not found in cache ({len(self._records)} known)")
            return segment.text

        self._note_use(record, attributed_to_self)
        return record.tag()

    def _verify_canonical(self, segment: Segment, attributed_to_self: bool) -> None:
        record = self.lookup(segment.name)
        if record is None or record.external_id != segment.external_id:
            logger.debug(f"Pre-formatted emoji {segment.text} not found in cache")
            return
        self._note_use(record, attributed_to_self)

    def _note_use(self, record: SymbolRecord, attributed_to_self: bool) -> None:
        self.record_use(record.canonical_name, attributed_to_self)
        if attributed_to_self:
            self.last_self_used = record.key

    # ============== STATS ==============

    def stats(self) -> dict:
        with self._lock:
            ranked = sorted(self._rankings.items(), key=lambda item: (-item[1], item[0]))
            return {
                "total_emojis": len(self._rankings),
                "known_emojis": len(self._records),
                "top_emojis": dict(ranked[:10]),
                "total_usage": sum(self._rankings.values()),
            }

    # ============== PERSISTENCE ==============

    def _schedule_persist(self) -> None:
        self._dirty = True
        if self._store is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: picked up by flush() / flush_sync()
            return
        if self._persist_task is None or self._persist_task.done():
            self._persist_task = loop.create_task(self._persist())

    async def _persist(self) -> None:
        while self._dirty and self._store is not None:
            self._dirty = False
            snapshot = self.snapshot()
            try:
                await asyncio.to_thread(self._store.save, snapshot)
            except Exception as e:
                self._dirty = True
                logger.error(f"Error saving emoji rankings: {e}", exc_info=True)
                return

            # Only log hourly
            now = time.monotonic()
            if not self._last_save_log or now - self._last_save_log > 3600:
                logger.debug(f"Saved {len(snapshot)} emoji rankings")
                self._last_save_log = now

    async def flush(self) -> None:
        """Wait for any pending write, then write again if still dirty."""
        if self._persist_task is not None and not self._persist_task.done():
            await self._persist_task
        if self._dirty:
            await self._persist()

    def flush_sync(self) -> None:
        """Blocking save for signal/atexit handlers where no loop is running."""
        if self._store is None or not self._dirty:
            return
        try:
            self._store.save(self.snapshot())
            self._dirty = False
        except OSError as e:
            logger.error(f"Error saving emoji rankings on shutdown: {e}")

    # ============== LIFECYCLE ==============

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(self._maintenance_loop())

    async def _maintenance_loop(self) -> None:
        last_rebuild = time.monotonic()
        while True:
            await asyncio.sleep(self._save_interval)
            await self.flush()
            if time.monotonic() - last_rebuild >= self._update_interval:
                self.recompute_hot_set()
                last_rebuild = time.monotonic()
                logger.debug(f"Rebuilt emoji hot set ({len(self._hot)} emojis)")

    async def close(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
        await self.flush()
