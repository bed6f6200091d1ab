"""
JSON persistence for emote usage counts.

The file is a flat object of name -> count. A missing, empty or corrupt
file loads as an empty table so startup never fails on it; writes go to a
temp file that replaces the real one, so a crash mid-write leaves the old
rankings intact.
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from .records import normalize

logger = logging.getLogger(__name__)


class RankingStore:
    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> dict[str, int]:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info(f"No emoji rankings at {self.path}, starting empty")
            return {}
        except OSError as e:
            logger.error(f"Failed to read emoji rankings {self.path}: {e}")
            return {}

        if not content.strip():
            return {}

        try:
            data = json.loads(content)
        except ValueError as e:
            logger.warning(f"Failed to parse rankings file ({e}), starting empty. Content: {content[:100]!r}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Invalid rankings format in {self.path}: expected an object")
            return {}

        rankings: dict[str, int] = {}
        for name, count in data.items():
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                logger.debug(f"Skipping invalid ranking entry {name!r}: {count!r}")
                continue
            # Older files may hold the same emote under two casings
            key = normalize(name)
            rankings[key] = max(rankings.get(key, 0), count)

        logger.info(f"Loaded {len(rankings)} emoji rankings from {self.path}")
        return rankings

    def save(self, rankings: dict[str, int]) -> None:
        """Atomically write *rankings*. Raises OSError on failure."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=f".{self.path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(rankings, fh, indent=2, sort_keys=True)
            Path(temp_path).replace(self.path)
        except BaseException:
            Path(temp_path).unlink(missing_ok=True)
            raise
