"""Per-agent, per-channel record of the last processed Discord message."""

import json
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


class CursorStore:
    """Durable cursor map backed by one JSON file per agent.

    The file maps channel id (string) to the last processed message id
    (string). It is always read and written whole, and writes go through a
    temporary file plus ``os.replace`` so a concurrent reader never observes
    a partial file.
    """

    def __init__(self, directory: str | Path = "data/persistence"):
        self.directory = Path(directory).expanduser()

    def path_for(self, agent: str) -> Path:
        return self.directory / f"last_processed_messages_{agent}.json"

    def load(self, agent: str) -> dict[str, int]:
        """Load every cursor for an agent as ``{channel_id: message_id}``."""
        path = self.path_for(agent)
        if not path.exists():
            return {}
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading cursors from {path}: {e}")
            return {}
        if not isinstance(raw, dict):
            logger.error(f"Ignoring malformed cursor file {path}")
            return {}

        cursors: dict[str, int] = {}
        for channel_id, message_id in raw.items():
            try:
                cursors[str(channel_id)] = int(message_id)
            except (TypeError, ValueError):
                logger.warning(f"Skipping invalid cursor {channel_id}={message_id!r} in {path}")
        return cursors

    def get(self, agent: str, channel_id: int | str) -> int | None:
        return self.load(agent).get(str(channel_id))

    def set(self, agent: str, channel_id: int | str, message_id: int | str) -> bool:
        """Advance the cursor for a channel.

        A stale write (an id lower than or equal to the stored one) is ignored,
        so the cursor never moves backward.

        Returns:
            True if the stored cursor changed
        """
        message_id = int(message_id)
        cursors = self.load(agent)
        current = cursors.get(str(channel_id))
        if current is not None and message_id <= current:
            if message_id < current:
                logger.debug(
                    f"Ignoring stale cursor write for {channel_id}: {message_id} < {current}"
                )
            return False

        cursors[str(channel_id)] = message_id
        self._write(agent, cursors)
        logger.debug(f"Cursor for {agent}/{channel_id} advanced to {message_id}")
        return True

    def _write(self, agent: str, cursors: dict[str, int]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(agent)
        data = {channel_id: str(message_id) for channel_id, message_id in cursors.items()}
        fd, tmp_name = tempfile.mkstemp(prefix=path.name, suffix=".tmp", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
