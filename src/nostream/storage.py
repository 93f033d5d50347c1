"""
Nostream - Chat state persistence.

Stores the chat store layout (conversation tag -> ChatRecord) as a JSON
file. Writes go to a temporary file first and are moved into place with
an atomic rename, so a crash never leaves a half-written file behind.
"""

import asyncio
import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles

from .errors import ErrorCode, StorageFailure

logger = logging.getLogger(__name__)


class ChatStorage:
    """JSON file backend for persisted chat records."""

    def __init__(self, path: Path):
        """
        Initialize chat storage.

        Args:
            path: Path to the JSON data file
        """
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def load(self) -> Dict[str, Any]:
        """Load persisted state.

        Returns:
            Persisted layout, or an empty dict when the file is missing or
            corrupted

        Raises:
            StorageFailure: If the file exists but cannot be read
        """
        if not self.path.exists():
            logger.debug(f"Chat data file does not exist: {self.path}")
            return {}

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except OSError as e:
            logger.error(f"Failed to read chat data: {e}")
            raise StorageFailure(
                ErrorCode.E601_STORAGE_LOAD_FAILED,
                f"Cannot load chat data: {e}",
                {"path": str(self.path)},
            ) from e
        except json.JSONDecodeError as e:
            # Start empty rather than refusing to run on a corrupted cache
            logger.warning(f"Corrupted chat data file, starting empty: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning("Chat data file does not contain an object, starting empty")
            return {}
        return data

    def _serialize(self, data: Dict[str, Any]) -> str:
        return json.dumps(data, indent=2, ensure_ascii=False)

    def _save_failed(self, e: Exception) -> StorageFailure:
        logger.error(f"Failed to save chat data: {e}")
        return StorageFailure(
            ErrorCode.E602_STORAGE_SAVE_FAILED,
            f"Cannot save chat data: {e}",
            {"path": str(self.path)},
        )

    def _temp_file(self) -> str:
        """Create a uniquely named temp file beside the data file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_file = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        os.close(fd)
        return temp_file

    @staticmethod
    def _discard(temp_file: Optional[str]) -> None:
        if temp_file is not None:
            with contextlib.suppress(OSError):
                os.unlink(temp_file)

    async def save(self, data: Dict[str, Any]) -> None:
        """Save state asynchronously.

        Concurrent saves are serialized; the last one to run wins.

        Raises:
            StorageFailure: If writing fails
        """
        async with self._lock:
            temp_file = None
            try:
                content = self._serialize(data)
                temp_file = self._temp_file()
                async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                    await f.write(content)
                os.replace(temp_file, self.path)
            except (OSError, TypeError, ValueError) as e:
                self._discard(temp_file)
                raise self._save_failed(e) from e

        logger.debug(f"Saved chat data to {self.path}")

    def save_sync(self, data: Dict[str, Any]) -> None:
        """Save state synchronously (used at shutdown and by the CLI)."""
        temp_file = None
        try:
            content = self._serialize(data)
            temp_file = self._temp_file()
            with open(temp_file, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(temp_file, self.path)
        except (OSError, TypeError, ValueError) as e:
            self._discard(temp_file)
            raise self._save_failed(e) from e

    def clear(self) -> None:
        """Delete the data file if present."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageFailure(
                ErrorCode.E600_STORAGE_ERROR,
                f"Cannot delete chat data: {e}",
                {"path": str(self.path)},
            ) from e
        logger.info(f"Cleared chat data: {self.path}")
