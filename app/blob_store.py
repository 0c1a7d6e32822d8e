"""
Local disk storage for uploaded file payloads.
"""
import asyncio
import logging
import os
import uuid
from pathlib import Path

from errors import TransientError
from security import validate_path_traversal

logger = logging.getLogger(__name__)

STORAGE_PATH = Path(os.getenv("STORAGE_PATH", str(Path(__file__).parent / "storage")))


class LocalBlobStore:
    """
    Stores each blob under a random UUID name, so the locator never
    contains user input.
    """

    def __init__(self, root: Path = STORAGE_PATH):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, locator: str) -> Path:
        """Resolve a locator inside the storage root. Raises ValueError otherwise."""
        return validate_path_traversal(self.root, locator)

    async def put(self, data: bytes) -> str:
        locator = str(uuid.uuid4())
        path = self.path_for(locator)
        try:
            await asyncio.to_thread(path.write_bytes, data)
        except OSError as e:
            raise TransientError(f"Could not store blob: {e}") from e
        logger.debug(f"Stored blob {locator} ({len(data)} bytes)")
        return locator

    async def delete(self, locator: str):
        """Delete a blob. A blob that is already gone counts as deleted."""
        path = self.path_for(locator)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return
        except OSError as e:
            raise TransientError(f"Could not delete blob {locator}: {e}") from e

    def exists(self, locator: str) -> bool:
        try:
            return self.path_for(locator).is_file()
        except ValueError:
            return False
