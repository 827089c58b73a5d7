"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for the two storage areas the compositor needs:
uploaded source images, and one output directory per session.
LocalStorage is the only implementation; the interface keeps the
dispatcher independent of the filesystem.
"""

import asyncio
import shutil
import time
import random
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from src.core.config import settings
from src.core.logging import get_logger
from src.core.exceptions import ResourceMissingError

logger = get_logger(__name__)


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def save_upload(self, file_data: bytes, filename: str) -> str:
        """
        Store an uploaded source image and return its path.

        Args:
            file_data: Raw bytes of the file
            filename: Original filename (kept as a suffix for readability)

        Returns:
            Path of the stored file
        """
        pass

    @abstractmethod
    async def create_session(self, session_id: str) -> str:
        """Create a session's output area and return its path."""
        pass

    @abstractmethod
    async def write_output(self, session_id: str, name: str, data: bytes) -> str:
        """
        Persist one produced image into the session's output area.

        The area must already exist; an expired session is never recreated.

        Returns:
            Path of the written file
        """
        pass

    @abstractmethod
    async def list_outputs(self, session_id: str) -> Optional[List[Path]]:
        """List a session's outputs; None when the output area is gone."""
        pass

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool:
        """Remove a session's output area. True if something was removed."""
        pass

    @abstractmethod
    async def delete_file(self, path: str) -> bool:
        """Delete a single file. True if it existed and was removed."""
        pass

    @abstractmethod
    def is_upload_path(self, path: str) -> bool:
        """Check that a path points inside the upload area."""
        pass


class LocalStorage(IStorage):
    """Local filesystem storage implementation."""

    def __init__(self, upload_dir: str = "./data/uploads", output_dir: str = "./data/sessions"):
        self.upload_dir = Path(upload_dir).resolve()
        self.output_dir = Path(output_dir).resolve()
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def _get_unique_filename(self, filename: str) -> str:
        """Prefix with time and a random number, keep the original name."""
        safe_name = Path(filename).name or "upload"
        unique_suffix = f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}"
        return f"{unique_suffix}-{safe_name}"

    def session_dir(self, session_id: str) -> Path:
        # Session ids are hex, but never trust a path component
        name = Path(session_id).name
        if name in ("", ".", ".."):
            raise ResourceMissingError(f"Invalid session id: {session_id!r}")
        return self.output_dir / name

    async def save_upload(self, file_data: bytes, filename: str) -> str:
        file_path = self.upload_dir / self._get_unique_filename(filename)
        await asyncio.to_thread(file_path.write_bytes, file_data)
        return str(file_path)

    async def create_session(self, session_id: str) -> str:
        folder_path = self.session_dir(session_id)
        await asyncio.to_thread(folder_path.mkdir, parents=True, exist_ok=True)
        return str(folder_path)

    async def write_output(self, session_id: str, name: str, data: bytes) -> str:
        folder_path = self.session_dir(session_id)
        file_path = folder_path / Path(name).name

        def _write():
            if not folder_path.is_dir():
                raise FileNotFoundError(f"Session output area is gone: {folder_path}")
            file_path.write_bytes(data)

        await asyncio.to_thread(_write)
        return str(file_path)

    async def list_outputs(self, session_id: str) -> Optional[List[Path]]:
        folder_path = self.session_dir(session_id)

        def _list():
            if not folder_path.is_dir():
                return None
            return sorted(
                p for p in folder_path.iterdir()
                if p.is_file() and not p.name.startswith(".")
            )

        return await asyncio.to_thread(_list)

    async def delete_session(self, session_id: str) -> bool:
        folder_path = self.session_dir(session_id)
        if not folder_path.exists():
            return False
        await asyncio.to_thread(shutil.rmtree, folder_path, ignore_errors=True)
        logger.info("session_storage_removed", session_id=session_id)
        return True

    async def delete_file(self, path: str) -> bool:
        file_path = Path(path)
        if not file_path.exists():
            return False
        await asyncio.to_thread(file_path.unlink)
        return True

    def is_upload_path(self, path: str) -> bool:
        try:
            return Path(path).resolve().is_relative_to(self.upload_dir)
        except (OSError, ValueError):
            return False


class StorageFactory:
    """Factory for the process-wide storage instance."""

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls) -> IStorage:
        if cls._instance is None:
            cls._instance = LocalStorage(
                upload_dir=settings.UPLOAD_DIR,
                output_dir=settings.OUTPUT_DIR
            )
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None


def get_storage() -> IStorage:
    """Get the storage instance - ready for FastAPI Depends()."""
    return StorageFactory.get_storage()
