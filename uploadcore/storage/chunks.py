"""Chunk staging store"""

import asyncio
import errno
import hashlib
import shutil
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List
import logging

import aiofiles
import aiofiles.os

from ..exceptions import InvalidArgument, MissingChunk
from .paths import StorageLayout

logger = logging.getLogger(__name__)

READ_BLOCK = 64 * 1024  # 64KB


class ChunkStore(ABC):
    """
    Staging area mapping (session_id, chunk_index) -> bytes.
    Writing an index twice keeps only the last write.
    """

    @abstractmethod
    async def put(self, session_id: str, chunk_index: int, data: bytes) -> None:
        """Write or overwrite one staged chunk"""

    @abstractmethod
    async def get(self, session_id: str, chunk_index: int) -> bytes:
        """Read one staged chunk, MissingChunk if absent"""

    @abstractmethod
    async def exists(self, session_id: str, chunk_index: int) -> bool:
        pass

    @abstractmethod
    async def staged_indices(self, session_id: str) -> List[int]:
        """Sorted indices currently staged for a session"""

    @abstractmethod
    async def purge(self, session_id: str) -> None:
        """Delete every staged chunk of a session; no-op if none exist"""


class FileSystemChunkStore(ChunkStore):
    """Chunks as files under <root>/.staging/<session_id>/"""

    def __init__(self, layout: StorageLayout):
        self.layout = layout

    def _path(self, session_id: str, chunk_index: int) -> Path:
        if not isinstance(chunk_index, int) or chunk_index < 0:
            raise InvalidArgument(f"Invalid chunk index: {chunk_index!r}")
        return self.layout.chunk_path(session_id, chunk_index)

    async def put(self, session_id, chunk_index, data):
        path = self._path(session_id, chunk_index)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)

        if await aiofiles.os.path.exists(path):
            await self._check_overwrite(path, data, session_id, chunk_index)

        # Unique temp name: concurrent writers of one index never share a file
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            async with aiofiles.open(tmp_path, 'wb') as f:
                await f.write(data)
            await aiofiles.os.replace(tmp_path, path)
        except BaseException:
            await _remove_quietly(tmp_path)
            raise

        logger.debug(f"Staged chunk {chunk_index} of {session_id} ({len(data)} bytes)")

    async def _check_overwrite(self, path: Path, data: bytes,
                               session_id: str, chunk_index: int):
        """Flag a re-sent chunk whose bytes differ from the staged copy"""
        existing = hashlib.sha256()
        try:
            async with aiofiles.open(path, 'rb') as f:
                while block := await f.read(READ_BLOCK):
                    existing.update(block)
        except FileNotFoundError:
            return

        if existing.digest() != hashlib.sha256(data).digest():
            logger.warning(
                f"Chunk {chunk_index} of session {session_id} overwritten "
                f"with different content ({len(data)} bytes)"
            )
        else:
            logger.debug(f"Chunk {chunk_index} of {session_id} re-sent with identical bytes")

    async def get(self, session_id, chunk_index):
        path = self._path(session_id, chunk_index)
        try:
            async with aiofiles.open(path, 'rb') as f:
                return await f.read()
        except FileNotFoundError:
            raise MissingChunk(session_id, chunk_index) from None

    async def exists(self, session_id, chunk_index):
        return await aiofiles.os.path.isfile(self._path(session_id, chunk_index))

    async def staged_indices(self, session_id):
        staging_dir = self.layout.staging_dir(session_id)
        try:
            names = await aiofiles.os.listdir(staging_dir)
        except FileNotFoundError:
            return []

        indices = []
        for name in names:
            prefix, _, number = name.partition('-')
            if prefix == 'chunk' and number.isdigit():
                indices.append(int(number))
        return sorted(indices)

    async def purge(self, session_id):
        staging_dir = self.layout.staging_dir(session_id)
        await remove_tree(staging_dir)
        logger.debug(f"Purged staged chunks of {session_id}")


async def _remove_quietly(path: Path):
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass


async def remove_tree(path: Path, attempts: int = 3):
    """shutil.rmtree off the event loop, tolerant of a missing directory"""
    loop = asyncio.get_running_loop()
    for attempt in range(attempts):
        try:
            await loop.run_in_executor(None, shutil.rmtree, path)
            return
        except FileNotFoundError:
            return
        except OSError as e:
            # A concurrent chunk write landed mid-removal
            if e.errno != errno.ENOTEMPTY or attempt == attempts - 1:
                raise
