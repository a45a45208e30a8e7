"""
Ordered, crash-safe chunk assembly

Chunks are concatenated strictly by index into a hidden temp file next to
the final path. The temp file is fsync'ed and renamed over the final path
only after every chunk was written; on any failure it is removed and the
staged chunks stay in place so finalize can be retried.
"""

import asyncio
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
import logging

import aiofiles
import aiofiles.os

from ..exceptions import IncompleteUpload, InvalidArgument, MissingChunk
from ..storage.chunks import ChunkStore, remove_tree
from ..storage.mime import extension, get_mime_type
from ..storage.paths import StorageLayout, ORIGINAL, THUMBNAIL, public_path, safe_file_name
from .thumbnail import DerivativeGenerator

logger = logging.getLogger(__name__)

PUBLIC_URL_PREFIX = "/files"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, timezone.utc)


@dataclass
class AssembledFile:
    """A durable, fully assembled upload"""
    file_id: str
    name: str
    size: int
    mime_type: str
    owner_id: str
    path: Path
    public_path: str
    thumbnail_path: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def type(self) -> str:
        return extension(self.name)

    @property
    def url(self) -> str:
        return f"{PUBLIC_URL_PREFIX}/{self.public_path}"

    @property
    def thumbnail_url(self) -> Optional[str]:
        if not self.thumbnail_path:
            return None
        return f"{PUBLIC_URL_PREFIX}/{self.thumbnail_path}"

    def to_dict(self) -> dict:
        """Public metadata record"""
        return {
            'id': self.file_id,
            'name': self.name,
            'type': self.type,
            'size': self.size,
            'mimeType': self.mime_type,
            'createdAt': self.created_at.isoformat(),
            'updatedAt': self.updated_at.isoformat(),
            'url': self.url,
            'thumbnailUrl': self.thumbnail_url,
            'ownerId': self.owner_id,
        }


class Assembler:
    """Sole writer of assembled files under the owner's storage directory"""

    def __init__(self, chunk_store: ChunkStore, layout: StorageLayout,
                 derivatives: Optional[DerivativeGenerator] = None):
        self.chunk_store = chunk_store
        self.layout = layout
        self.derivatives = derivatives

    async def assemble(self, session_id: str, final_name: str,
                       total_chunks: int, owner_id: str) -> AssembledFile:
        name = safe_file_name(final_name)
        final_path = self.layout.original_path(owner_id, session_id, name)
        await aiofiles.os.makedirs(final_path.parent, exist_ok=True)

        logger.info(f"Assembling {session_id} ({total_chunks} chunks) into {final_path}")
        size = await self._write_in_order(session_id, total_chunks, final_path)

        mime_type = get_mime_type(name)
        thumbnail = None
        if self.derivatives:
            thumbnail = await self.derivatives.generate(final_path, mime_type)

        await self.chunk_store.purge(session_id)

        assembled = AssembledFile(
            file_id=session_id,
            name=name,
            size=size,
            mime_type=mime_type,
            owner_id=owner_id,
            path=final_path,
            public_path=public_path(owner_id, session_id, ORIGINAL, name),
            thumbnail_path=(public_path(owner_id, session_id, THUMBNAIL, thumbnail.name)
                            if thumbnail else None),
        )
        logger.info(f"Assembled {session_id}: {name} ({size} bytes, {mime_type})")
        return assembled

    async def _write_in_order(self, session_id: str, total_chunks: int,
                              final_path: Path) -> int:
        tmp_path = final_path.with_name(f".{final_path.name}.{uuid.uuid4().hex}.partial")
        try:
            async with aiofiles.open(tmp_path, 'wb') as out:
                for index in range(total_chunks):
                    try:
                        data = await self.chunk_store.get(session_id, index)
                    except MissingChunk as e:
                        raise IncompleteUpload(session_id, index) from e
                    await out.write(data)
                    logger.debug(f"Wrote chunk {index + 1}/{total_chunks} of {session_id}")

                await out.flush()
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, os.fsync, out.fileno())

            await aiofiles.os.replace(tmp_path, final_path)
        except BaseException as e:
            logger.error(f"Assembly of {session_id} failed: {e}", exc_info=True)
            try:
                await aiofiles.os.remove(tmp_path)
            except FileNotFoundError:
                pass
            raise

        stat = await aiofiles.os.stat(final_path)
        return stat.st_size

    async def stored_file(self, owner_id: str, file_id: str) -> Optional[AssembledFile]:
        """Rebuild the record of an assembled file from what is on disk"""
        file_dir = self.layout.file_dir(owner_id, file_id)
        try:
            names = await aiofiles.os.listdir(file_dir / ORIGINAL)
        except (FileNotFoundError, NotADirectoryError):
            return None

        # Hidden names are in-flight temp files
        names = sorted(n for n in names if not n.startswith('.'))
        if not names:
            return None
        name = names[0]
        path = file_dir / ORIGINAL / name
        stat = await aiofiles.os.stat(path)

        thumbnail = None
        if await aiofiles.os.path.isfile(self.layout.thumbnail_path(owner_id, file_id, name)):
            thumbnail = public_path(owner_id, file_id, THUMBNAIL, name)

        return AssembledFile(
            file_id=file_id,
            name=name,
            size=stat.st_size,
            mime_type=get_mime_type(name),
            owner_id=owner_id,
            path=path,
            public_path=public_path(owner_id, file_id, ORIGINAL, name),
            thumbnail_path=thumbnail,
            created_at=_timestamp(getattr(stat, 'st_birthtime', stat.st_ctime)),
            updated_at=_timestamp(stat.st_mtime),
        )

    async def list_files(self, owner_id: str) -> List[AssembledFile]:
        """All assembled files of one owner, oldest first"""
        try:
            file_ids = await aiofiles.os.listdir(self.layout.owner_dir(owner_id))
        except FileNotFoundError:
            return []

        files = []
        for file_id in file_ids:
            if file_id.startswith('.'):
                continue
            try:
                stored = await self.stored_file(owner_id, file_id)
            except InvalidArgument:
                logger.debug(f"Skipping foreign entry {file_id!r} under owner {owner_id}")
                continue
            if stored is not None:
                files.append(stored)

        files.sort(key=lambda f: (f.created_at, f.file_id))
        logger.debug(f"Listed {len(files)} files for owner {owner_id}")
        return files

    async def delete(self, owner_id: str, file_id: str) -> bool:
        """Remove an assembled file and its thumbnail. False if nothing was stored."""
        file_dir = self.layout.file_dir(owner_id, file_id)
        existed = await aiofiles.os.path.isdir(file_dir)
        await remove_tree(file_dir)
        if existed:
            logger.info(f"Deleted stored file {owner_id}/{file_id}")
        return existed
