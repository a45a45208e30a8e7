"""
Upload session lifecycle

    initiate -> receive_chunk* -> finalize
    initiate -> receive_chunk* -> cancel | abort

Chunk arrivals run concurrently and in any order; only the assembler
imposes index order. Finalize is serialized per session id, so at most one
assembly is in flight for a given session. Chunks arriving while a session
is being assembled are refused.
"""

import uuid
from dataclasses import dataclass
from typing import List, Optional
import logging

from ..assembly import Assembler, AssembledFile, DerivativeGenerator
from ..config import UploadConfig
from ..exceptions import (
    IllegalState, IncompleteUpload, InvalidArgument, NotFound, OutOfRange, PayloadTooLarge
)
from ..session import (
    KeyedLock, MemoryBackend, RedisBackend, SessionBackend, SessionRegistry,
    UploadProgress, UploadStatus
)
from ..storage import (
    ChunkStore, FileSystemChunkStore, StorageLayout, remove_tree, safe_file_name, safe_token
)

logger = logging.getLogger(__name__)


@dataclass
class InitiatedUpload:
    """Returned to the caller by initiate"""
    session_id: str
    chunk_size: int
    total_chunks: int

    def to_dict(self) -> dict:
        return {
            'fileId': self.session_id,
            'chunkSize': self.chunk_size,
            'chunks': self.total_chunks,
        }


def create_backend(config: UploadConfig) -> SessionBackend:
    """Redis when a URL is configured, process memory otherwise"""
    if config.redis_url:
        return RedisBackend.from_url(config.redis_url, config.key_prefix)
    logger.info("Using in-memory session backend")
    return MemoryBackend()


class UploadEngine:
    """Chunked upload session engine"""

    def __init__(self, config: UploadConfig,
                 registry: Optional[SessionRegistry] = None,
                 chunk_store: Optional[ChunkStore] = None,
                 assembler: Optional[Assembler] = None):
        self.config = config
        self.layout = StorageLayout(config.upload_dir)

        self.registry = registry or SessionRegistry(create_backend(config))
        self.chunk_store = chunk_store or FileSystemChunkStore(self.layout)
        self.assembler = assembler or Assembler(
            self.chunk_store, self.layout, DerivativeGenerator(config.thumbnail_size)
        )
        self._finalize_locks = KeyedLock()
        self._assembling = set()

    async def initiate(self, owner_id: str, file_name: str, file_size: int,
                       mime_type: str) -> InitiatedUpload:
        """Open a new pending session sized for file_size"""
        safe_token(owner_id, "owner id")
        name = safe_file_name(file_name)
        if not mime_type:
            raise InvalidArgument("mime_type is required")
        if not isinstance(file_size, int) or isinstance(file_size, bool) or file_size <= 0:
            raise InvalidArgument(f"file_size must be a positive integer, got {file_size!r}")
        if file_size > self.config.max_file_size:
            raise PayloadTooLarge(file_size, self.config.max_file_size)

        chunk_size = self.config.chunk_size
        total_chunks = -(-file_size // chunk_size)
        session_id = str(uuid.uuid4())

        await self.registry.create(
            session_id, owner_id, total_chunks,
            file_name=name, file_size=file_size, mime_type=mime_type
        )
        logger.info(f"Upload initiated for file: {name} "
                    f"(session={session_id}, owner={owner_id}, chunks={total_chunks})")
        return InitiatedUpload(session_id, chunk_size, total_chunks)

    async def receive_chunk(self, session_id: str, chunk_index: int,
                            total_chunks: int, data: bytes) -> UploadProgress:
        """Stage one chunk, mark it received and return fresh progress"""
        if not data:
            raise InvalidArgument("Chunk data is empty")
        if len(data) > self.config.chunk_size:
            raise InvalidArgument(
                f"Chunk of {len(data)} bytes exceeds chunk size {self.config.chunk_size}"
            )

        session = await self.registry.get(session_id)
        if total_chunks != session.total_chunks:
            raise InvalidArgument(
                f"total_chunks mismatch: session has {session.total_chunks}, got {total_chunks}"
            )
        if not isinstance(chunk_index, int) or not 0 <= chunk_index < session.total_chunks:
            raise OutOfRange(chunk_index, session.total_chunks)
        if session.status.is_terminal or session_id in self._assembling:
            raise IllegalState(session.status, UploadStatus.UPLOADING)

        await self.chunk_store.put(session_id, chunk_index, data)
        try:
            newly_set = await self.registry.mark_chunk_received(session_id, chunk_index)
            if session.status is UploadStatus.PENDING:
                await self._begin_upload(session_id)
            progress = await self.registry.progress(session_id)
        except NotFound:
            # Cancelled while the chunk was being written: drop what we staged
            await self.chunk_store.purge(session_id)
            raise

        logger.debug(f"Chunk {chunk_index} received for {session_id} "
                     f"(new={newly_set}, progress={progress.percent:.1f}%)")
        return progress

    async def _begin_upload(self, session_id: str):
        """pending -> uploading; a concurrent chunk may already have done it"""
        try:
            await self.registry.transition(session_id, UploadStatus.UPLOADING)
        except IllegalState as e:
            if e.current is not UploadStatus.UPLOADING:
                raise

    async def finalize(self, session_id: str, file_name: str) -> AssembledFile:
        """Assemble a complete session into its durable file"""
        name = safe_file_name(file_name)

        async with self._finalize_locks.hold(session_id):
            session = await self.registry.get(session_id)
            missing = await self.registry.missing(session_id)
            if missing:
                raise IncompleteUpload(session_id, missing[0])
            if session.status is UploadStatus.PENDING:
                await self._begin_upload(session_id)

            self._assembling.add(session_id)
            try:
                assembled = await self.assembler.assemble(
                    session_id, name, session.total_chunks, session.owner_id
                )

                try:
                    await self.registry.transition(session_id, UploadStatus.COMPLETED)
                except (NotFound, IllegalState) as e:
                    # Cancelled or aborted during assembly; the output must not outlive the session
                    logger.warning(f"Discarding assembled output of {session_id}: {e}")
                    await remove_tree(self.layout.file_dir(session.owner_id, session_id))
                    raise
                await self.registry.delete(session_id)
            finally:
                self._assembling.discard(session_id)

            # A chunk write that passed its checks before assembly started may land late
            await self.chunk_store.purge(session_id)

        logger.info(f"Upload finalized for file: {name} (session={session_id})")
        return assembled

    async def cancel(self, session_id: str) -> bool:
        """
        Drop a session and its staged chunks, whatever its status.
        Returns False if there was nothing to cancel.
        """
        try:
            await self.registry.transition(session_id, UploadStatus.CANCELLED)
        except NotFound:
            pass
        except IllegalState as e:
            logger.debug(f"Cancelling {session_id} from status {e.current.value}")

        existed = await self.registry.delete(session_id)
        await self.chunk_store.purge(session_id)

        if existed:
            logger.info(f"Upload cancelled: {session_id}")
        return existed

    async def abort(self, session_id: str, reason: str):
        """Mark a session as failed, then discard it"""
        await self.registry.transition(session_id, UploadStatus.ERROR)
        logger.warning(f"Upload {session_id} aborted: {reason}")

        await self.registry.delete(session_id)
        await self.chunk_store.purge(session_id)

    async def list_files(self, owner_id: str) -> List[AssembledFile]:
        """Assembled files stored for an owner"""
        safe_token(owner_id, "owner id")
        return await self.assembler.list_files(owner_id)

    async def get_file(self, owner_id: str, file_id: str) -> AssembledFile:
        stored = await self.assembler.stored_file(owner_id, file_id)
        if stored is None:
            raise NotFound(file_id, "Stored file")
        return stored

    async def delete_file(self, owner_id: str, file_id: str):
        """Delete an assembled file with its thumbnail"""
        # Never races an assembly writing the same file id
        async with self._finalize_locks.hold(file_id):
            if not await self.assembler.delete(owner_id, file_id):
                raise NotFound(file_id, "Stored file")
        logger.info(f"File deleted: {owner_id}/{file_id}")

    async def status(self, session_id: str) -> UploadProgress:
        return await self.registry.progress(session_id)

    async def missing_chunks(self, session_id: str) -> List[int]:
        return await self.registry.missing(session_id)

    async def close(self):
        await self.registry.backend.close()
