"""Local chunked upload driver"""

import asyncio
from pathlib import Path
from typing import Callable, Iterable, Optional
import logging

import aiofiles
import aiofiles.os
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from ..assembly import AssembledFile
from ..exceptions import UploadError
from ..session import UploadProgress
from ..storage.mime import get_mime_type
from ..upload import UploadEngine, InitiatedUpload

logger = logging.getLogger(__name__)

# Failures worth resending a chunk for; engine errors are final
RETRYABLE_ERRORS = (OSError, RedisConnectionError, RedisTimeoutError)


class ChunkedUploader:
    """
    Splits a local file into chunks and feeds them to an UploadEngine
    concurrently, then finalizes
    """

    def __init__(self, engine: UploadEngine, concurrency: int = 4,
                 retries: int = 2, retry_delay: float = 0.5,
                 on_progress: Optional[Callable[[UploadProgress], None]] = None):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.engine = engine
        self.concurrency = concurrency
        self.retries = retries
        self.retry_delay = retry_delay
        self.on_progress = on_progress

    async def upload(self, path: Path, owner_id: str,
                     mime_type: Optional[str] = None,
                     file_name: Optional[str] = None,
                     order: Optional[Iterable[int]] = None) -> AssembledFile:
        """
        Upload one file. `order` overrides the sequence chunks are sent in;
        it must be a permutation of the chunk indices.
        """
        path = Path(path)
        stat = await aiofiles.os.stat(path)
        name = file_name or path.name
        mime_type = mime_type or get_mime_type(name)

        initiated = await self.engine.initiate(owner_id, name, stat.st_size, mime_type)
        session_id = initiated.session_id
        logger.info(f"Uploading {path} as {session_id} in {initiated.total_chunks} chunks")

        try:
            indices = self._send_order(initiated, order)
            semaphore = asyncio.Semaphore(self.concurrency)
            results = await asyncio.gather(
                *(self._send(path, initiated, index, semaphore) for index in indices),
                return_exceptions=True
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result

            return await self.engine.finalize(session_id, name)

        except Exception as e:
            await self._abort(session_id, e)
            raise

    @staticmethod
    def _send_order(initiated: InitiatedUpload, order: Optional[Iterable[int]]) -> list:
        expected = list(range(initiated.total_chunks))
        if order is None:
            return expected

        indices = list(order)
        if sorted(indices) != expected:
            raise ValueError(f"Chunk order must be a permutation of 0..{initiated.total_chunks - 1}")
        return indices

    async def _read_chunk(self, path: Path, initiated: InitiatedUpload, index: int) -> bytes:
        async with aiofiles.open(path, 'rb') as f:
            await f.seek(index * initiated.chunk_size)
            return await f.read(initiated.chunk_size)

    async def _send(self, path: Path, initiated: InitiatedUpload, index: int,
                    semaphore: asyncio.Semaphore) -> UploadProgress:
        async with semaphore:
            data = await self._read_chunk(path, initiated, index)

            for attempt in range(self.retries + 1):
                try:
                    progress = await self.engine.receive_chunk(
                        initiated.session_id, index, initiated.total_chunks, data
                    )
                    break
                except RETRYABLE_ERRORS as e:
                    if attempt == self.retries:
                        raise
                    logger.warning(f"Chunk {index} failed ({e}), retrying "
                                   f"({attempt + 1}/{self.retries})")
                    await asyncio.sleep(self.retry_delay * 2 ** attempt)

        if self.on_progress:
            self.on_progress(progress)
        return progress

    async def _abort(self, session_id: str, error: Exception):
        try:
            await self.engine.abort(session_id, str(error))
        except UploadError as abort_error:
            # Already gone (finalized or cancelled elsewhere)
            logger.debug(f"Abort of {session_id} skipped: {abort_error}")
