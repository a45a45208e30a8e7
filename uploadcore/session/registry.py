"""
Session registry
Source of truth for session metadata, chunk presence and progress
"""

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from ..exceptions import InvalidArgument, NotFound, OutOfRange
from .backends import SessionBackend, MemoryBackend
from .state import UploadStatus, allowed_sources, check_transition

logger = logging.getLogger(__name__)


@dataclass
class UploadSession:
    """In-flight upload session metadata"""
    session_id: str
    owner_id: str
    total_chunks: int
    status: UploadStatus = UploadStatus.PENDING
    file_name: str = ""
    file_size: int = 0
    mime_type: str = ""
    created_at: float = field(default_factory=time.time)

    def to_fields(self) -> Dict[str, str]:
        return {
            'owner_id': self.owner_id,
            'total_chunks': str(self.total_chunks),
            'status': self.status.value,
            'file_name': self.file_name,
            'file_size': str(self.file_size),
            'mime_type': self.mime_type,
            'created_at': repr(self.created_at),
        }

    @classmethod
    def from_fields(cls, session_id: str, data: Dict[str, str]) -> "UploadSession":
        return cls(
            session_id=session_id,
            owner_id=data['owner_id'],
            total_chunks=int(data['total_chunks']),
            status=UploadStatus(data['status']),
            file_name=data.get('file_name', ''),
            file_size=int(data.get('file_size') or 0),
            mime_type=data.get('mime_type', ''),
            created_at=float(data.get('created_at') or 0.0),
        )


@dataclass
class UploadProgress:
    """Progress snapshot, derived from the chunk bitmap"""
    session_id: str
    percent: float
    completed_count: int
    total_chunks: int
    status: UploadStatus

    @property
    def is_complete(self) -> bool:
        return self.completed_count == self.total_chunks

    def to_dict(self) -> dict:
        return {
            'fileId': self.session_id,
            'progress': self.percent,
            'completedChunks': self.completed_count,
            'totalChunks': self.total_chunks,
            'status': self.status.value,
        }


class SessionRegistry:
    """
    Per-session metadata and chunk bitmap on top of a SessionBackend.
    Progress is always recomputed from the bitmap, never stored.
    """

    def __init__(self, backend: Optional[SessionBackend] = None):
        self.backend = backend or MemoryBackend()

    async def create(self, session_id: str, owner_id: str, total_chunks: int,
                     file_name: str = "", file_size: int = 0,
                     mime_type: str = "") -> UploadSession:
        """Create a pending session with an all-zero bitmap"""
        if not isinstance(total_chunks, int) or total_chunks <= 0:
            raise InvalidArgument(f"total_chunks must be a positive integer, got {total_chunks!r}")

        session = UploadSession(
            session_id=session_id,
            owner_id=owner_id,
            total_chunks=total_chunks,
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type,
        )
        if not await self.backend.create(session_id, session.to_fields(), total_chunks):
            raise InvalidArgument(f"Session already exists: {session_id}")

        logger.debug(f"Registered session {session_id} ({total_chunks} chunks)")
        return session

    async def get(self, session_id: str) -> UploadSession:
        data = await self.backend.get(session_id)
        if data is None:
            raise NotFound(session_id)
        return UploadSession.from_fields(session_id, data)

    async def exists(self, session_id: str) -> bool:
        return await self.backend.get(session_id) is not None

    async def mark_chunk_received(self, session_id: str, chunk_index: int) -> bool:
        """
        Set the bit for one chunk index.
        Returns True if the bit was newly set, False if it was already set.
        """
        session = await self.get(session_id)
        if not 0 <= chunk_index < session.total_chunks:
            raise OutOfRange(chunk_index, session.total_chunks)

        previous = await self.backend.set_bit(session_id, chunk_index)
        if previous is None:
            # Deleted between the lookup and the bit flip
            raise NotFound(session_id)
        return previous == 0

    async def _bitmap(self, session: UploadSession) -> List[bool]:
        bits = await self.backend.bits(session.session_id, session.total_chunks)
        if bits is None:
            raise NotFound(session.session_id)
        return bits

    async def progress(self, session_id: str) -> UploadProgress:
        session = await self.get(session_id)
        completed = sum(await self._bitmap(session))
        return UploadProgress(
            session_id=session_id,
            percent=completed * 100 / session.total_chunks,
            completed_count=completed,
            total_chunks=session.total_chunks,
            status=session.status,
        )

    async def missing(self, session_id: str) -> List[int]:
        """Ascending list of chunk indices not yet received"""
        session = await self.get(session_id)
        bits = await self._bitmap(session)
        return [index for index, received in enumerate(bits) if not received]

    async def is_complete(self, session_id: str) -> bool:
        return not await self.missing(session_id)

    async def transition(self, session_id: str, new_status: UploadStatus) -> UploadStatus:
        """
        Atomically move to new_status. Returns the previous status.
        Raises IllegalState for transitions outside the state machine.
        """
        sources = allowed_sources(new_status)
        seen = await self.backend.swap_status(
            session_id, [s.value for s in sources], new_status.value
        )
        if seen is None:
            raise NotFound(session_id)

        previous = UploadStatus(seen)
        check_transition(previous, new_status)

        logger.debug(f"Session {session_id}: {previous.value} -> {new_status.value}")
        return previous

    async def delete(self, session_id: str) -> bool:
        return await self.backend.delete(session_id)
