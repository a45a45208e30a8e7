"""
Key/value substrates for the session registry

Every backend keeps, per session, a flat metadata mapping and a fixed-length
bit vector. Each public method is one atomic step on the substrate: a bit
flip or status swap never interleaves with a concurrent sibling on the same
session.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional
import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)


def _bit_mask(index: int) -> int:
    # Redis bit order: bit 0 is the most significant bit of byte 0
    return 0x80 >> (index % 8)


def decode_bits(raw: Optional[bytes], length: int) -> List[bool]:
    """Unpack a Redis-style bitmap into `length` booleans"""
    raw = raw or b""
    result = []
    for index in range(length):
        byte_index = index // 8
        byte = raw[byte_index] if byte_index < len(raw) else 0
        result.append(bool(byte & _bit_mask(index)))
    return result


class SessionBackend(ABC):
    """Atomic primitives the session registry is built on"""

    @abstractmethod
    async def create(self, session_id: str, fields: Dict[str, str], length: int) -> bool:
        """
        Store metadata and an all-zero bit vector of `length` bits.
        Returns False if the session already exists.
        """

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Dict[str, str]]:
        """Return the metadata mapping, or None if absent"""

    @abstractmethod
    async def set_bit(self, session_id: str, index: int) -> Optional[int]:
        """
        Set one bit. Returns the previous bit value, or None when the session
        record does not exist (the bit vector is not recreated).
        """

    @abstractmethod
    async def bits(self, session_id: str, length: int) -> Optional[List[bool]]:
        """Return the bit vector, or None if absent"""

    @abstractmethod
    async def swap_status(self, session_id: str, allowed_from: Iterable[str],
                          new_status: str) -> Optional[str]:
        """
        Compare-and-set on the status field. The status is replaced only if
        its current value is in `allowed_from`. Returns the value seen before
        the swap, or None if absent.
        """

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """Remove metadata and bit vector. Returns True if anything existed"""

    async def close(self):
        """Release substrate resources"""


class _MemoryRecord:
    __slots__ = ('fields', 'bitmap')

    def __init__(self, fields: Dict[str, str], length: int):
        self.fields = dict(fields)
        self.bitmap = bytearray((length + 7) // 8)


class MemoryBackend(SessionBackend):
    """Process-local backend, mutex-guarded"""

    def __init__(self):
        self._records: Dict[str, _MemoryRecord] = {}
        self._lock = threading.Lock()

    async def create(self, session_id, fields, length):
        with self._lock:
            if session_id in self._records:
                return False
            self._records[session_id] = _MemoryRecord(fields, length)
            return True

    async def get(self, session_id):
        with self._lock:
            record = self._records.get(session_id)
            return dict(record.fields) if record else None

    async def set_bit(self, session_id, index):
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            mask = _bit_mask(index)
            previous = 1 if record.bitmap[index // 8] & mask else 0
            record.bitmap[index // 8] |= mask
            return previous

    async def bits(self, session_id, length):
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            raw = bytes(record.bitmap)
        return decode_bits(raw, length)

    async def swap_status(self, session_id, allowed_from, new_status):
        allowed = set(allowed_from)
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            current = record.fields.get('status')
            if current in allowed:
                record.fields['status'] = new_status
            return current

    async def delete(self, session_id):
        with self._lock:
            return self._records.pop(session_id, None) is not None


_CREATE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return 0
end
redis.call('DEL', KEYS[2])
redis.call('HSET', KEYS[1], unpack(ARGV, 2))
redis.call('SETBIT', KEYS[2], tonumber(ARGV[1]) - 1, 0)
return 1
"""

_SET_BIT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return -1
end
return redis.call('SETBIT', KEYS[2], ARGV[1], 1)
"""

_SWAP_STATUS_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'status')
if not current then
    return false
end
for i = 2, #ARGV do
    if ARGV[i] == current then
        redis.call('HSET', KEYS[1], 'status', ARGV[1])
        break
    end
end
return current
"""


class RedisBackend(SessionBackend):
    """
    Redis backend
    Metadata lives in hash `upload:{id}`, the chunk bitmap in string
    `chunks:{id}`. Check-then-write steps run as Lua scripts.
    """

    def __init__(self, client: "redis.Redis", key_prefix: str = ""):
        self.client = client
        self.key_prefix = key_prefix

        self._create = client.register_script(_CREATE_SCRIPT)
        self._set_bit = client.register_script(_SET_BIT_SCRIPT)
        self._swap_status = client.register_script(_SWAP_STATUS_SCRIPT)

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "") -> "RedisBackend":
        """Create a backend with its own connection pool"""
        client = redis.Redis.from_url(url, decode_responses=False)
        logger.info(f"Using Redis session backend at {url}")
        return cls(client, key_prefix)

    def meta_key(self, session_id: str) -> str:
        return f"{self.key_prefix}upload:{session_id}"

    def bitmap_key(self, session_id: str) -> str:
        return f"{self.key_prefix}chunks:{session_id}"

    def _keys(self, session_id: str) -> List[str]:
        return [self.meta_key(session_id), self.bitmap_key(session_id)]

    async def create(self, session_id, fields, length):
        args = [length]
        for name, value in fields.items():
            args.extend([name, value])
        created = await self._create(keys=self._keys(session_id), args=args)
        return bool(created)

    async def get(self, session_id):
        data = await self.client.hgetall(self.meta_key(session_id))
        if not data:
            return None
        return {_text(k): _text(v) for k, v in data.items()}

    async def set_bit(self, session_id, index):
        previous = await self._set_bit(keys=self._keys(session_id), args=[index])
        previous = int(previous)
        return None if previous < 0 else previous

    async def bits(self, session_id, length):
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.exists(self.meta_key(session_id))
            pipe.get(self.bitmap_key(session_id))
            exists, raw = await pipe.execute()
        if not exists:
            return None
        return decode_bits(raw, length)

    async def swap_status(self, session_id, allowed_from, new_status):
        seen = await self._swap_status(
            keys=[self.meta_key(session_id)],
            args=[new_status, *allowed_from]
        )
        return _text(seen) if seen else None

    async def delete(self, session_id):
        removed = await self.client.delete(*self._keys(session_id))
        return removed > 0

    async def close(self):
        await self.client.aclose()


def _text(value) -> str:
    return value.decode('utf-8') if isinstance(value, bytes) else str(value)
