from .state import UploadStatus, TERMINAL_STATES, check_transition
from .backends import SessionBackend, MemoryBackend, RedisBackend
from .registry import SessionRegistry, UploadSession, UploadProgress
from .locks import KeyedLock

__all__ = [
    'UploadStatus',
    'TERMINAL_STATES',
    'check_transition',
    'SessionBackend',
    'MemoryBackend',
    'RedisBackend',
    'SessionRegistry',
    'UploadSession',
    'UploadProgress',
    'KeyedLock'
]
