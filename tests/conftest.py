"""Pytest configuration and fixtures"""

import io
import struct
import zlib

import pytest
import tempfile
import shutil
from pathlib import Path

from PIL import Image

from uploadcore.config import UploadConfig
from uploadcore.session import MemoryBackend, SessionRegistry
from uploadcore.storage import FileSystemChunkStore, StorageLayout
from uploadcore.upload import UploadEngine


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def upload_config(temp_dir):
    """Small chunks keep test payloads tiny"""
    return UploadConfig(
        upload_dir=temp_dir / "uploads",
        chunk_size=1024,
        max_file_size=1024 * 1024
    )


@pytest.fixture
def layout(upload_config):
    return StorageLayout(upload_config.upload_dir)


@pytest.fixture
def chunk_store(layout):
    return FileSystemChunkStore(layout)


@pytest.fixture
def registry():
    return SessionRegistry(MemoryBackend())


@pytest.fixture
def engine(upload_config):
    return UploadEngine(upload_config)


def _padding_chunk(length: int) -> bytes:
    """Private ancillary PNG chunk, skipped by decoders"""
    chunk_type = b'paDd'
    body = b'\0' * length
    crc = zlib.crc32(chunk_type + body) & 0xffffffff
    return struct.pack('>I', length) + chunk_type + body + struct.pack('>I', crc)


@pytest.fixture
def png_factory():
    """
    Build PNG bytes; with total_size set, the image is padded to exactly
    that many bytes and still decodes
    """
    def make(width=640, height=480, total_size=None, color=(200, 30, 30)):
        buf = io.BytesIO()
        Image.new('RGB', (width, height), color).save(buf, 'PNG')
        data = buf.getvalue()
        if total_size is None:
            return data

        padding = total_size - len(data) - 12
        assert padding >= 0, "image larger than requested size"
        # Signature (8) + IHDR (25): insert right after the header chunk
        return data[:33] + _padding_chunk(padding) + data[33:]

    return make
