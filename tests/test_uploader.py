"""Test the local chunked uploader"""

import pytest
from unittest.mock import AsyncMock

from uploadcore.client import ChunkedUploader
from uploadcore.exceptions import NotFound


@pytest.fixture
def source_file(temp_dir):
    path = temp_dir / "source.bin"
    path.write_bytes(bytes(range(256)) * 21)  # 5376 bytes, 6 chunks of 1024
    return path


class TestChunkedUploader:
    """Test upload driving"""

    @pytest.mark.asyncio
    async def test_upload(self, engine, source_file):
        assembled = await ChunkedUploader(engine, concurrency=3).upload(source_file, "d1")

        assert assembled.name == "source.bin"
        assert assembled.path.read_bytes() == source_file.read_bytes()
        assert assembled.mime_type == "application/octet-stream"

    @pytest.mark.asyncio
    async def test_custom_order(self, engine, source_file):
        uploader = ChunkedUploader(engine, concurrency=1)

        assembled = await uploader.upload(
            source_file, "d1", file_name="renamed.bin", order=[5, 3, 1, 0, 2, 4]
        )

        assert assembled.name == "renamed.bin"
        assert assembled.path.read_bytes() == source_file.read_bytes()

    @pytest.mark.asyncio
    async def test_progress_callback(self, engine, source_file):
        seen = []
        uploader = ChunkedUploader(engine, concurrency=2, on_progress=seen.append)

        await uploader.upload(source_file, "d1")

        assert len(seen) == 6
        assert sorted(p.completed_count for p in seen)[-1] == 6

    @pytest.mark.asyncio
    async def test_invalid_order_aborts(self, engine, source_file):
        initiate = engine.initiate
        sessions = []

        async def tracking_initiate(*args, **kwargs):
            initiated = await initiate(*args, **kwargs)
            sessions.append(initiated.session_id)
            return initiated

        engine.initiate = tracking_initiate
        with pytest.raises(ValueError):
            await ChunkedUploader(engine).upload(source_file, "d1", order=[0, 1, 1])

        with pytest.raises(NotFound):
            await engine.status(sessions[0])

    @pytest.mark.asyncio
    async def test_retries_io_errors(self, engine, source_file):
        receive = engine.receive_chunk
        failures = {'left': 2}

        async def flaky_receive(*args, **kwargs):
            if failures['left']:
                failures['left'] -= 1
                raise OSError("connection reset")
            return await receive(*args, **kwargs)

        engine.receive_chunk = flaky_receive
        uploader = ChunkedUploader(engine, concurrency=1, retries=2, retry_delay=0)

        assembled = await uploader.upload(source_file, "d1")

        assert assembled.path.read_bytes() == source_file.read_bytes()

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self, engine, source_file):
        engine.receive_chunk = AsyncMock(side_effect=OSError("disk full"))
        engine.abort = AsyncMock()
        uploader = ChunkedUploader(engine, concurrency=1, retries=1, retry_delay=0)

        with pytest.raises(OSError):
            await uploader.upload(source_file, "d1")

        engine.abort.assert_awaited_once()
        assert engine.receive_chunk.await_count == 6 * 2

    def test_rejects_bad_concurrency(self, engine):
        with pytest.raises(ValueError):
            ChunkedUploader(engine, concurrency=0)
