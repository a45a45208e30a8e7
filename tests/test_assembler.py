"""Test ordered assembly"""

import pytest
from unittest.mock import patch

from PIL import Image

from uploadcore.assembly import Assembler, DerivativeGenerator
from uploadcore.exceptions import IncompleteUpload

CHUNKS = [b"AAAA", b"BBB", b"CC"]


@pytest.fixture
def assembler(chunk_store, layout):
    return Assembler(chunk_store, layout, DerivativeGenerator((50, 50)))


async def stage(chunk_store, session_id, order):
    for index in order:
        await chunk_store.put(session_id, index, CHUNKS[index])


class TestAssembler:
    """Test the assembly algorithm"""

    @pytest.mark.asyncio
    async def test_arrival_order_does_not_matter(self, assembler, chunk_store):
        await stage(chunk_store, "in-order", [0, 1, 2])
        await stage(chunk_store, "shuffled", [2, 0, 1])

        first = await assembler.assemble("in-order", "f.bin", 3, "d1")
        second = await assembler.assemble("shuffled", "f.bin", 3, "d1")

        assert first.path.read_bytes() == second.path.read_bytes() == b"AAAABBBCC"

    @pytest.mark.asyncio
    async def test_result_record(self, assembler, chunk_store, layout):
        await stage(chunk_store, "s1", [0, 1, 2])

        result = await assembler.assemble("s1", "notes.txt", 3, "d1")

        assert result.file_id == "s1"
        assert result.size == 9
        assert result.mime_type == "application/octet-stream"
        assert result.path == layout.original_path("d1", "s1", "notes.txt")
        assert result.public_path == "d1/s1/original/notes.txt"
        assert result.thumbnail_path is None

        record = result.to_dict()
        assert record['url'] == "/files/d1/s1/original/notes.txt"
        assert record['type'] == ".txt"
        assert record['thumbnailUrl'] is None

    @pytest.mark.asyncio
    async def test_purges_staging_on_success(self, assembler, chunk_store):
        await stage(chunk_store, "s1", [0, 1, 2])
        await assembler.assemble("s1", "f.bin", 3, "d1")
        assert await chunk_store.staged_indices("s1") == []

    @pytest.mark.asyncio
    async def test_missing_chunk(self, assembler, chunk_store, layout):
        await stage(chunk_store, "s1", [0, 2])

        with pytest.raises(IncompleteUpload) as exc_info:
            await assembler.assemble("s1", "f.bin", 3, "d1")

        assert exc_info.value.missing_index == 1
        original_dir = layout.original_path("d1", "s1", "f.bin").parent
        assert list(original_dir.iterdir()) == []
        assert await chunk_store.staged_indices("s1") == [0, 2]

    @pytest.mark.asyncio
    async def test_io_error_leaves_no_partial_file(self, assembler, chunk_store, layout):
        await stage(chunk_store, "s1", [0, 1, 2])
        real_get = chunk_store.get

        async def failing_get(session_id, index):
            if index == 2:
                raise OSError("disk unplugged")
            return await real_get(session_id, index)

        with patch.object(chunk_store, "get", side_effect=failing_get):
            with pytest.raises(OSError):
                await assembler.assemble("s1", "f.bin", 3, "d1")

        original_dir = layout.original_path("d1", "s1", "f.bin").parent
        assert list(original_dir.iterdir()) == []
        assert await chunk_store.staged_indices("s1") == [0, 1, 2]

        # Staging untouched, so a retry succeeds
        result = await assembler.assemble("s1", "f.bin", 3, "d1")
        assert result.path.read_bytes() == b"AAAABBBCC"

    @pytest.mark.asyncio
    async def test_rerun_overwrites(self, assembler, chunk_store):
        await stage(chunk_store, "s1", [0, 1, 2])
        first = await assembler.assemble("s1", "f.bin", 3, "d1")
        first.path.write_bytes(b"tampered")

        await stage(chunk_store, "s1", [0, 1, 2])
        second = await assembler.assemble("s1", "f.bin", 3, "d1")

        assert second.path == first.path
        assert second.path.read_bytes() == b"AAAABBBCC"

    @pytest.mark.asyncio
    async def test_image_gets_thumbnail(self, assembler, chunk_store, png_factory):
        data = png_factory(400, 200)
        await chunk_store.put("s1", 0, data)

        result = await assembler.assemble("s1", "wide.png", 1, "d1")

        assert result.mime_type == "image/png"
        assert result.thumbnail_path == "d1/s1/thumbnail/wide.png"
        thumb = result.path.parent.parent / "thumbnail" / "wide.png"
        with Image.open(thumb) as img:
            assert img.size == (50, 25)

    @pytest.mark.asyncio
    async def test_broken_image_is_not_fatal(self, assembler, chunk_store):
        await chunk_store.put("s1", 0, b"definitely not a png")

        result = await assembler.assemble("s1", "broken.png", 1, "d1")

        assert result.size == 20
        assert result.thumbnail_path is None
        assert result.path.exists()


class TestStoredFileRecords:
    """Test records rebuilt from the storage tree"""

    @pytest.mark.asyncio
    async def test_stored_file_matches_assembly(self, assembler, chunk_store):
        await stage(chunk_store, "s1", [0, 1, 2])
        assembled = await assembler.assemble("s1", "notes.txt", 3, "d1")

        stored = await assembler.stored_file("d1", "s1")

        assert stored.to_dict()['url'] == assembled.url
        assert stored.size == assembled.size
        assert stored.mime_type == assembled.mime_type
        assert stored.path == assembled.path

    @pytest.mark.asyncio
    async def test_stored_file_absent(self, assembler):
        assert await assembler.stored_file("d1", "missing") is None

    @pytest.mark.asyncio
    async def test_list_skips_partial_and_foreign_entries(self, assembler, chunk_store, layout):
        await stage(chunk_store, "s1", [0, 1, 2])
        await assembler.assemble("s1", "f.bin", 3, "d1")

        # An assembly whose temp file has not been renamed yet
        in_flight = layout.original_path("d1", "s2", "g.bin").parent
        in_flight.mkdir(parents=True)
        (in_flight / ".g.bin.abc.partial").write_bytes(b"half")
        (layout.owner_dir("d1") / "not a file id").mkdir()

        files = await assembler.list_files("d1")

        assert [f.file_id for f in files] == ["s1"]

    @pytest.mark.asyncio
    async def test_delete(self, assembler, chunk_store, layout, png_factory):
        await chunk_store.put("s1", 0, png_factory(100, 100))
        await assembler.assemble("s1", "pic.png", 1, "d1")
        assert layout.thumbnail_path("d1", "s1", "pic.png").exists()

        assert await assembler.delete("d1", "s1") is True

        assert not layout.file_dir("d1", "s1").exists()
        assert await assembler.delete("d1", "s1") is False
