"""Local file storage tests."""

import pytest

from atelier.services.exceptions import StorageError
from atelier.services.storage import LocalFileStorage


@pytest.fixture
def storage(tmp_path):
    return LocalFileStorage(tmp_path / "images", "https://cdn.atelier.test/images/")


@pytest.mark.asyncio
async def test_upload_writes_file_and_returns_public_url(storage, tmp_path):
    url = await storage.upload(b"png-bytes", "landscape/1_2.png")

    assert url == "https://cdn.atelier.test/images/landscape/1_2.png"
    assert (tmp_path / "images" / "landscape" / "1_2.png").read_bytes() == b"png-bytes"
    assert not (tmp_path / "images" / "landscape" / "1_2.png.tmp").exists()


@pytest.mark.asyncio
async def test_delete_is_idempotent(storage):
    await storage.upload(b"data", "a.png")

    await storage.delete("a.png")
    await storage.delete("a.png")

    assert storage.exists("a.png") is False


@pytest.mark.asyncio
@pytest.mark.parametrize("key", ["../outside.png", "nested/../../outside.png", ""])
async def test_keys_outside_root_are_rejected(storage, key):
    with pytest.raises(StorageError, match="Invalid storage key"):
        await storage.upload(b"data", key)
