from __future__ import annotations

import io
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from itemstore.errors import ImportFetchError, StorageError
from itemstore.storage import LocalStorage, StorageRegistry, iter_chunks


def test_iter_chunks_accepts_bytes_files_and_iterables() -> None:
    assert list(iter_chunks(b"abc")) == [b"abc"]
    assert list(iter_chunks(io.BytesIO(b"abcdef"), chunk_size=4)) == [b"abcd", b"ef"]
    assert list(iter_chunks([b"a", b"", b"b"])) == [b"a", b"b"]


class TestLocalStorage:
    def test_write_and_delete(self, tmp_path: Path) -> None:
        storage = LocalStorage("local", tmp_path)

        stored = storage.write("nested/file.txt", io.BytesIO(b"hello"))

        assert stored.size == 5
        assert stored.storage == "local"
        assert (tmp_path / "nested" / "file.txt").read_bytes() == b"hello"
        assert storage.exists("nested/file.txt")

        storage.delete("nested/file.txt")
        assert not storage.exists("nested/file.txt")
        # deleting a missing object is not an error
        storage.delete("nested/file.txt")

    def test_failed_write_leaves_nothing_behind(self, tmp_path: Path) -> None:
        def broken_stream():
            yield b"partial"
            raise OSError("connection reset")

        storage = LocalStorage("local", tmp_path)

        with pytest.raises(StorageError, match="file.bin"):
            storage.write("file.bin", broken_stream())

        assert not (tmp_path / "file.bin").exists()

    def test_rejects_path_traversal(self, tmp_path: Path) -> None:
        storage = LocalStorage("local", tmp_path / "root")
        with pytest.raises(StorageError, match="escapes"):
            storage.write("../outside.txt", b"x")


class TestStorageRegistry:
    def test_lookup(self, tmp_path: Path) -> None:
        registry = StorageRegistry({"local": LocalStorage("local", tmp_path)})
        registry.register(LocalStorage("backup", tmp_path / "backup"))

        assert "local" in registry
        assert registry.names == ["backup", "local"]
        assert registry.get("backup").name == "backup"
        with pytest.raises(StorageError):
            registry.get("s3")

    def test_fetch_streams_response(self) -> None:
        response = MagicMock(ok=True, headers={"Content-Type": "image/png; charset=binary"})
        response.iter_content.return_value = iter([b"\x89PNG", b"data"])
        http = MagicMock()
        http.get.return_value = response

        registry = StorageRegistry(http=http)
        with registry.fetch("https://example.com/img/logo.png?v=2", timeout=5) as fetched:
            assert fetched.filename == "logo.png"
            assert fetched.content_type == "image/png"
            assert b"".join(fetched.stream) == b"\x89PNGdata"

        http.get.assert_called_once_with("https://example.com/img/logo.png?v=2", stream=True, timeout=5)
        response.close.assert_called_once()

    def test_fetch_non_ok_response(self) -> None:
        response = MagicMock(ok=False, status_code=404)
        http = MagicMock()
        http.get.return_value = response

        with pytest.raises(ImportFetchError, match="HTTP 404"):
            StorageRegistry(http=http).fetch("https://example.com/missing.png")
        response.close.assert_called_once()

    def test_fetch_connection_error(self) -> None:
        http = MagicMock()
        http.get.side_effect = requests.ConnectionError("refused")

        with pytest.raises(ImportFetchError) as exc_info:
            StorageRegistry(http=http).fetch("https://example.com/a.png")
        assert exc_info.value.url == "https://example.com/a.png"
