from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse
from typing import Any, BinaryIO, Iterable, Iterator, Mapping, Optional, Protocol, Union

import requests

from .errors import ImportFetchError, ItemStoreError, StorageError

logger = logging.getLogger(__name__)

ByteStream = Union[BinaryIO, Iterable[bytes], bytes]

DEFAULT_CHUNK_SIZE = 64 * 1024


def iter_chunks(stream: ByteStream, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    """Yield byte chunks from a file-like object, an iterable of bytes, or raw bytes."""
    if isinstance(stream, (bytes, bytearray)):
        yield bytes(stream)
        return
    read = getattr(stream, "read", None)
    if callable(read):
        while True:
            chunk = read(chunk_size)
            if not chunk:
                return
            yield chunk
    else:
        for chunk in stream:
            if chunk:
                yield chunk


@dataclass(frozen=True)
class StoredObject:
    storage: str
    location: str
    size: int


class StorageAdapter(Protocol):
    name: str

    def write(self, location: str, stream: ByteStream) -> StoredObject:
        ...

    def delete(self, location: str) -> None:
        ...

    def exists(self, location: str) -> bool:
        ...


class LocalStorage:
    """Stores objects as files below `root`."""

    def __init__(self, name: str, root: Union[str, Path], chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.name = name
        self.root = Path(root).resolve()
        self.chunk_size = chunk_size

    def _path(self, location: str) -> Path:
        path = (self.root / location).resolve()
        if path == self.root or self.root not in path.parents:
            raise StorageError(f"Location {location!r} escapes storage {self.name!r}")
        return path

    def write(self, location: str, stream: ByteStream) -> StoredObject:
        path = self._path(location)
        size = 0
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as fh:
                for chunk in iter_chunks(stream, self.chunk_size):
                    fh.write(chunk)
                    size += len(chunk)
        except ItemStoreError:
            # never leave a truncated object behind
            path.unlink(missing_ok=True)
            raise
        except Exception as exc:
            path.unlink(missing_ok=True)
            raise StorageError(f"Failed to write {location!r} to storage {self.name!r}: {exc}") from exc

        logger.debug("Wrote %d bytes to %s:%s", size, self.name, location)
        return StoredObject(storage=self.name, location=location, size=size)

    def delete(self, location: str) -> None:
        try:
            self._path(location).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete {location!r} from storage {self.name!r}: {exc}") from exc

    def exists(self, location: str) -> bool:
        return self._path(location).is_file()


@dataclass
class FetchedFile:
    """An open HTTP download. Close it once the body has been consumed."""
    url: str
    response: requests.Response
    content_type: Optional[str] = None
    chunk_size: int = DEFAULT_CHUNK_SIZE
    filename: str = field(init=False)

    def __post_init__(self) -> None:
        path = urlparse(self.url).path
        self.filename = os.path.basename(path.rstrip("/")) or "download"

    @property
    def stream(self) -> Iterator[bytes]:
        try:
            yield from self.response.iter_content(chunk_size=self.chunk_size)
        except requests.RequestException as exc:
            raise ImportFetchError(self.url, str(exc)) from exc

    def close(self) -> None:
        self.response.close()

    def __enter__(self) -> "FetchedFile":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
        return False


class StorageRegistry:
    """
    Storage adapters by name, plus the HTTP fetcher used for URL imports.
    """

    def __init__(
        self,
        adapters: Mapping[str, StorageAdapter] | None = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self._adapters: dict[str, StorageAdapter] = dict(adapters or {})
        self.http = http or requests.Session()

    def register(self, adapter: StorageAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def __contains__(self, name: object) -> bool:
        return name in self._adapters

    @property
    def names(self) -> list[str]:
        return sorted(self._adapters)

    def get(self, name: str) -> StorageAdapter:
        try:
            return self._adapters[name]
        except KeyError:
            raise StorageError(f"Storage {name!r} is not configured") from None

    def fetch(self, url: str, timeout: float = 30.0, **kwargs: Any) -> FetchedFile:
        """
        Open a streaming GET for `url`.

        Raises:
            ImportFetchError: On connection failures, timeouts and non-2xx responses
        """
        try:
            response = self.http.get(url, stream=True, timeout=timeout, **kwargs)
        except requests.RequestException as exc:
            raise ImportFetchError(url, str(exc)) from exc

        if not response.ok:
            response.close()
            raise ImportFetchError(url, f"HTTP {response.status_code}")

        content_type = response.headers.get("Content-Type")
        if content_type:
            content_type = content_type.split(";")[0].strip() or None
        return FetchedFile(url=url, response=response, content_type=content_type)
