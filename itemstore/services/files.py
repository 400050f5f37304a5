from __future__ import annotations

import logging
import mimetypes
import os
import re
from collections.abc import Mapping
from typing import Any, Optional
from urllib.parse import urlparse

from ..db.helpers import quote
from ..db.metrics import observe_stored_bytes
from ..errors import ItemStoreError, StorageError, ValidationError
from ..schema import FILES_COLLECTION
from ..storage import ByteStream, StorageAdapter
from .context import ServiceContext
from .items import ItemsService
from .options import MutationOptions, PrimaryKey, QueryOptions
from .scope import MutationScope

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


def format_title(filename: str) -> str:
    """'summer-trip_2024.jpg' -> 'Summer Trip 2024'"""
    stem = os.path.splitext(filename)[0]
    words = [w for w in re.split(r"[-_.\s]+", stem) if w]
    return " ".join(w[:1].upper() + w[1:] for w in words)


class FilesService(ItemsService):
    """
    ItemsService for `directus_files` that also moves bytes.

    The file record and the stored object are reconciled through the
    mutation's transaction: a failed storage write rolls the record back, and
    an object written for a transaction that later fails is removed again.
    """

    def __init__(
        self,
        context: ServiceContext,
        accountability: Any = None,
        scope: Optional[MutationScope] = None,
    ) -> None:
        if context.storage is None:
            raise ValueError("FilesService requires a ServiceContext with a StorageRegistry")
        super().__init__(FILES_COLLECTION, context, accountability, scope)

    def _records(self, scope: MutationScope) -> ItemsService:
        # a plain ItemsService, so record writes never recurse into file handling
        return ItemsService(self.collection, self.context, self.accountability, scope)

    def _check_upload_payload(self, data: Any) -> tuple[dict[str, Any], StorageAdapter]:
        if not isinstance(data, Mapping):
            raise ValidationError("File data must be a mapping")
        payload = dict(data)
        if "filename" in payload and "filename" not in self.collection_schema.fields:
            payload.setdefault("filename_download", payload.pop("filename"))

        storage_name = payload.get("storage")
        if not storage_name:
            raise ValidationError("\"storage\" is required when uploading a file", field="storage")
        if storage_name not in self.context.storage:
            raise ValidationError(
                f"Storage {storage_name!r} is not one of {self.context.storage.names}", field="storage"
            )
        return payload, self.context.storage.get(storage_name)

    def upload_one(
        self,
        stream: ByteStream,
        data: Mapping[str, Any],
        primary_key: Optional[PrimaryKey] = None,
        opts: Optional[MutationOptions] = None,
    ) -> PrimaryKey:
        payload, storage = self._check_upload_payload(data)
        filename = payload.get("filename_download") or ""
        if filename and "title" in self.collection_schema.fields:
            payload.setdefault("title", format_title(filename))
        if "type" in self.collection_schema.fields and not payload.get("type"):
            payload["type"] = mimetypes.guess_type(filename)[0] or DEFAULT_MIME_TYPE

        with self._mutation(opts) as (scope, opts):
            records = self._records(scope)
            previous = None
            if primary_key is None:
                key = records.create_one(payload, opts)
                metadata_opts = opts.copy(
                    emit_events=False,
                    bypass_limits=True,
                    on_revision_create=None,
                    pre_mutation_error=None,
                )
            else:
                previous = records.read_one(primary_key, opts=QueryOptions(emit_events=False))
                key = primary_key
                metadata_opts = opts

            location = f"{key}{os.path.splitext(filename)[1]}"
            try:
                stored = storage.write(location, stream)
            except ItemStoreError:
                raise
            except Exception as exc:
                raise StorageError(f"Failed to write {location} to storage {storage.name!r}: {exc}") from exc
            scope.on_rollback(lambda: storage.delete(location))

            metadata = {"filename_disk": location, "filesize": stored.size}
            update = {**(payload if primary_key is not None else {}), **metadata}
            records.update_one(key, update, metadata_opts)

            if previous is not None:
                self._schedule_replaced_cleanup(scope, previous, payload["storage"], location)
            self._emit_action(scope, opts, "upload", {"key": key, "payload": {**payload, **metadata}})
            scope.after_commit(lambda: observe_stored_bytes(storage.name, stored.size))

        logger.info("Uploaded file %s to storage %s (%d bytes)", key, storage.name, stored.size)
        return key

    def _schedule_replaced_cleanup(
        self,
        scope: MutationScope,
        previous: Mapping[str, Any],
        storage_name: str,
        location: str,
    ) -> None:
        old_location = previous.get("filename_disk")
        old_storage = previous.get("storage")
        if not old_location or (old_location == location and old_storage == storage_name):
            return
        if old_storage not in self.context.storage:
            logger.warning("Can't remove replaced file %s: storage %s is not configured", old_location, old_storage)
            return
        adapter = self.context.storage.get(old_storage)
        scope.after_commit(lambda: adapter.delete(old_location))

    def import_one(
        self,
        import_url: str,
        body: Optional[Mapping[str, Any]] = None,
        opts: Optional[MutationOptions] = None,
    ) -> PrimaryKey:
        """Download `import_url` and store it like `upload_one`."""
        if body is not None and not isinstance(body, Mapping):
            raise ValidationError("File data must be a mapping")
        parsed = urlparse(import_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError(f"Import URL {import_url!r} must be an absolute http(s) URL", field="url")

        body = dict(body or {})
        # reject a bad body before any network traffic
        checked, _ = self._check_upload_payload({"storage": self.context.config.storage_default, **body})
        self._check_payload(checked, "update")

        with self.context.storage.fetch(import_url, timeout=self.context.config.import_timeout) as fetched:
            data = {
                "filename_download": fetched.filename,
                "storage": self.context.config.storage_default,
                **body,
            }
            if fetched.content_type and not data.get("type"):
                data["type"] = fetched.content_type
            return self.upload_one(fetched.stream, data, opts=opts)

    def _delete(self, scope: MutationScope, opts: MutationOptions, keys: Any) -> list[PrimaryKey]:
        keys = self._check_keys(keys)
        objects = self._stored_objects(scope, keys)
        deleted = super()._delete(scope, opts, keys)
        for storage_name, location in objects:
            if storage_name not in self.context.storage:
                logger.warning("Can't remove file %s: storage %s is not configured", location, storage_name)
                continue
            adapter = self.context.storage.get(storage_name)
            scope.after_commit(lambda adapter=adapter, location=location: adapter.delete(location))
        return deleted

    def _stored_objects(self, scope: MutationScope, keys: list[PrimaryKey]) -> list[tuple[str, str]]:
        if not keys:
            return []
        dialect = scope.tx.dialect
        params = {f"k{i}": key for i, key in enumerate(keys)}
        rows = scope.tx.fetch_all(
            f"SELECT storage, filename_disk FROM {quote(dialect, self.collection, 'collection')} "
            f"WHERE {quote(dialect, self.primary_key, 'field')} IN ({', '.join(':' + k for k in params)})",
            params,
        )
        return [(row["storage"], row["filename_disk"]) for row in rows if row["filename_disk"]]
