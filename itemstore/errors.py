from __future__ import annotations

from typing import Any, Sequence


class ItemStoreError(Exception):
    """Base exception for itemstore errors."""


class ValidationError(ItemStoreError):
    """Malformed or invalid payload, or a pre-mutation error supplied by the caller."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class ForbiddenError(ItemStoreError):
    """The permission engine denied the action."""

    def __init__(
        self,
        message: str = "You don't have permission to access this.",
        collection: str | None = None,
        action: str | None = None,
    ) -> None:
        super().__init__(message)
        self.collection = collection
        self.action = action


class LimitExceededError(ItemStoreError):
    """The mutation tracker ceiling was breached."""

    def __init__(self, limit: int, count: int) -> None:
        super().__init__(f"Exceeded max batch mutation limit of {limit} (attempted {count})")
        self.limit = limit
        self.count = count


class IntegrityViolationError(ItemStoreError):
    """A user integrity check failed before commit."""


class NotFoundError(ItemStoreError):
    """Key resolution yielded nothing for an operation requiring existence."""

    def __init__(self, collection: str, keys: Sequence[Any]) -> None:
        keys = list(keys)
        shown = keys[0] if len(keys) == 1 else keys
        super().__init__(f"Item {shown!r} not found in collection {collection!r}")
        self.collection = collection
        self.keys = keys


class ConflictError(ItemStoreError):
    """A unique constraint was violated by the write."""


class StorageError(ItemStoreError):
    """Writing to or removing from a storage adapter failed."""


class ImportFetchError(ItemStoreError):
    """Fetching a file from an external URL failed."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Couldn't fetch file from URL {url!r}: {reason}")
        self.url = url
        self.reason = reason
