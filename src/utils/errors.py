from __future__ import annotations


class ChatVaultError(Exception):
    """Base class for every failure raised by the chat store and stream layers."""


class ValidationError(ChatVaultError, ValueError):
    """Input was rejected before anything was written."""


class NotFoundError(ChatVaultError, LookupError):
    """A chat, message, project or user could not be resolved for the caller."""


class ConstraintError(ChatVaultError):
    """A primary key or unique index value already exists."""


class StorageUnavailableError(ChatVaultError):
    """No persistent backing store is available on this platform."""


class TransactionError(ChatVaultError):
    """The underlying storage engine failed; the original error is chained."""


class SegmentLimitError(ChatVaultError):
    """The response needed more continuations than the configured bound."""


class StreamClosedError(ChatVaultError, RuntimeError):
    """A source was attached to a stream that already ended."""


class ProviderAuthError(ChatVaultError):
    """The model provider rejected or was never given an API key."""
