"""Message handlers for the primary (push) completion path."""

from .emit import emit_completed, emit_failed
from .status import StatusUpdateHandler
from .thumbnail import CompletionHandler, ThumbnailHandler, ThumbnailProcessor

__all__ = [
    "emit_completed",
    "emit_failed",
    "StatusUpdateHandler",
    "CompletionHandler",
    "ThumbnailHandler",
    "ThumbnailProcessor",
]
