"""Feed skeleton serving with snapshot-stable pagination.

Components:
- FeedService: First-page snapshots, cursor pages, pinned announcement
- encode_cursor / decode_cursor: Opaque base64url pagination cursors
- FeedConfig: Pydantic settings for page sizes and snapshot TTL
"""

from src.feed.config import FeedConfig
from src.feed.cursor import Cursor, InvalidCursorError, decode_cursor, encode_cursor
from src.feed.service import FeedPage, FeedService, UnsupportedAlgorithmError

__all__ = [
    "Cursor",
    "FeedConfig",
    "FeedPage",
    "FeedService",
    "InvalidCursorError",
    "UnsupportedAlgorithmError",
    "decode_cursor",
    "encode_cursor",
]
