"""
Opaque pagination cursors.

A cursor is base64url-encoded JSON ``{"s": snapshot_id, "o": offset}``. The
snapshot id names the frozen ranking the first page was served from, so
later pages keep a stable order while scoring republishes the live ranking.
"""

import base64
import binascii
import json
from dataclasses import dataclass


class InvalidCursorError(ValueError):
    """The cursor is not one this service issued."""


@dataclass(frozen=True)
class Cursor:
    snapshot_id: str
    offset: int


def encode_cursor(snapshot_id: str, offset: int) -> str:
    payload = json.dumps({"s": snapshot_id, "o": offset}, separators=(",", ":"))
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> Cursor:
    """Parse a cursor.

    Raises:
        InvalidCursorError: Malformed encoding, JSON or field types.
    """
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidCursorError("Cursor must be a valid feed pagination cursor") from e

    if not isinstance(data, dict):
        raise InvalidCursorError("Cursor must be a valid feed pagination cursor")

    snapshot_id = data.get("s")
    offset = data.get("o")
    if (
        not isinstance(snapshot_id, str)
        or not snapshot_id
        or isinstance(offset, bool)
        or not isinstance(offset, int)
        or offset < 0
    ):
        raise InvalidCursorError("Cursor must be a valid feed pagination cursor")

    return Cursor(snapshot_id=snapshot_id, offset=offset)
