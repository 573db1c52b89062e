"""Topic tokenisation shared by the retained-message and subscription trees."""

from __future__ import annotations

SEPARATOR = b"/"


def _decode(token: bytes) -> str:
    return token.decode("utf-8", errors="surrogateescape")


def next_token(topic: bytes | bytearray | None) -> tuple[bytes | None, str]:
    """Split the first level off a topic.

    Returns the remaining topic (None when there is no separator left) and the
    first level as a string. An exhausted topic yields an empty token.
    """
    if not topic:
        return None, ""
    head, sep, rest = bytes(topic).partition(SEPARATOR)
    if not sep:
        return None, _decode(head)
    return rest, _decode(head)