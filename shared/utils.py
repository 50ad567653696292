from __future__ import annotations
import re

# ========================================
#           IDENTIFIER NORMALISATION
# ========================================
"""
Helpers that turn display names and room titles into the lowercase keys
the chat server uses for lookups.
"""

_NON_ID_RE = re.compile(r'[^a-z0-9]+')
_NON_ROOMID_RE = re.compile(r'[^a-z0-9-]+')


def to_id(text: object) -> str:
    """
    Normalise a user name to its user id: lowercase, only [a-z0-9].

    "Bot Name" -> "botname", " ~Staff@!" -> "staff"
    """
    if text is None:
        return ""
    return _NON_ID_RE.sub('', str(text).lower())


def to_room_id(text: object) -> str:
    """
    Normalise a room title (or a ">roomid" announcement) to a room id:
    lowercase, only [a-z0-9-]. Idempotent.

    ">Tours-Room 2" -> "tours-room2"
    """
    if text is None:
        return ""
    return _NON_ROOMID_RE.sub('', str(text).lower())


def split_rooms(value: object) -> list[str]:
    """
    Accept either a comma separated string or an iterable of room names and
    return normalised, non-empty room ids in their original order.
    """
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(',')
    else:
        items = list(value)
    rooms = []
    for item in items:
        roomid = to_room_id(item)
        if roomid:
            rooms.append(roomid)
    return rooms
