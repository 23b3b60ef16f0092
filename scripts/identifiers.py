"""
Channel identifier parsing.

Normalizes free-form channel references (canonical ids, @handles, custom
names, full channel URLs) into a typed ChannelIdentifier. Pure and total:
no network access, never raises for any string input.
"""

import re
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlsplit

PLATFORM_DOMAIN = "youtube.com"
RSS_FEED_URL = "https://www.youtube.com/feeds/videos.xml?channel_id={channel_id}"

CHANNEL_ID_RE = re.compile(r"^UC[A-Za-z0-9_-]{22}$")
HANDLE_RE = re.compile(r"^@([A-Za-z0-9_-]+)$")
CHANNEL_PATH_RE = re.compile(r"^/channel/(UC[A-Za-z0-9_-]{22})")
HANDLE_PATH_RE = re.compile(r"^/@([A-Za-z0-9_-]+)")
CUSTOM_PATH_RE = re.compile(r"^/(?:c/)?([A-Za-z0-9_-]+)")


class IdentifierKind(str, Enum):
    CHANNEL_ID = "channel_id"
    HANDLE = "handle"
    CUSTOM_URL = "custom_url"
    INVALID = "invalid"


@dataclass(frozen=True)
class ChannelIdentifier:
    kind: IdentifierKind
    value: str
    raw_input: str

    @property
    def is_valid(self) -> bool:
        return self.kind is not IdentifierKind.INVALID


def _invalid(raw: str) -> ChannelIdentifier:
    return ChannelIdentifier(IdentifierKind.INVALID, "", raw)


def _looks_like_url(text: str) -> bool:
    """A string only counts as a URL if it has both a scheme and a host."""
    try:
        parts = urlsplit(text)
        return bool(parts.scheme) and bool(parts.netloc)
    except ValueError:
        return False


def parse_channel_input(text: str) -> ChannelIdentifier:
    """
    Parse a channel reference. First match wins:

    1. UC + 22 id characters           -> CHANNEL_ID
    2. @handle                          -> HANDLE (value without the @)
    3. URL on the platform domain       -> /channel/UC..., /@handle, /c/name or /name
       URL on another domain, or any other path -> INVALID
    4. Any other non-URL text           -> CUSTOM_URL (used as a lookup term)
    5. Empty or whitespace              -> INVALID
    """
    raw = (text or "").strip()
    if not raw:
        return _invalid(raw)

    if CHANNEL_ID_RE.match(raw):
        return ChannelIdentifier(IdentifierKind.CHANNEL_ID, raw, raw)

    match = HANDLE_RE.match(raw)
    if match:
        return ChannelIdentifier(IdentifierKind.HANDLE, match.group(1), raw)

    if not _looks_like_url(raw):
        return ChannelIdentifier(IdentifierKind.CUSTOM_URL, raw, raw)

    try:
        parts = urlsplit(raw)
        host = (parts.hostname or "").lower()
    except ValueError:
        return _invalid(raw)

    if PLATFORM_DOMAIN not in host:
        return _invalid(raw)

    path = parts.path

    match = CHANNEL_PATH_RE.match(path)
    if match:
        return ChannelIdentifier(IdentifierKind.CHANNEL_ID, match.group(1), raw)

    match = HANDLE_PATH_RE.match(path)
    if match:
        return ChannelIdentifier(IdentifierKind.HANDLE, match.group(1), raw)

    match = CUSTOM_PATH_RE.match(path)
    if match:
        return ChannelIdentifier(IdentifierKind.CUSTOM_URL, match.group(1), raw)

    return _invalid(raw)


def is_valid_channel_input(text: str) -> bool:
    return parse_channel_input(text).is_valid


def is_channel_id(text: str) -> bool:
    return bool(text) and CHANNEL_ID_RE.match(text) is not None


def get_display_text(identifier: ChannelIdentifier) -> str:
    """Text that re-parses to the same kind for ids and handles."""
    if identifier.kind is IdentifierKind.CHANNEL_ID:
        return identifier.value
    if identifier.kind is IdentifierKind.HANDLE:
        return f"@{identifier.value}"
    if identifier.kind is IdentifierKind.CUSTOM_URL:
        return identifier.value
    return "Invalid format"


def rss_feed_url(identifier: ChannelIdentifier) -> str:
    """RSS feed URL for a canonical id; other kinds must be resolved first."""
    if identifier.kind is IdentifierKind.CHANNEL_ID:
        return RSS_FEED_URL.format(channel_id=identifier.value)
    return ""
