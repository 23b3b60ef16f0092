"""Data models shared across the feed aggregation pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class ResolutionSource(str, Enum):
    """Where a channel resolution came from."""
    PRIMARY = "primary"
    PIPED = "piped"
    INVIDIOUS = "invidious"
    CHANNEL_PAGE = "channel_page"
    OPML = "opml"
    CONFIG = "config"


class FetchPath(str, Enum):
    """Which path produced a channel's uploads."""
    PRIMARY = "primary"
    RSS = "rss"


@dataclass(frozen=True)
class ChannelResolution:
    """A channel identifier resolved to its canonical id."""
    channel_id: str
    title: str
    thumbnail_url: str = ""
    source: ResolutionSource = ResolutionSource.PRIMARY


@dataclass(frozen=True)
class UploadsPlaylistRef:
    """A channel's upload playlist. Lives for one aggregation pass."""
    channel_id: str
    playlist_id: str


@dataclass(frozen=True)
class VideoRecord:
    """A single video in the feed. Immutable once built."""
    id: str
    channel_id: str
    title: str
    published_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    view_count: Optional[int] = None
    thumbnails: dict = field(default_factory=dict, hash=False, compare=False)
    channel_title: str = ""
    description: str = ""

    @property
    def thumbnail_url(self) -> str:
        for size in ("high", "medium", "default"):
            url = (self.thumbnails.get(size) or {}).get("url")
            if url:
                return url
        return ""


@dataclass
class BatchResult:
    """Outcome of one batch fetch: records plus the channels that failed."""
    records: list[VideoRecord] = field(default_factory=list)
    failed_channels: list[str] = field(default_factory=list)
    succeeded_channels: list[str] = field(default_factory=list)
    paths: dict[str, FetchPath] = field(default_factory=dict)
    auth_failed: bool = False

    @property
    def failed_count(self) -> int:
        return len(self.failed_channels)


@dataclass(frozen=True)
class FeedPage:
    """One page of the merged feed. Recomputed per request."""
    items: tuple[VideoRecord, ...]
    total_seen: int
    has_more: bool
    cursor: Optional[str] = None
    failed_channels: int = 0
