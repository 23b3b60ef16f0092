"""
Feed merging: deduplicate, filter, sort and paginate video records.

The merged feed is recomputed on every request from the records of one
aggregation pass. Output order is deterministic regardless of the order in
which channels finished fetching: ties on the sort key are broken by video
id ascending.
"""

import base64
import binascii
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Iterable, Optional

from config import get_config
from errors import InvalidInputError
from logger import get_logger
from models import FeedPage, VideoRecord

log = get_logger("feed")

CURSOR_PREFIX = "offset:"

SHORT_MAX_SECONDS = 4 * 60
LONG_MIN_SECONDS = 20 * 60


class SortKey(str, Enum):
    DATE = "date"
    VIEWS = "views"
    TITLE = "title"
    RELEVANCE = "relevance"  # order the platform returned, i.e. first seen


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class DurationBucket(str, Enum):
    ANY = "any"
    SHORT = "short"    # under 4 minutes
    MEDIUM = "medium"  # 4 to 20 minutes
    LONG = "long"      # over 20 minutes


@dataclass(frozen=True)
class FeedFilters:
    """Independent predicates, ANDed together. Empty values match everything."""
    channel_ids: frozenset = field(default_factory=frozenset)
    duration: DurationBucket = DurationBucket.ANY
    text: str = ""
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    def matches(self, record: VideoRecord) -> bool:
        if self.channel_ids and record.channel_id not in self.channel_ids:
            return False
        if not matches_duration(record, self.duration):
            return False
        if self.text and not matches_text(record, self.text):
            return False
        if self.date_from or self.date_to:
            if record.published_at is None:
                return False
            published = record.published_at.date()
            if self.date_from and published < self.date_from:
                return False
            # The end date includes the whole day
            if self.date_to and published > self.date_to:
                return False
        return True


def matches_duration(record: VideoRecord, bucket: DurationBucket) -> bool:
    if bucket is DurationBucket.ANY:
        return True
    seconds = record.duration_seconds
    if seconds is None:
        return False
    if bucket is DurationBucket.SHORT:
        return seconds < SHORT_MAX_SECONDS
    if bucket is DurationBucket.MEDIUM:
        return SHORT_MAX_SECONDS <= seconds <= LONG_MIN_SECONDS
    return seconds > LONG_MIN_SECONDS


def matches_text(record: VideoRecord, text: str) -> bool:
    needle = text.strip().lower()
    if not needle:
        return True
    return any(needle in (value or "").lower()
               for value in (record.title, record.description, record.channel_title))


def parse_date(value: str) -> date:
    """Parse YYYY-MM-DD for date filters."""
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except (ValueError, AttributeError) as e:
        raise InvalidInputError(f"Invalid date {value!r}, expected YYYY-MM-DD") from e


# ----------------------------------------------------------------------
# Cursor
# ----------------------------------------------------------------------

def encode_cursor(offset: int) -> str:
    raw = f"{CURSOR_PREFIX}{offset}".encode("ascii")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: Optional[str]) -> int:
    """
    Decode a page cursor to an offset. None or empty means the first page.

    Raises:
        InvalidInputError: The cursor was not produced by encode_cursor
    """
    if not cursor:
        return 0
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("ascii")
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidInputError(f"Invalid cursor: {cursor!r}") from e

    if not raw.startswith(CURSOR_PREFIX) or not raw[len(CURSOR_PREFIX):].isdigit():
        raise InvalidInputError(f"Invalid cursor: {cursor!r}")
    return int(raw[len(CURSOR_PREFIX):])


# ----------------------------------------------------------------------
# Merge
# ----------------------------------------------------------------------

def dedupe(records: Iterable[VideoRecord]) -> list[VideoRecord]:
    """Drop repeated video ids, keeping the first occurrence."""
    seen = set()
    unique = []
    for record in records:
        if record.id in seen:
            continue
        seen.add(record.id)
        unique.append(record)
    return unique


def sort_records(records: list[VideoRecord], key: SortKey, order: SortOrder) -> list[VideoRecord]:
    """
    Sort by key and direction with ties broken by id ascending.

    Records missing the sort value (no publish date, no view count) go last
    in either direction.
    """
    descending = order is SortOrder.DESC

    if key is SortKey.RELEVANCE:
        # Most relevant first is descending; positions are unique so no tie-break applies
        ranked = list(records)
        return ranked if descending else ranked[::-1]

    if key is SortKey.DATE:
        value = lambda r: r.published_at
    elif key is SortKey.VIEWS:
        value = lambda r: r.view_count
    else:
        value = lambda r: r.title.casefold()

    present = sorted((r for r in records if value(r) is not None), key=lambda r: r.id)
    missing = sorted((r for r in records if value(r) is None), key=lambda r: r.id)
    # Stable sort keeps the id order among equal keys, also when reversed
    present.sort(key=value, reverse=descending)
    return present + missing


def merge(
    records: Iterable[VideoRecord],
    sort: SortKey = SortKey.DATE,
    order: SortOrder = SortOrder.DESC,
    filters: Optional[FeedFilters] = None,
    page_size: int = None,
    cursor: Optional[str] = None,
    failed_channels: int = 0,
) -> FeedPage:
    """
    Build one page of the feed.

    Steps: dedupe by id, filter, sort, then slice at the cursor offset.
    The returned cursor is set only when more items remain.
    """
    page_size = page_size if page_size is not None else get_config().feed_page_size
    if page_size < 1:
        raise InvalidInputError(f"Page size must be positive, got {page_size}")
    offset = decode_cursor(cursor)
    filters = filters or FeedFilters()

    unique = dedupe(records)
    matching = [r for r in unique if filters.matches(r)]
    ordered = sort_records(matching, SortKey(sort), SortOrder(order))

    items = tuple(ordered[offset:offset + page_size])
    next_offset = offset + len(items)
    has_more = next_offset < len(ordered)

    log.debug(f"Merged feed: {len(unique)} unique, {len(matching)} matching, "
              f"page {offset}-{next_offset} of {len(ordered)}")

    return FeedPage(
        items=items,
        total_seen=len(ordered),
        has_more=has_more,
        cursor=encode_cursor(next_offset) if has_more else None,
        failed_channels=failed_channels,
    )
