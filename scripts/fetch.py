#!/usr/bin/env python3
"""
Subscription Feed Aggregator

Builds a single deduplicated, sortable, paginated feed from the recent
uploads of subscribed (or listed) channels.
Features:
- Quota tracking with a Pacific-time daily reset and background re-check
- Automatic switch to RSS and public mirrors when the quota is exhausted
  or no credential is available
- Bounded-concurrency fetching that tolerates per-channel failures
- Detailed DEBUG logging for development

Usage:
    python fetch.py --subscriptions
    python fetch.py --channel @GoogleDevelopers --channel UCuAXFkgsw1L7xaCfnd5JJOw
    python fetch.py --config config/channels.yaml --sort views --search python
    python fetch.py --opml subscriptions.opml --duration long --json
    python fetch.py --resolve @linustechtips
"""

import argparse
import itertools
import json
import logging
import sys
from dataclasses import dataclass, field, replace
from typing import Optional

from batch import BatchFetcher
from config import get_config
from errors import AuthRequiredError, FeedError, InvalidInputError, QuotaExhaustedError, RemoteUnavailableError
from fallback import FallbackResolver
from feed import DurationBucket, FeedFilters, SortKey, SortOrder, merge, parse_date
from identifiers import IdentifierKind, get_display_text, parse_channel_input
from logger import LogContext, get_logger, setup_logging
from models import ChannelResolution, FeedPage, ResolutionSource
from opml import load_opml
from quota import QuotaTracker
from rss import RssFetcher
from store import KeyValueStore, LibsqlStore, MemoryStore
from youtube_api import YouTubeFetcher

log = get_logger("fetch")


@dataclass
class FeedRequest:
    """What the caller wants to see. Unset values come from config."""
    sort: SortKey = SortKey.DATE
    order: SortOrder = SortOrder.DESC
    filters: FeedFilters = field(default_factory=FeedFilters)
    page_size: Optional[int] = None
    cursor: Optional[str] = None
    per_channel_limit: Optional[int] = None


def channel_entry_identifier(entry) -> Optional[str]:
    """Config entries are either plain strings or mappings with an identifier."""
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        return entry.get("identifier") or entry.get("id") or entry.get("handle")
    return None


class FeedAggregator:
    """
    Runs aggregation passes: channels -> batch fetch -> merge.

    Args:
        quota: Process-wide quota tracker
        primary: Authenticated API client, or None without a credential
        fallback: Mirror-based resolver for handles and custom names
        batch: Upload fetcher (default: built from primary and an RSS reader)
        channels: Extra channel identifiers (config file or command line)
        imported: Channels already resolved elsewhere (OPML import)
        use_subscriptions: Include the signed-in user's subscriptions
    """

    def __init__(
        self,
        quota: QuotaTracker,
        primary: Optional[YouTubeFetcher] = None,
        fallback: Optional[FallbackResolver] = None,
        batch: Optional[BatchFetcher] = None,
        channels: Optional[list[str]] = None,
        imported: Optional[list[ChannelResolution]] = None,
        use_subscriptions: bool = True,
    ):
        self.quota = quota
        self.primary = primary
        self.fallback = fallback if fallback is not None else FallbackResolver()
        self.batch = batch if batch is not None else BatchFetcher(primary=primary, rss=RssFetcher(), quota=quota)
        self.channels = list(channels or [])
        self.imported = list(imported or [])
        self.use_subscriptions = use_subscriptions
        self._runs = itertools.count(1)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def start(self) -> None:
        self.quota.start_reset_timer()

    def close(self) -> None:
        self.quota.stop_reset_timer()

    def primary_available(self) -> bool:
        return self.primary is not None and not self.quota.is_exhausted()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, raw: str) -> Optional[ChannelResolution]:
        """
        Resolve free-form channel input to a canonical channel.

        Returns None when no source knows the channel.

        Raises:
            InvalidInputError: Input is not a channel reference
            AuthRequiredError: The credential was rejected by the primary path
        """
        identifier = parse_channel_input(raw)
        if not identifier.is_valid:
            raise InvalidInputError(f"Not a channel id, handle or channel URL: {raw!r}")

        if self.primary_available():
            try:
                return self.primary.resolve_identifier(identifier)
            except QuotaExhaustedError:
                log.info(f"Quota exhausted while resolving {raw}, trying fallback sources")
            except RemoteUnavailableError as e:
                log.warning(f"Primary resolution failed for {raw}: {e}, trying fallback sources")

        if identifier.kind is IdentifierKind.CHANNEL_ID:
            # Already canonical; the feed path needs nothing else
            return ChannelResolution(channel_id=identifier.value, title=identifier.value,
                                     source=ResolutionSource.CONFIG)

        return self.fallback.resolve(get_display_text(identifier))

    def list_channels(self) -> list[ChannelResolution]:
        """
        Channels for this pass: subscriptions (when signed in), imported
        channels and listed identifiers, each channel once.
        """
        found: dict[str, ChannelResolution] = {}

        if self.use_subscriptions:
            if self.primary is None:
                if not self.channels and not self.imported:
                    raise AuthRequiredError("Subscriptions need an access token (set YOUTUBE_ACCESS_TOKEN)")
                log.info("No access token, skipping subscriptions")
            elif self.quota.is_exhausted():
                log.warning("Quota exhausted, subscriptions cannot be listed until the daily reset")
            else:
                try:
                    for channel in self.primary.fetch_subscriptions():
                        found.setdefault(channel.channel_id, channel)
                except QuotaExhaustedError:
                    log.warning("Quota ran out while listing subscriptions, continuing without subscriptions")
                except RemoteUnavailableError as e:
                    log.error(f"Could not list subscriptions: {e}")

        for channel in self.imported:
            found.setdefault(channel.channel_id, channel)

        for raw in self.channels:
            try:
                resolution = self.resolve(raw)
            except InvalidInputError as e:
                log.warning(f"Skipping channel: {e}")
                continue
            if resolution is None:
                log.warning(f"Could not resolve channel {raw}")
                continue
            found.setdefault(resolution.channel_id, resolution)

        log.info(f"{len(found)} channels to aggregate")
        return list(found.values())

    # ------------------------------------------------------------------
    # Feed
    # ------------------------------------------------------------------

    def build_feed(self, request: Optional[FeedRequest] = None) -> FeedPage:
        """
        Run one aggregation pass and return the requested page.

        Raises:
            InvalidInputError: Bad cursor or page size, or no channels at all
            AuthRequiredError: Subscriptions requested without a usable credential
        """
        request = request or FeedRequest()
        self.quota.check_daily_reset()

        with LogContext(log, "aggregation pass", level=logging.INFO, run=next(self._runs)):
            channels = self.list_channels()
            if not channels:
                raise InvalidInputError("No channels to aggregate")

            titles = {c.channel_id: c.title for c in channels}
            result = self.batch.fetch_uploads([c.channel_id for c in channels], request.per_channel_limit)
            if result.auth_failed:
                log.warning("Access token was rejected during this pass; sign in again for full data")
            if result.failed_count:
                log.warning(f"{result.failed_count} of {len(channels)} channels failed; showing a partial feed")

            # Fill channel titles the upload source left blank
            records = [
                replace(r, channel_title=titles.get(r.channel_id, "")) if not r.channel_title else r
                for r in result.records
            ]
            page = merge(
                records,
                sort=request.sort,
                order=request.order,
                filters=request.filters,
                page_size=request.page_size,
                cursor=request.cursor,
                failed_channels=result.failed_count,
            )

        return page


# ----------------------------------------------------------------------
# CLI
# ----------------------------------------------------------------------

def open_store() -> KeyValueStore:
    """Settings store for the quota ledger; falls back to memory if it cannot be opened."""
    try:
        return LibsqlStore()
    except Exception as e:
        log.warning(f"Settings store unavailable ({type(e).__name__}: {e}), quota will not persist")
        return MemoryStore()


def record_to_dict(record) -> dict:
    return {
        "id": record.id,
        "channel_id": record.channel_id,
        "channel_title": record.channel_title,
        "title": record.title,
        "published_at": record.published_at.isoformat() if record.published_at else None,
        "duration_seconds": record.duration_seconds,
        "view_count": record.view_count,
        "thumbnail_url": record.thumbnail_url,
        "url": f"https://www.youtube.com/watch?v={record.id}",
    }


def page_to_dict(page: FeedPage) -> dict:
    return {
        "items": [record_to_dict(r) for r in page.items],
        "total_seen": page.total_seen,
        "has_more": page.has_more,
        "cursor": page.cursor,
        "failed_channels": page.failed_channels,
    }


def print_page(page: FeedPage) -> None:
    for record in page.items:
        published = record.published_at.strftime("%Y-%m-%d") if record.published_at else "----------"
        views = f"{record.view_count:,}" if record.view_count is not None else "-"
        print(f"{published}  {record.id}  {views:>12}  {record.channel_title[:24]:<24}  {record.title}")
    print(f"\n{len(page.items)} of {page.total_seen} videos", end="")
    if page.has_more:
        print(f", next page: --cursor {page.cursor}", end="")
    print()
    if page.failed_channels:
        print(f"Warning: {page.failed_channels} channel(s) could not be fetched", file=sys.stderr)


def build_request(args) -> FeedRequest:
    filters = FeedFilters(
        channel_ids=frozenset(args.channel_filter or []),
        duration=DurationBucket(args.duration),
        text=args.search or "",
        date_from=parse_date(args.date_from) if args.date_from else None,
        date_to=parse_date(args.date_to) if args.date_to else None,
    )
    if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
        raise InvalidInputError(f"--from {filters.date_from} is after --to {filters.date_to}")
    return FeedRequest(
        sort=SortKey(args.sort),
        order=SortOrder(args.order),
        filters=filters,
        page_size=args.page_size,
        cursor=args.cursor,
        per_channel_limit=args.per_channel,
    )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Aggregate recent uploads of subscribed channels into one feed",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    # Input options
    parser.add_argument(
        "--channel", "-c",
        action="append",
        help="Channel ID, handle (@username), custom name or URL (repeatable)"
    )
    parser.add_argument(
        "--config",
        help="Path to config YAML file (settings and channels)"
    )
    parser.add_argument(
        "--opml",
        help="Import channels from a subscriptions OPML export"
    )
    parser.add_argument(
        "--subscriptions",
        action="store_true",
        help="Include the signed-in user's subscriptions (needs YOUTUBE_ACCESS_TOKEN)"
    )
    parser.add_argument(
        "--resolve",
        metavar="INPUT",
        help="Resolve a single channel reference and exit"
    )

    # Feed options
    parser.add_argument(
        "--sort",
        choices=[k.value for k in SortKey],
        default=SortKey.DATE.value,
        help="Sort key (default: date)"
    )
    parser.add_argument(
        "--order",
        choices=[o.value for o in SortOrder],
        default=SortOrder.DESC.value,
        help="Sort direction (default: desc)"
    )
    parser.add_argument(
        "--page-size",
        type=int,
        default=None,
        help="Videos per page (default: from config)"
    )
    parser.add_argument(
        "--cursor",
        help="Cursor from a previous page"
    )
    parser.add_argument(
        "--search",
        help="Only videos whose title, description or channel contains this text"
    )
    parser.add_argument(
        "--duration",
        choices=[b.value for b in DurationBucket],
        default=DurationBucket.ANY.value,
        help="Duration bucket: short (<4 min), medium (4-20 min), long (>20 min)"
    )
    parser.add_argument(
        "--channel-filter",
        action="append",
        metavar="CHANNEL_ID",
        help="Only show videos from this channel id (repeatable)"
    )
    parser.add_argument(
        "--from",
        dest="date_from",
        metavar="YYYY-MM-DD",
        help="Only videos published on or after this date"
    )
    parser.add_argument(
        "--to",
        dest="date_to",
        metavar="YYYY-MM-DD",
        help="Only videos published on or before this date"
    )
    parser.add_argument(
        "--per-channel",
        type=int,
        default=None,
        help="Recent videos to fetch per channel (default: from config, max 50)"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the page as JSON"
    )

    # Quota options
    parser.add_argument(
        "--quota-limit",
        type=int,
        default=None,
        help="Daily API quota limit (default: from config)"
    )
    parser.add_argument(
        "--reset-quota",
        action="store_true",
        help="Reset today's quota counter to 0 (use if quota tracking was corrupted)"
    )

    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    cfg = get_config(args.config, reload=args.config is not None)
    setup_logging()

    log.info("=" * 60)
    log.info("Feed Aggregator Starting")
    log.info("=" * 60)
    log.debug(f"Arguments: {vars(args)}")

    quota = QuotaTracker(store=open_store(), daily_limit=args.quota_limit)
    if args.reset_quota:
        log.info("Resetting quota counter to 0...")
        quota.reset()

    primary = None
    if cfg.access_token:
        primary = YouTubeFetcher(quota=quota)
    else:
        log.info("No access token set, using RSS and public mirrors only")

    channels = list(args.channel or [])
    if not channels and not args.opml:
        channels = [c for c in (channel_entry_identifier(e) for e in cfg.channels) if c]

    try:
        imported = load_opml(args.opml) if args.opml else []
        aggregator = FeedAggregator(
            quota=quota,
            primary=primary,
            channels=channels,
            imported=imported,
            use_subscriptions=args.subscriptions or not (channels or imported),
        )

        if args.resolve:
            resolution = aggregator.resolve(args.resolve)
            if resolution is None:
                log.error(f"Channel not found: {args.resolve}")
                return 1
            if args.json:
                print(json.dumps({
                    "channel_id": resolution.channel_id,
                    "title": resolution.title,
                    "thumbnail_url": resolution.thumbnail_url,
                    "source": resolution.source.value,
                }, indent=2))
            else:
                print(f"{resolution.channel_id}  {resolution.title}  ({resolution.source.value})")
            return 0

        with aggregator:
            page = aggregator.build_feed(build_request(args))

    except InvalidInputError as e:
        log.error(f"Invalid input: {e}")
        return 2
    except AuthRequiredError as e:
        log.error(f"Authentication required: {e}")
        return 3
    except FeedError as e:
        log.error(f"Aggregation failed: {e}")
        return 1
    finally:
        quota.log_summary()

    if args.json:
        print(json.dumps(page_to_dict(page), indent=2))
    else:
        print_page(page)
    return 0


if __name__ == "__main__":
    sys.exit(main())
