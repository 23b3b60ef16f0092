"""
Per-channel RSS feed reader.

Zero-auth, zero-quota source of a channel's most recent uploads (the
platform publishes the latest 15). Lower fidelity than the API: no
duration, and view counts only where the feed carries media statistics.
"""

from typing import Optional
from xml.etree import ElementTree as ET

from errors import InvalidInputError, RemoteUnavailableError
from fallback import RelayClient
from identifiers import RSS_FEED_URL, is_channel_id
from logger import get_logger
from models import VideoRecord
from youtube_api import parse_timestamp

log = get_logger("rss")

NS = {
    "atom": "http://www.w3.org/2005/Atom",
    "yt": "http://www.youtube.com/xml/schemas/2015",
    "media": "http://search.yahoo.com/mrss/",
}


def parse_feed(xml_text: str, limit: Optional[int] = None) -> list[VideoRecord]:
    """
    Parse a channel's Atom feed into VideoRecords.

    Raises:
        ValueError: If the body is not a well-formed feed
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise ValueError(f"Malformed channel feed: {e}") from e
    if root.tag != f"{{{NS['atom']}}}feed":
        raise ValueError(f"Not an Atom feed: {root.tag}")

    feed_channel_id = root.findtext("yt:channelId", default="", namespaces=NS)
    feed_author = root.findtext("atom:author/atom:name", default="", namespaces=NS)

    records = []
    for entry in root.findall("atom:entry", NS):
        video_id = entry.findtext("yt:videoId", default="", namespaces=NS)
        if not video_id:
            continue

        group = entry.find("media:group", NS)
        thumbnails = {}
        description = ""
        view_count = None
        if group is not None:
            description = group.findtext("media:description", default="", namespaces=NS)
            thumb = group.find("media:thumbnail", NS)
            if thumb is not None and thumb.get("url"):
                thumbnails["high"] = {
                    "url": thumb.get("url"),
                    "width": int(thumb.get("width", 0) or 0),
                    "height": int(thumb.get("height", 0) or 0),
                }
            stats = group.find("media:community/media:statistics", NS)
            if stats is not None and stats.get("views", "").isdigit():
                view_count = int(stats.get("views"))

        records.append(VideoRecord(
            id=video_id,
            channel_id=entry.findtext("yt:channelId", default=feed_channel_id, namespaces=NS),
            title=entry.findtext("atom:title", default="", namespaces=NS),
            published_at=parse_timestamp(entry.findtext("atom:published", default="", namespaces=NS)),
            duration_seconds=None,
            view_count=view_count,
            thumbnails=thumbnails,
            channel_title=entry.findtext("atom:author/atom:name", default=feed_author, namespaces=NS),
            description=description,
        ))

        if limit is not None and len(records) >= limit:
            break

    return records


class RssFetcher:
    """Fetch channel uploads from the public feed, directly and then through relays."""

    def __init__(self, client: Optional[RelayClient] = None):
        self.client = client if client is not None else RelayClient()

    def fetch_channel_rss(self, channel_id: str, limit: int) -> list[VideoRecord]:
        """
        Fetch the newest `limit` uploads of a channel.

        Raises:
            InvalidInputError: channel_id is not a canonical id
            RemoteUnavailableError: No attempt returned a parseable feed
        """
        if not is_channel_id(channel_id):
            raise InvalidInputError(f"RSS feeds need a canonical channel id, got {channel_id!r}")

        url = RSS_FEED_URL.format(channel_id=channel_id)
        for body in self.client.bodies(url, direct=True):
            try:
                records = parse_feed(body, limit)
            except ValueError as e:
                log.debug(f"Unusable feed body for {channel_id}: {e}")
                continue
            log.debug(f"RSS: {len(records)} videos for {channel_id}")
            return records

        raise RemoteUnavailableError(f"RSS feed unavailable for {channel_id}")
