"""
Subscription import from OPML exports.

The platform's subscription export nests one `outline` per channel (type
"rss", xmlUrl pointing at the channel feed) inside a container outline.
"""

from pathlib import Path
from urllib.parse import parse_qs, urlsplit
from xml.etree import ElementTree as ET

from errors import InvalidInputError
from identifiers import is_channel_id
from logger import get_logger
from models import ChannelResolution, ResolutionSource

log = get_logger("opml")


def _channel_id_from_feed_url(xml_url: str) -> str:
    try:
        query = parse_qs(urlsplit(xml_url).query)
    except ValueError:
        return ""
    return (query.get("channel_id") or [""])[0]


def parse_opml(content: str) -> list[ChannelResolution]:
    """
    Extract subscribed channels from OPML text.

    Outlines with a feed URL that does not carry a valid channel id are
    skipped. Repeated channels are kept once.

    Raises:
        InvalidInputError: Empty content, malformed XML or no <opml> root
    """
    if not content or not content.strip():
        raise InvalidInputError("OPML content is empty")
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise InvalidInputError(f"Failed to parse OPML XML: {e}") from e
    if root.tag != "opml":
        raise InvalidInputError(f"Invalid OPML: root element is <{root.tag}>")
    if root.find("body") is None:
        raise InvalidInputError("Invalid OPML: missing <body>")

    channels = {}
    for outline in root.iter("outline"):
        xml_url = outline.get("xmlUrl")
        if not xml_url:
            continue
        channel_id = _channel_id_from_feed_url(xml_url)
        if not is_channel_id(channel_id):
            log.warning(f"Skipping outline with invalid channel URL: {xml_url}")
            continue
        if channel_id in channels:
            continue
        channels[channel_id] = ChannelResolution(
            channel_id=channel_id,
            title=outline.get("title") or outline.get("text") or "Unknown Channel",
            source=ResolutionSource.OPML,
        )

    log.info(f"Parsed {len(channels)} channels from OPML")
    return list(channels.values())


def load_opml(path: str) -> list[ChannelResolution]:
    """Read and parse an OPML file."""
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise InvalidInputError(f"Cannot read OPML file {path}: {e}") from e
    return parse_opml(content)
