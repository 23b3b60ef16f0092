"""
Fallback channel resolution.

Resolves a handle or custom name to a canonical channel id without the
authenticated API, by querying public mirrors of the platform. Used when
the primary path has no credential or the daily quota is exhausted.

Sources are tried in order, each as a plain data record:
- Piped instances (JSON search, direct then through CORS relays)
- Invidious instances (JSON search, relays only)
- The platform's own channel page (HTML, relays only)

Every attempt carries a bounded timeout. Failures are logged and fall
through to the next attempt; when everything fails the result is None.
"""

import json
import re
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional, TypeVar
from urllib.parse import quote

import requests

from config import get_config
from identifiers import is_channel_id
from logger import get_logger
from models import ChannelResolution, ResolutionSource

log = get_logger("fallback")

T = TypeVar("T")

HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; feed-aggregator/1.0)",
    "Accept-Language": "en-US,en;q=0.9",
}

CHANNEL_PAGE_URL = "https://www.youtube.com/{path}"

# Ordered by reliability; the RSS link is present on every channel page
PAGE_CHANNEL_ID_PATTERNS = [
    re.compile(r"channel_id=(UC[a-zA-Z0-9_-]{22})"),
    re.compile(r"/channel/(UC[a-zA-Z0-9_-]{22})"),
    re.compile(r'"browseId":"(UC[a-zA-Z0-9_-]{22})"'),
]
OG_TITLE_RE = re.compile(r'<meta\s+property="og:title"\s+content="([^"]*)"')
OG_IMAGE_RE = re.compile(r'<meta\s+property="og:image"\s+content="([^"]*)"')


class UnparseableResponse(ValueError):
    """A 2xx body that does not have the expected shape."""
    pass


def relayed_url(relay: str, target: str) -> str:
    """Wrap a target URL for a relay that takes it as a single query parameter."""
    return f"{relay}{quote(target, safe='')}"


def first_success(attempts: Iterable[Callable[[], Optional[T]]]) -> Optional[T]:
    """Run attempts in order and return the first non-None result."""
    for attempt in attempts:
        result = attempt()
        if result is not None:
            return result
    return None


class RelayClient:
    """
    GET a URL directly and/or through each CORS relay in turn.

    Yields the body of every 2xx response so the caller can stop at the
    first one it can parse. Transport errors and error statuses are logged
    and skipped.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        relays: list[str] = None,
        timeout: float = None,
        relay_delay: float = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        cfg = get_config()
        self.session = session if session is not None else requests.Session()
        self.relays = list(relays) if relays is not None else list(cfg.cors_relays)
        self.timeout = timeout if timeout is not None else cfg.fallback_timeout
        self.relay_delay = relay_delay if relay_delay is not None else cfg.relay_delay
        self._sleep = sleep

    def bodies(self, url: str, direct: bool = True) -> Iterator[str]:
        if direct:
            body = self._get(url, label="direct")
            if body is not None:
                yield body

        for i, relay in enumerate(self.relays):
            if i > 0 and self.relay_delay > 0:
                self._sleep(self.relay_delay)
            body = self._get(relayed_url(relay, url), label=f"relay {i + 1}/{len(self.relays)}")
            if body is not None:
                yield body

    def _get(self, url: str, label: str) -> Optional[str]:
        try:
            response = self.session.get(url, headers=HEADERS, timeout=self.timeout)
        except requests.RequestException as e:
            log.debug(f"{label} request failed for {url}: {type(e).__name__}: {e}")
            return None

        if not response.ok:
            log.debug(f"{label} returned HTTP {response.status_code} for {url}")
            return None
        return response.text


@dataclass(frozen=True)
class Source:
    """
    One alternate lookup source.

    build_url maps the search term to the request URL; parse maps a response
    body to a resolution, returning None when the source has no match and
    raising UnparseableResponse when the body is not what it should be.
    """
    name: str
    kind: ResolutionSource
    build_url: Callable[[str], str]
    parse: Callable[[str, str], Optional[ChannelResolution]]
    direct: bool = True


def _strip_at(term: str) -> str:
    return term[1:] if term.startswith("@") else term


def _load_json(body: str):
    if body.lstrip().startswith("<"):
        raise UnparseableResponse("Received HTML instead of JSON")
    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        raise UnparseableResponse(f"Invalid JSON: {e}") from e


def _absolute(url) -> str:
    if not isinstance(url, str):
        return ""
    if url.startswith("//"):
        return f"https:{url}"
    return url


def _entries(items, kind: str) -> list[dict]:
    """Search results as mappings; anything else in the list is skipped."""
    if not isinstance(items, list):
        raise UnparseableResponse(f"{kind} search results are not a list")
    entries = [item for item in items if isinstance(item, dict)]
    if items and not entries:
        raise UnparseableResponse(f"{kind} search results are not objects")
    return entries


def _text(value) -> str:
    return value if isinstance(value, str) else ""


# ----------------------------------------------------------------------
# Piped
# ----------------------------------------------------------------------

def piped_search_url(instance: str) -> Callable[[str], str]:
    def build(term: str) -> str:
        return f"{instance}/search?q={quote(_strip_at(term))}&filter=channels"
    return build


def parse_piped(body: str, term: str) -> Optional[ChannelResolution]:
    data = _load_json(body)
    if not isinstance(data, dict):
        raise UnparseableResponse("Piped search response is not an object")
    items = _entries(data.get("items") or [], "Piped")
    if not items:
        return None

    query = _strip_at(term)
    match = next((c for c in items if c.get("name") in (query, term)), items[0])
    channel_id = _text(match.get("url")).rstrip("/").split("/")[-1]
    if not is_channel_id(channel_id):
        raise UnparseableResponse(f"Piped result has no channel id: {match.get('url')!r}")

    return ChannelResolution(
        channel_id=channel_id,
        title=_text(match.get("name")) or query,
        thumbnail_url=_absolute(match.get("thumbnail")),
        source=ResolutionSource.PIPED,
    )


# ----------------------------------------------------------------------
# Invidious
# ----------------------------------------------------------------------

def invidious_search_url(instance: str) -> Callable[[str], str]:
    def build(term: str) -> str:
        return f"{instance}/api/v1/search?q={quote(_strip_at(term))}&type=channel"
    return build


def parse_invidious(body: str, term: str) -> Optional[ChannelResolution]:
    data = _load_json(body)
    items = _entries(data, "Invidious")
    if not items:
        return None

    query = _strip_at(term)
    match = next((c for c in items if c.get("author") in (query, term)), items[0])
    channel_id = _text(match.get("authorId"))
    if not is_channel_id(channel_id):
        raise UnparseableResponse(f"Invidious result has no channel id: {channel_id!r}")

    thumbnails = match.get("authorThumbnails")
    thumbnail = next((t for t in thumbnails if isinstance(t, dict)), {}) if isinstance(thumbnails, list) else {}
    return ChannelResolution(
        channel_id=channel_id,
        title=_text(match.get("author")) or query,
        thumbnail_url=_absolute(thumbnail.get("url")),
        source=ResolutionSource.INVIDIOUS,
    )


# ----------------------------------------------------------------------
# Channel page
# ----------------------------------------------------------------------

def channel_page_url(term: str) -> str:
    path = term if term.startswith("@") else quote(term)
    return CHANNEL_PAGE_URL.format(path=path)


def parse_channel_page(body: str, term: str) -> Optional[ChannelResolution]:
    channel_id = None
    for pattern in PAGE_CHANNEL_ID_PATTERNS:
        match = pattern.search(body)
        if match:
            channel_id = match.group(1)
            break
    if not channel_id:
        raise UnparseableResponse("No channel id on page")

    title = OG_TITLE_RE.search(body)
    image = OG_IMAGE_RE.search(body)
    return ChannelResolution(
        channel_id=channel_id,
        title=title.group(1) if title else _strip_at(term),
        thumbnail_url=image.group(1) if image else "",
        source=ResolutionSource.CHANNEL_PAGE,
    )


def default_sources(piped_instances: list[str], invidious_instances: list[str]) -> list[Source]:
    sources = [
        Source(f"piped:{instance}", ResolutionSource.PIPED, piped_search_url(instance), parse_piped)
        for instance in piped_instances
    ]
    sources += [
        Source(f"invidious:{instance}", ResolutionSource.INVIDIOUS,
               invidious_search_url(instance), parse_invidious, direct=False)
        for instance in invidious_instances
    ]
    sources.append(Source("channel-page", ResolutionSource.CHANNEL_PAGE,
                          channel_page_url, parse_channel_page, direct=False))
    return sources


class FallbackResolver:
    """Resolve handles and custom names through alternate public sources."""

    def __init__(
        self,
        client: Optional[RelayClient] = None,
        sources: Optional[list[Source]] = None,
    ):
        cfg = get_config()
        self.client = client if client is not None else RelayClient()
        self.sources = sources if sources is not None else default_sources(
            cfg.piped_instances, cfg.invidious_instances
        )

    def attempt(self, source: Source, term: str) -> Optional[ChannelResolution]:
        """
        Try one source: direct request (if allowed), then each relay.

        Stops at the first parseable body. A body that parses but has no
        match ends this source since relays would return the same answer.
        """
        url = source.build_url(term)
        for body in self.client.bodies(url, direct=source.direct):
            try:
                resolution = source.parse(body, term)
            except UnparseableResponse as e:
                log.debug(f"{source.name}: unusable response ({e})")
                continue
            if resolution is None:
                log.debug(f"{source.name}: no match for {term}")
            else:
                log.info(f"Resolved {term} via {source.name}: {resolution.channel_id}")
            return resolution

        log.debug(f"{source.name}: all attempts failed for {term}")
        return None

    def resolve(self, term: str) -> Optional[ChannelResolution]:
        """
        Resolve a handle (with or without @) or custom name.

        Returns:
            ChannelResolution, or None when every source failed
        """
        term = (term or "").strip()
        if not term:
            return None

        log.info(f"Attempting fallback resolution for {term} ({len(self.sources)} sources)")
        result = first_success(
            (lambda source=source: self.attempt(source, term)) for source in self.sources
        )
        if result is None:
            log.warning(f"Fallback resolution found nothing for {term}")
        return result
