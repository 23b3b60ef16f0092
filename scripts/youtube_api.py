"""
YouTube API fetcher module.
Handles all interactions with the authenticated YouTube Data API v3.

Features:
- Bearer-token credential supplied by the OAuth flow
- Quota pre-flight gate and per-call cost accounting
- Retry with exponential backoff for transient errors
- Distinct signalling of auth failure vs quota exhaustion
"""

import json
import re
import ssl
import threading
import time
from datetime import datetime
from functools import wraps
from typing import Callable, Optional

import google_auth_httplib2
import httplib2
import requests
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from config import get_config
from errors import AuthRequiredError, QuotaExhaustedError, RemoteUnavailableError
from identifiers import ChannelIdentifier, IdentifierKind
from logger import get_logger
from models import ChannelResolution, ResolutionSource, UploadsPlaylistRef, VideoRecord
from quota import QuotaTracker

log = get_logger("youtube_api")


# ============================================================================
# RETRY LOGIC WITH EXPONENTIAL BACKOFF
# ============================================================================

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

NETWORK_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    httplib2.HttpLib2Error,
    ConnectionResetError,
    TimeoutError,
    ssl.SSLError,
    OSError,
)

QUOTA_REASONS = {"quotaExceeded", "dailyLimitExceeded"}
AUTH_REASONS = {"insufficientPermissions", "authError", "forbidden"}


def retry_with_backoff(
    max_retries: int = None,
    base_delay: float = None,
    max_delay: float = None,
    exponential_base: float = 2.0,
):
    """
    Decorator for retrying API calls with exponential backoff.

    Retries on:
    - HTTP 429 (rate limit)
    - HTTP 5xx (server errors)
    - Connection errors and timeouts

    Anything else (401, 403, 404, ...) is raised immediately.
    """
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            cfg = get_config()
            _max_retries = max_retries if max_retries is not None else cfg.api_max_retries
            _base_delay = base_delay if base_delay is not None else cfg.api_base_delay
            _max_delay = max_delay if max_delay is not None else cfg.api_max_delay
            last_exception = None

            for attempt in range(_max_retries + 1):
                try:
                    return func(*args, **kwargs)

                except HttpError as e:
                    status_code = e.resp.status if hasattr(e, 'resp') else None
                    if status_code not in RETRYABLE_STATUS_CODES:
                        raise

                    last_exception = e
                    if attempt < _max_retries:
                        delay = min(_base_delay * (exponential_base ** attempt), _max_delay)
                        retry_after = e.resp.get('retry-after') if hasattr(e, 'resp') else None
                        if retry_after:
                            try:
                                delay = max(delay, float(retry_after))
                            except ValueError:
                                pass
                        log.warning(f"HTTP {status_code} error, retrying in {delay:.1f}s "
                                    f"(attempt {attempt + 1}/{_max_retries + 1}): {e}")
                        time.sleep(delay)

                except NETWORK_ERRORS as e:
                    last_exception = e
                    if attempt < _max_retries:
                        delay = min(_base_delay * (exponential_base ** attempt), _max_delay)
                        log.warning(f"Connection error, retrying in {delay:.1f}s "
                                    f"(attempt {attempt + 1}/{_max_retries + 1}): {type(e).__name__}: {e}")
                        time.sleep(delay)

            log.error(f"All {_max_retries + 1} attempts failed for {func.__name__}")
            raise last_exception

        return wrapper
    return decorator


def http_error_reason(error: HttpError) -> Optional[str]:
    """Pull the first `reason` out of a Google API error body."""
    try:
        content = error.content.decode("utf-8") if isinstance(error.content, bytes) else error.content
        payload = json.loads(content or "{}")
    except (ValueError, AttributeError):
        return None
    details = payload.get("error", {}).get("errors") or []
    if details:
        return details[0].get("reason")
    return None


def chunked(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def parse_duration(duration: str) -> Optional[int]:
    """Convert ISO 8601 duration (P1DT1H2M3S) to seconds."""
    if not duration:
        return None
    match = re.match(r'P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?)?$', duration)
    if not match:
        return None
    days = int(match.group(1) or 0)
    hours = int(match.group(2) or 0)
    minutes = int(match.group(3) or 0)
    seconds = int(match.group(4) or 0)
    return days * 86400 + hours * 3600 + minutes * 60 + seconds


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp into an aware datetime."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def best_thumbnail(thumbnails: dict) -> str:
    return (thumbnails.get("high") or thumbnails.get("medium") or thumbnails.get("default") or {}).get("url", "")


class YouTubeFetcher:
    """
    Authenticated YouTube Data API client with quota gating and retry logic.

    Every call is pre-flight checked against the quota tracker; when the
    quota is exhausted QuotaExhaustedError is raised without touching the
    network. Successful calls record their unit cost.

    httplib2 is not thread-safe, so each worker thread builds its own
    service object on first use.
    """

    def __init__(
        self,
        access_token: str = None,
        quota: Optional[QuotaTracker] = None,
        service=None,
        timeout: float = None,
    ):
        cfg = get_config()
        self.access_token = access_token if access_token is not None else cfg.access_token
        if not self.access_token and service is None:
            raise AuthRequiredError("No access token provided; sign in to load subscriptions")

        self.quota = quota if quota is not None else QuotaTracker()
        self.timeout = timeout if timeout is not None else cfg.api_timeout
        self.page_size = min(cfg.api_max_results_per_page, 50)
        self.batch_size = min(cfg.api_batch_size, 50)
        self._service = service
        self._thread_local = threading.local()

        log.debug(f"YouTubeFetcher initialized, timeout: {self.timeout}s")

    def _youtube(self):
        """Get or create the API service for the current thread."""
        if self._service is not None:
            return self._service
        if not hasattr(self._thread_local, 'youtube'):
            credentials = Credentials(token=self.access_token)
            http = google_auth_httplib2.AuthorizedHttp(credentials, http=httplib2.Http(timeout=self.timeout))
            self._thread_local.youtube = build("youtube", "v3", http=http, cache_discovery=False)
        return self._thread_local.youtube

    @retry_with_backoff()
    def _execute(self, make_request: Callable):
        return make_request(self._youtube()).execute()

    def _call(self, operation: str, make_request: Callable) -> dict:
        """
        Run one API call: quota gate, execute with retry, record cost.

        Raises:
            QuotaExhaustedError: Quota already exhausted, or the platform says so
            AuthRequiredError: Token rejected
            RemoteUnavailableError: Network failure, timeout or other error status
        """
        self.quota.ensure_available(operation)

        try:
            response = self._execute(make_request)
        except HttpError as e:
            raise self._translate_http_error(e, operation) from e
        except RefreshError as e:
            # A bare access token cannot be refreshed; the transport gives up on 401
            log.warning(f"{operation}: access token rejected and cannot be refreshed")
            raise AuthRequiredError(f"Access token rejected by {operation}; re-authentication required") from e
        except NETWORK_ERRORS as e:
            raise RemoteUnavailableError(f"{operation} failed: {type(e).__name__}: {e}") from e

        self.quota.use(operation)
        return response

    def _translate_http_error(self, error: HttpError, operation: str) -> Exception:
        status = error.resp.status if hasattr(error, 'resp') else None
        reason = http_error_reason(error)

        if status == 401:
            log.warning(f"{operation}: access token rejected (401)")
            return AuthRequiredError(f"Access token rejected by {operation}; re-authentication required")

        if status == 403 and reason in QUOTA_REASONS:
            self.quota.mark_exhausted()
            return QuotaExhaustedError(f"Platform reported {reason} on {operation}")

        if status == 403 and reason in AUTH_REASONS:
            log.warning(f"{operation}: insufficient permissions ({reason})")
            return AuthRequiredError(f"Insufficient permissions for {operation} ({reason})")

        log.error(f"Non-retryable HTTP error {status} on {operation}: {reason or error}")
        return RemoteUnavailableError(f"{operation} failed with HTTP {status} ({reason})", status=status)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def fetch_subscriptions(self, max_results: int = None) -> list[ChannelResolution]:
        """List the signed-in user's subscriptions, following pageToken."""
        max_results = max_results or get_config().max_subscriptions
        log.debug(f"Fetching subscriptions (max {max_results})")
        channels = []
        next_page_token = None

        while True:
            response = self._call("subscriptions.list", lambda yt, token=next_page_token: yt.subscriptions().list(
                part="snippet",
                mine=True,
                maxResults=self.page_size,
                order="alphabetical",
                pageToken=token,
            ))

            for item in response.get("items", []):
                snippet = item.get("snippet", {})
                channel_id = snippet.get("resourceId", {}).get("channelId")
                if not channel_id:
                    continue
                channels.append(ChannelResolution(
                    channel_id=channel_id,
                    title=snippet.get("title", ""),
                    thumbnail_url=best_thumbnail(snippet.get("thumbnails", {})),
                    source=ResolutionSource.PRIMARY,
                ))

            next_page_token = response.get("nextPageToken")
            if not next_page_token or len(channels) >= max_results:
                break

        log.debug(f"Fetched {len(channels)} subscriptions")
        return channels[:max_results]

    # ------------------------------------------------------------------
    # Channel resolution
    # ------------------------------------------------------------------

    def resolve_identifier(self, identifier: ChannelIdentifier) -> Optional[ChannelResolution]:
        """Resolve a parsed identifier to a channel. Returns None when nothing matches."""
        log.debug(f"Resolving {identifier.kind.value}: {identifier.value}")

        if identifier.kind is IdentifierKind.CHANNEL_ID:
            kwargs = {"id": identifier.value}
        elif identifier.kind is IdentifierKind.HANDLE:
            kwargs = {"forHandle": identifier.value}
        elif identifier.kind is IdentifierKind.CUSTOM_URL:
            kwargs = {"forUsername": identifier.value}
        else:
            return None

        response = self._call("channels.list", lambda yt: yt.channels().list(part="snippet", **kwargs))
        items = response.get("items") or []
        if items:
            return self._resolution_from_channel(items[0])

        if identifier.kind is IdentifierKind.CUSTOM_URL:
            return self._search_channel(identifier.value)

        log.debug(f"No channel found for {identifier.raw_input}")
        return None

    def _search_channel(self, query: str) -> Optional[ChannelResolution]:
        """Last resort for custom names: search.list (100 units)."""
        response = self._call("search.list", lambda yt: yt.search().list(
            part="snippet",
            q=query,
            type="channel",
            maxResults=5,
        ))
        items = response.get("items") or []
        if not items:
            return None

        lowered = query.lower()
        match = next(
            (it for it in items if it.get("snippet", {}).get("title", "").lower() == lowered),
            items[0],
        )
        snippet = match.get("snippet", {})
        channel_id = match.get("id", {}).get("channelId") or snippet.get("channelId")
        if not channel_id:
            return None
        return ChannelResolution(
            channel_id=channel_id,
            title=snippet.get("title", query),
            thumbnail_url=best_thumbnail(snippet.get("thumbnails", {})),
            source=ResolutionSource.PRIMARY,
        )

    def _resolution_from_channel(self, item: dict) -> ChannelResolution:
        snippet = item.get("snippet", {})
        return ChannelResolution(
            channel_id=item["id"],
            title=snippet.get("title", ""),
            thumbnail_url=best_thumbnail(snippet.get("thumbnails", {})),
            source=ResolutionSource.PRIMARY,
        )

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def fetch_uploads_playlists(self, channel_ids: list[str]) -> dict[str, UploadsPlaylistRef]:
        """Look up upload playlists for up to `batch_size` channels in one call."""
        if len(channel_ids) > self.batch_size:
            raise ValueError(f"channels.list accepts at most {self.batch_size} ids, got {len(channel_ids)}")
        if not channel_ids:
            return {}

        response = self._call("channels.list", lambda yt: yt.channels().list(
            part="contentDetails,statistics",
            id=",".join(channel_ids),
            maxResults=self.batch_size,
        ))

        refs = {}
        for item in response.get("items", []):
            uploads = item.get("contentDetails", {}).get("relatedPlaylists", {}).get("uploads")
            if item.get("id") and uploads:
                refs[item["id"]] = UploadsPlaylistRef(channel_id=item["id"], playlist_id=uploads)

        missing = set(channel_ids) - set(refs)
        if missing:
            log.debug(f"No upload playlist for {len(missing)} channel(s): {sorted(missing)}")
        return refs

    def fetch_playlist_video_ids(self, playlist_id: str, max_results: int) -> list[str]:
        """Fetch the newest video ids of a playlist (single page, capped)."""
        limit = max(1, min(max_results, self.page_size))
        response = self._call("playlistItems.list", lambda yt: yt.playlistItems().list(
            part="contentDetails",
            playlistId=playlist_id,
            maxResults=limit,
        ))

        video_ids = []
        for item in response.get("items", []):
            video_id = item.get("contentDetails", {}).get("videoId")
            if video_id:
                video_ids.append(video_id)
        return video_ids[:limit]

    def fetch_videos(self, video_ids: list[str]) -> list[VideoRecord]:
        """Fetch details for one batch of at most `batch_size` videos."""
        if len(video_ids) > self.batch_size:
            raise ValueError(f"videos.list accepts at most {self.batch_size} ids, got {len(video_ids)}")
        if not video_ids:
            return []

        response = self._call("videos.list", lambda yt: yt.videos().list(
            part="snippet,contentDetails,statistics",
            id=",".join(video_ids),
            maxResults=self.batch_size,
        ))

        videos = []
        for item in response.get("items", []):
            try:
                videos.append(self._parse_video(item))
            except (KeyError, ValueError, TypeError) as e:
                log.warning(f"Skipping malformed video item {item.get('id')}: {e}")
        return videos

    def _parse_video(self, item: dict) -> VideoRecord:
        """Parse video API response into a VideoRecord."""
        snippet = item.get("snippet", {})
        statistics = item.get("statistics", {})
        content_details = item.get("contentDetails", {})

        view_count = statistics.get("viewCount")
        return VideoRecord(
            id=item["id"],
            channel_id=snippet.get("channelId", ""),
            title=snippet.get("title", ""),
            published_at=parse_timestamp(snippet.get("publishedAt")),
            duration_seconds=parse_duration(content_details.get("duration", "")),
            view_count=int(view_count) if view_count is not None else None,
            thumbnails=snippet.get("thumbnails", {}),
            channel_title=snippet.get("channelTitle", ""),
            description=snippet.get("description", ""),
        )
