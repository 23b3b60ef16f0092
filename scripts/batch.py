"""
Bounded-concurrency upload fetching.

Channels are processed in fixed-size groups: every channel in a group is
fetched concurrently, and the whole group finishes before the next one
starts. A failing channel contributes nothing and never aborts its
siblings or later groups.

Path selection per group:
- primary: channels.list for upload playlists, playlistItems.list per
  channel, then videos.list in chunks once every group is listed
- RSS: per-channel public feed, used when there is no credential or the
  quota is exhausted. If the quota runs out mid-batch, channels that have
  not been served by the primary path yet are moved to RSS. A failed
  group lookup or detail chunk is also retried through RSS, so a channel
  only counts as failed when both paths fail for it.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from config import get_config
from errors import AuthRequiredError, QuotaExhaustedError
from logger import LogContext, clear_log_context, get_log_context, get_logger, set_log_context
from models import BatchResult, FetchPath, VideoRecord
from quota import QuotaTracker
from rss import RssFetcher
from youtube_api import YouTubeFetcher, chunked

log = get_logger("batch")

# Failures that mean "the primary path is unusable", not "this channel is broken"
PATH_ERRORS = (QuotaExhaustedError, AuthRequiredError)


def run_group(items: list[str], task: Callable[[str], object]) -> dict[str, tuple[object, Optional[Exception]]]:
    """
    Run `task` for every item concurrently and wait for all of them.

    Returns:
        {item: (result, None)} on success, {item: (None, exception)} on failure
    """
    inherited = get_log_context()

    def run(item):
        set_log_context(**{**inherited, "channel": item})
        try:
            return task(item), None
        except Exception as e:
            return None, e
        finally:
            clear_log_context()

    if not items:
        return {}
    with ThreadPoolExecutor(max_workers=len(items)) as executor:
        futures = {item: executor.submit(run, item) for item in items}
        return {item: future.result() for item, future in futures.items()}


class BatchFetcher:
    """
    Fetch recent uploads for many channels with a cap on in-flight requests.

    Args:
        primary: Authenticated API client, or None when there is no credential
        rss: Feed reader for the zero-quota path
        quota: Tracker consulted before each group
        concurrency: Channels fetched at once (default: from config)
    """

    def __init__(
        self,
        primary: Optional[YouTubeFetcher] = None,
        rss: Optional[RssFetcher] = None,
        quota: Optional[QuotaTracker] = None,
        concurrency: int = None,
    ):
        cfg = get_config()
        self.primary = primary
        self.rss = rss if rss is not None else RssFetcher()
        self.quota = quota if quota is not None else (primary.quota if primary is not None else None)
        self.concurrency = max(1, concurrency if concurrency is not None else cfg.batch_concurrency)
        self.batch_size = min(cfg.api_batch_size, 50)

    def _primary_usable(self, result: BatchResult) -> bool:
        if self.primary is None or result.auth_failed:
            return False
        return self.quota is None or not self.quota.is_exhausted()

    def _note_path_error(self, result: BatchResult, error: Exception) -> None:
        if isinstance(error, AuthRequiredError) and not result.auth_failed:
            log.warning(f"Primary path rejected the credential, using RSS for the rest of the batch: {error}")
            result.auth_failed = True

    def fetch_uploads(self, channels: list[str], per_channel_limit: int = None) -> BatchResult:
        """
        Fetch up to `per_channel_limit` recent uploads for each channel.

        Never raises for per-channel problems: failed channels are listed in
        the result and contribute no records.
        """
        limit = per_channel_limit if per_channel_limit is not None else get_config().videos_per_channel
        limit = max(1, min(limit, 50))
        channels = list(dict.fromkeys(channels))
        result = BatchResult()

        # channel id -> video ids, in upload order, for channels listed via the API
        listed: dict[str, list[str]] = {}
        groups = chunked(channels, self.concurrency)

        with LogContext(log, f"batch fetch of {len(channels)} channels in {len(groups)} groups"):
            for index, group in enumerate(groups, 1):
                with LogContext(log, f"{len(group)} channels", group=f"{index}/{len(groups)}"):
                    if self._primary_usable(result):
                        moved = self._list_group(group, limit, listed, result)
                    else:
                        moved = group
                    if moved:
                        self._fetch_rss(moved, limit, result)

            if listed:
                self._fetch_details(listed, limit, result)

        log.info(f"Batch complete: {len(result.succeeded_channels)} channels ok, "
                 f"{result.failed_count} failed, {len(result.records)} videos")
        return result

    # ------------------------------------------------------------------
    # Primary path
    # ------------------------------------------------------------------

    def _list_group(self, group: list[str], limit: int, listed: dict, result: BatchResult) -> list[str]:
        """
        List upload playlists and recent video ids for one group.

        Returns:
            Channels that must be served by RSS instead
        """
        refs = {}
        try:
            for chunk in chunked(group, self.batch_size):
                refs.update(self.primary.fetch_uploads_playlists(chunk))
        except PATH_ERRORS as e:
            self._note_path_error(result, e)
            log.info(f"Primary path unavailable ({type(e).__name__}), using RSS for {len(group)} channels")
            return list(group)
        except Exception as e:
            log.warning(f"Upload playlist lookup failed ({type(e).__name__}: {e}), "
                        f"using RSS for {len(group)} channels")
            return list(group)

        for channel_id in group:
            if channel_id not in refs:
                log.warning(f"Channel {channel_id} not found or has no uploads playlist")
                result.failed_channels.append(channel_id)

        found = [channel_id for channel_id in group if channel_id in refs]
        outcomes = run_group(
            found, lambda channel_id: self.primary.fetch_playlist_video_ids(refs[channel_id].playlist_id, limit)
        )

        moved = []
        for channel_id in found:
            video_ids, error = outcomes[channel_id]
            if error is None:
                listed[channel_id] = video_ids
                result.paths[channel_id] = FetchPath.PRIMARY
            elif isinstance(error, PATH_ERRORS):
                self._note_path_error(result, error)
                moved.append(channel_id)
            else:
                log.warning(f"Failed to list uploads for {channel_id}: {type(error).__name__}: {error}")
                result.failed_channels.append(channel_id)
        return moved

    def _fetch_details(self, listed: dict[str, list[str]], limit: int, result: BatchResult) -> None:
        """Fetch video details in chunks; a failed chunk does not stop later chunks."""
        owner = {}
        for channel_id, video_ids in listed.items():
            for video_id in video_ids[:limit]:
                owner.setdefault(video_id, channel_id)

        records: dict[str, VideoRecord] = {}
        lost_channels = set()
        for chunk in chunked(list(owner), self.batch_size):
            if not self._primary_usable(result):
                lost_channels.update(owner[v] for v in chunk)
                continue
            try:
                for record in self.primary.fetch_videos(chunk):
                    records[record.id] = record
            except PATH_ERRORS as e:
                self._note_path_error(result, e)
                lost_channels.update(owner[v] for v in chunk)
            except Exception as e:
                log.warning(f"Video details chunk of {len(chunk)} failed: {type(e).__name__}: {e}")
                lost_channels.update(owner[v] for v in chunk)

        moved = []
        for channel_id, video_ids in listed.items():
            channel_records = [records[v] for v in video_ids[:limit] if v in records]
            if channel_records or not video_ids:
                result.records.extend(channel_records)
                result.succeeded_channels.append(channel_id)
            elif channel_id in lost_channels:
                result.paths.pop(channel_id, None)
                moved.append(channel_id)
            else:
                # Every listed video vanished between calls (deleted or private)
                result.succeeded_channels.append(channel_id)

        if moved:
            log.info(f"Recovering {len(moved)} channels via RSS after failed detail chunks")
            for group in chunked(moved, self.concurrency):
                self._fetch_rss(group, limit, result)

    # ------------------------------------------------------------------
    # RSS path
    # ------------------------------------------------------------------

    def _fetch_rss(self, group: list[str], limit: int, result: BatchResult) -> None:
        outcomes = run_group(group, lambda channel_id: self.rss.fetch_channel_rss(channel_id, limit))
        for channel_id in group:
            records, error = outcomes[channel_id]
            if error is None:
                result.records.extend(records)
                result.succeeded_channels.append(channel_id)
                result.paths[channel_id] = FetchPath.RSS
            else:
                log.warning(f"RSS fetch failed for {channel_id}: {type(error).__name__}: {error}")
                result.failed_channels.append(channel_id)
