"""Tests for aggregation passes and the command line."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

import fetch
from errors import AuthRequiredError, InvalidInputError, QuotaExhaustedError
from feed import FeedFilters, SortKey
from fetch import FeedAggregator, FeedRequest, channel_entry_identifier, main
from models import BatchResult, ChannelResolution, ResolutionSource, VideoRecord
from quota import QuotaTracker
from store import MemoryStore

FIRST = "UCuAXFkgsw1L7xaCfnd5JJOw"
SECOND = "UC_x5XG1OV2P6uZZ5FSM9Ttw"


def record(video_id, channel_id, day, views=0, channel_title=""):
    return VideoRecord(
        id=video_id,
        channel_id=channel_id,
        title=f"Video {video_id}",
        published_at=datetime(2024, 6, day, tzinfo=timezone.utc),
        view_count=views,
        channel_title=channel_title,
    )


@pytest.fixture
def quota(clock):
    return QuotaTracker(store=MemoryStore(), daily_limit=10000, clock=clock)


@pytest.fixture
def fallback():
    resolver = MagicMock()
    resolver.resolve.return_value = ChannelResolution(SECOND, "Google for Developers", source=ResolutionSource.PIPED)
    return resolver


@pytest.fixture
def batch():
    fetcher = MagicMock()
    fetcher.fetch_uploads.return_value = BatchResult(
        records=[record("a", FIRST, 3), record("b", SECOND, 5, channel_title="Google"), record("a", FIRST, 3)],
        failed_channels=["UC" + "f" * 22],
        succeeded_channels=[FIRST, SECOND],
    )
    return fetcher


def test_build_feed_without_credential(quota, fallback, batch):
    aggregator = FeedAggregator(
        quota=quota, primary=None, fallback=fallback, batch=batch,
        channels=[FIRST, "@GoogleDevelopers"],
    )

    page = aggregator.build_feed(FeedRequest(page_size=10))

    assert [r.id for r in page.items] == ["b", "a"]
    assert page.failed_channels == 1
    assert page.total_seen == 2
    fallback.resolve.assert_called_once_with("@GoogleDevelopers")
    batch.fetch_uploads.assert_called_once_with([FIRST, SECOND], None)
    # blank channel titles are filled from the channel list
    assert page.items[1].channel_title == FIRST
    assert page.items[0].channel_title == "Google"


def test_build_feed_applies_request(quota, fallback, batch):
    aggregator = FeedAggregator(quota=quota, fallback=fallback, batch=batch, channels=[FIRST])
    request = FeedRequest(sort=SortKey.TITLE, filters=FeedFilters(channel_ids=frozenset({FIRST})),
                          page_size=5, per_channel_limit=7)

    page = aggregator.build_feed(request)

    assert [r.id for r in page.items] == ["a"]
    batch.fetch_uploads.assert_called_once_with([FIRST], 7)


def test_build_feed_runs_daily_reset(quota, fallback, batch, clock):
    quota.record_usage(quota.daily_limit)
    clock.advance(days=1)
    aggregator = FeedAggregator(quota=quota, fallback=fallback, batch=batch, channels=[FIRST])

    aggregator.build_feed()

    assert not quota.is_exhausted()


def test_no_channels_is_invalid(quota, fallback, batch):
    fallback.resolve.return_value = None
    aggregator = FeedAggregator(quota=quota, fallback=fallback, batch=batch,
                                channels=["@ghost"], use_subscriptions=False)
    with pytest.raises(InvalidInputError):
        aggregator.build_feed()


def test_subscriptions_without_credential_need_auth(quota, fallback, batch):
    aggregator = FeedAggregator(quota=quota, primary=None, fallback=fallback, batch=batch)
    with pytest.raises(AuthRequiredError):
        aggregator.build_feed()


def test_subscriptions_and_listed_channels_are_merged(quota, fallback, batch):
    primary = MagicMock()
    primary.fetch_subscriptions.return_value = [ChannelResolution(FIRST, "Linus")]
    primary.resolve_identifier.return_value = ChannelResolution(FIRST, "Linus")
    aggregator = FeedAggregator(quota=quota, primary=primary, fallback=fallback, batch=batch,
                                channels=["@linustechtips"],
                                imported=[ChannelResolution(SECOND, "Google", source=ResolutionSource.OPML)])

    channels = aggregator.list_channels()

    assert [c.channel_id for c in channels] == [FIRST, SECOND]
    fallback.resolve.assert_not_called()


def test_subscription_quota_failure_keeps_other_channels(quota, fallback, batch):
    primary = MagicMock()
    primary.fetch_subscriptions.side_effect = QuotaExhaustedError("out")
    aggregator = FeedAggregator(quota=quota, primary=primary, fallback=fallback, batch=batch,
                                imported=[ChannelResolution(SECOND, "Google")])

    assert [c.channel_id for c in aggregator.list_channels()] == [SECOND]


def test_resolve_invalid_input(quota, fallback, batch):
    aggregator = FeedAggregator(quota=quota, fallback=fallback, batch=batch)
    with pytest.raises(InvalidInputError):
        aggregator.resolve("https://example.com/someone")


def test_resolve_uses_primary_when_available(quota, fallback, batch):
    primary = MagicMock()
    primary.resolve_identifier.return_value = ChannelResolution(FIRST, "Linus")
    aggregator = FeedAggregator(quota=quota, primary=primary, fallback=fallback, batch=batch)

    assert aggregator.resolve("@linustechtips").channel_id == FIRST
    fallback.resolve.assert_not_called()


def test_resolve_falls_back_when_quota_exhausted(quota, fallback, batch):
    quota.mark_exhausted()
    primary = MagicMock()
    aggregator = FeedAggregator(quota=quota, primary=primary, fallback=fallback, batch=batch)

    resolution = aggregator.resolve("https://www.youtube.com/@GoogleDevelopers")

    assert resolution.channel_id == SECOND
    primary.resolve_identifier.assert_not_called()
    fallback.resolve.assert_called_once_with("@GoogleDevelopers")


def test_resolve_falls_back_when_primary_runs_out(quota, fallback, batch):
    primary = MagicMock()
    primary.resolve_identifier.side_effect = QuotaExhaustedError("out")
    aggregator = FeedAggregator(quota=quota, primary=primary, fallback=fallback, batch=batch)

    assert aggregator.resolve("Google Developers").channel_id == SECOND
    fallback.resolve.assert_called_once_with("Google Developers")


def test_resolve_auth_failure_propagates(quota, fallback, batch):
    primary = MagicMock()
    primary.resolve_identifier.side_effect = AuthRequiredError("expired")
    aggregator = FeedAggregator(quota=quota, primary=primary, fallback=fallback, batch=batch)

    with pytest.raises(AuthRequiredError):
        aggregator.resolve("@linustechtips")
    fallback.resolve.assert_not_called()


def test_canonical_id_needs_no_lookup_without_credential(quota, fallback, batch):
    aggregator = FeedAggregator(quota=quota, fallback=fallback, batch=batch)
    resolution = aggregator.resolve(FIRST)
    assert resolution.channel_id == FIRST
    assert resolution.source is ResolutionSource.CONFIG
    fallback.resolve.assert_not_called()


def test_context_manager_runs_reset_timer(quota, fallback, batch):
    with FeedAggregator(quota=quota, fallback=fallback, batch=batch) as aggregator:
        assert aggregator.quota._timer_thread is not None
    assert quota._timer_thread is None


def test_channel_entry_identifier():
    assert channel_entry_identifier("@x") == "@x"
    assert channel_entry_identifier({"identifier": "@y"}) == "@y"
    assert channel_entry_identifier({"handle": "@z"}) == "@z"
    assert channel_entry_identifier(42) is None


@pytest.fixture
def cli(monkeypatch):
    monkeypatch.setattr(fetch, "open_store", lambda: MemoryStore())


def test_cli_resolve_canonical_id(cli, capsys):
    assert main(["--resolve", FIRST, "--json"]) == 0
    output = json.loads(capsys.readouterr().out)
    assert output["channel_id"] == FIRST
    assert output["source"] == "config"


def test_cli_invalid_input_exit_code(cli):
    assert main(["--resolve", "https://example.com/nobody"]) == 2


def test_cli_subscriptions_without_token_exit_code(cli):
    assert main(["--subscriptions"]) == 3


def test_cli_bad_date_exit_code(cli, monkeypatch):
    monkeypatch.setattr(fetch.FeedAggregator, "list_channels", lambda self: [ChannelResolution(FIRST, "x")])
    assert main(["--channel", FIRST, "--from", "yesterday"]) == 2


def test_cli_prints_feed(cli, monkeypatch, capsys):
    result = BatchResult(records=[record("a", FIRST, 3, views=10)], succeeded_channels=[FIRST])
    monkeypatch.setattr(fetch.BatchFetcher, "fetch_uploads", lambda self, channels, limit=None: result)

    assert main(["--channel", FIRST, "--json", "--page-size", "5"]) == 0

    page = json.loads(capsys.readouterr().out)
    assert [item["id"] for item in page["items"]] == ["a"]
    assert page["has_more"] is False
    assert page["items"][0]["url"] == "https://www.youtube.com/watch?v=a"
