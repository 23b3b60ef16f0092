"""Tests for the channel RSS reader."""

import pytest
import requests

from errors import InvalidInputError, RemoteUnavailableError
from fallback import RelayClient
from rss import RssFetcher, parse_feed

CHANNEL_ID = "UCuAXFkgsw1L7xaCfnd5JJOw"

FEED = f"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns:yt="http://www.youtube.com/xml/schemas/2015"
      xmlns:media="http://search.yahoo.com/mrss/"
      xmlns="http://www.w3.org/2005/Atom">
  <yt:channelId>{CHANNEL_ID}</yt:channelId>
  <title>Linus Tech Tips</title>
  <author><name>Linus Tech Tips</name></author>
  <entry>
    <id>yt:video:vid00000001</id>
    <yt:videoId>vid00000001</yt:videoId>
    <yt:channelId>{CHANNEL_ID}</yt:channelId>
    <title>Newest upload</title>
    <author><name>Linus Tech Tips</name></author>
    <published>2024-06-14T16:00:00+00:00</published>
    <media:group>
      <media:title>Newest upload</media:title>
      <media:thumbnail url="https://i1.ytimg.com/vi/vid00000001/hqdefault.jpg" width="480" height="360"/>
      <media:description>All about GPUs</media:description>
      <media:community>
        <media:statistics views="52311"/>
      </media:community>
    </media:group>
  </entry>
  <entry>
    <yt:videoId>vid00000002</yt:videoId>
    <title>Older upload</title>
    <published>2024-06-10T16:00:00+00:00</published>
  </entry>
  <entry>
    <yt:videoId>vid00000003</yt:videoId>
    <title>Oldest upload</title>
    <published>2024-06-01T16:00:00+00:00</published>
  </entry>
</feed>
"""


class FakeResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400


class FakeSession:
    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append(url)
        return self.handler(url)


def make_fetcher(handler):
    session = FakeSession(handler)
    client = RelayClient(session=session, relays=["https://relay.test/?url="], timeout=1.0, relay_delay=0)
    return RssFetcher(client=client), session


def test_parse_feed_fields():
    records = parse_feed(FEED)

    assert [r.id for r in records] == ["vid00000001", "vid00000002", "vid00000003"]
    newest = records[0]
    assert newest.channel_id == CHANNEL_ID
    assert newest.channel_title == "Linus Tech Tips"
    assert newest.title == "Newest upload"
    assert newest.description == "All about GPUs"
    assert newest.view_count == 52311
    assert newest.duration_seconds is None
    assert newest.thumbnail_url.endswith("hqdefault.jpg")
    assert newest.published_at.day == 14


def test_entries_inherit_feed_channel():
    older = parse_feed(FEED)[1]
    assert older.channel_id == CHANNEL_ID
    assert older.channel_title == "Linus Tech Tips"
    assert older.view_count is None
    assert older.thumbnails == {}


def test_parse_feed_limit():
    assert len(parse_feed(FEED, limit=2)) == 2


@pytest.mark.parametrize("body", ["", "<html><body>blocked</body></html>", "{not xml"])
def test_parse_feed_rejects_non_feeds(body):
    with pytest.raises(ValueError):
        parse_feed(body)


def test_fetch_direct():
    fetcher, session = make_fetcher(lambda url: FakeResponse(200, FEED))

    records = fetcher.fetch_channel_rss(CHANNEL_ID, 10)

    assert len(records) == 3
    assert session.calls == [f"https://www.youtube.com/feeds/videos.xml?channel_id={CHANNEL_ID}"]


def test_fetch_falls_back_to_relay():
    def handler(url):
        if url.startswith("https://relay.test"):
            return FakeResponse(200, FEED)
        return FakeResponse(404)

    fetcher, session = make_fetcher(handler)

    assert len(fetcher.fetch_channel_rss(CHANNEL_ID, 1)) == 1
    assert len(session.calls) == 2


def test_fetch_unavailable_raises():
    def handler(url):
        raise requests.ConnectionError("down")

    fetcher, _ = make_fetcher(handler)
    with pytest.raises(RemoteUnavailableError):
        fetcher.fetch_channel_rss(CHANNEL_ID, 10)


def test_fetch_requires_canonical_id():
    fetcher, session = make_fetcher(lambda url: FakeResponse(200, FEED))
    with pytest.raises(InvalidInputError):
        fetcher.fetch_channel_rss("@handle", 10)
    assert session.calls == []
