import pytest

from main import FeedPoller
from utils import format_duration, format_timestamp, truncate_string, validate_url


@pytest.mark.asyncio
async def test_seed_registers_valid_urls_once(tmp_path, capsys):
    poller = FeedPoller(str(tmp_path / "feeds.db"))
    await poller.start()
    try:
        added = await poller.seed([
            "https://news.example.com/rss",
            "not a url",
            "ftp://files.example.com/feed",
            "https://news.example.com/rss",
        ])
        assert added == 1
        assert await poller.seed(["https://news.example.com/rss"]) == 0

        feeds = await poller.db.execute('list_feeds')
        assert [f.feed_url for f in feeds] == ["https://news.example.com/rss"]

        await poller.print_status()
        out = capsys.readouterr().out
        assert "https://news.example.com/rss" in out
        assert "due now" in out
    finally:
        await poller.close()


def test_validate_url():
    assert validate_url("https://example.com/feed")
    assert validate_url("  http://localhost:8080/rss  ")
    assert not validate_url("example.com/feed")
    assert not validate_url("")
    assert not validate_url(None)


def test_format_helpers():
    assert format_duration(0) == "0s"
    assert format_duration(3725) == "1h 2m 5s"
    assert format_duration(90000) == "1d 1h"
    assert format_timestamp(None) == "-"
    assert format_timestamp(0) == "1970-01-01T00:00:00Z"
    assert truncate_string("abcdefgh", 5) == "ab..."
    assert truncate_string("abc", 5) == "abc"
