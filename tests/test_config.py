from config import config


def test_feed_sources_from_url_list(monkeypatch, tmp_path):
    feeds_file = tmp_path / "feeds.yaml"
    feeds_file.write_text(
        "feeds:\n"
        "  - https://a.example/rss\n"
        "  - url: https://b.example/atom.xml\n"
        "  - 42\n"
    )
    monkeypatch.setattr(config, 'FEEDS_CONFIG_PATH', str(feeds_file))
    monkeypatch.setattr(config, 'FEED_SOURCES', [])

    config.reload_feed_sources()

    assert config.FEED_SOURCES == ["https://a.example/rss", "https://b.example/atom.xml"]


def test_feed_sources_from_slug_mapping(monkeypatch, tmp_path):
    feeds_file = tmp_path / "feeds.yaml"
    feeds_file.write_text(
        "feeds:\n"
        "  one:\n"
        "    url: https://one.example/feed\n"
        "  broken: just-a-string\n"
    )
    monkeypatch.setattr(config, 'FEEDS_CONFIG_PATH', str(feeds_file))
    monkeypatch.setattr(config, 'FEED_SOURCES', [])

    config.reload_feed_sources()

    assert config.FEED_SOURCES == ["https://one.example/feed"]


def test_missing_feeds_file_gives_empty_list(monkeypatch, tmp_path):
    monkeypatch.setattr(config, 'FEEDS_CONFIG_PATH', str(tmp_path / "nope.yaml"))
    monkeypatch.setattr(config, 'FEED_SOURCES', ["stale"])

    config.reload_feed_sources()

    assert config.FEED_SOURCES == []


def test_invalid_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("POLL_BATCH_SIZE", "lots")
    assert config._validate_positive_int("POLL_BATCH_SIZE", 20, 1) == 20

    monkeypatch.setenv("POLL_BATCH_SIZE", "0")
    assert config._validate_positive_int("POLL_BATCH_SIZE", 20, 1) == 20

    monkeypatch.setenv("IDLE_SLEEP_SECONDS", "0.5")
    assert config._validate_positive_float("IDLE_SLEEP_SECONDS", 2.0, 0.1) == 0.5


def test_config_summary_has_core_settings():
    summary = config.get_config_summary()
    assert summary["max_per_host"] == config.MAX_PER_HOST
    assert summary["poll_batch_size"] == config.POLL_BATCH_SIZE
