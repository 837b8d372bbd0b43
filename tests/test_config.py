import textwrap

from config import Config, DEFAULT_USER_AGENT


def write_feeds(tmp_path, body):
    feeds_path = tmp_path / "feeds.yaml"
    feeds_path.write_text(textwrap.dedent(body))
    return str(feeds_path)


def test_defaults(monkeypatch, tmp_path):
    for var in ("USER_AGENT", "SEEN_STORE", "FEEDS_POLL_INTERVAL_SECONDS", "FEEDS_POLL_CONCURRENCY",
                "FEEDS_POLL_TIMEOUT_SECONDS", "PERSIST_VALIDATORS", "SECRETS_FILE"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(tmp_path / "missing.yaml"))

    cfg = Config()

    assert cfg.USER_AGENT == DEFAULT_USER_AGENT
    assert cfg.POLL_INTERVAL_SECONDS == 600.0
    assert cfg.POLL_CONCURRENCY == 4
    assert cfg.POLL_TIMEOUT_SECONDS == 30
    assert cfg.SEEN_STORE == "memory"
    assert cfg.PERSIST_VALIDATORS is False
    assert cfg.FEED_SOURCES == {}


def test_feed_sources_and_polling_overrides(monkeypatch, tmp_path):
    monkeypatch.delenv("FEEDS_POLL_CONCURRENCY", raising=False)
    monkeypatch.setenv("FEEDS_CONFIG_PATH", write_feeds(tmp_path, """
        polling:
          interval_seconds: 120
          concurrency: 2
          timeout_seconds: zero
        feeds:
          one:
            url: https://example.com/one.xml
          two: https://example.com/two.xml
          broken:
            title: no url here
    """))

    cfg = Config()

    assert cfg.FEED_SOURCES == {
        "one": "https://example.com/one.xml",
        "two": "https://example.com/two.xml",
    }
    assert cfg.POLL_INTERVAL_SECONDS == 120.0
    assert cfg.POLL_CONCURRENCY == 2
    # Invalid override keeps the environment/default value
    assert cfg.POLL_TIMEOUT_SECONDS == 30


def test_invalid_environment_values_fall_back(monkeypatch, tmp_path):
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("FEEDS_POLL_CONCURRENCY", "0")
    monkeypatch.setenv("FEEDS_POLL_INTERVAL_SECONDS", "soon")
    monkeypatch.setenv("SEEN_STORE", "redis")
    monkeypatch.setenv("PERSIST_VALIDATORS", "TRUE")

    cfg = Config()

    assert cfg.POLL_CONCURRENCY == 4
    assert cfg.POLL_INTERVAL_SECONDS == 600.0
    assert cfg.SEEN_STORE == "memory"
    assert cfg.PERSIST_VALIDATORS is True


def test_secrets_file_overrides_environment(monkeypatch, tmp_path):
    secrets = tmp_path / "secrets.yaml"
    secrets.write_text("environment:\n  USER_AGENT: SecretAgent/2.0\n  SEEN_STORE: sqlite\n")
    monkeypatch.setenv("SECRETS_FILE", str(secrets))
    monkeypatch.setenv("USER_AGENT", "EnvAgent/1.0")
    monkeypatch.setenv("SEEN_STORE", "memory")
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(tmp_path / "missing.yaml"))

    cfg = Config()

    assert cfg.USER_AGENT == "SecretAgent/2.0"
    assert cfg.SEEN_STORE == "sqlite"
    assert cfg.get_config_summary()["secrets_file_configured"] is True


def test_reload_feed_sources(monkeypatch, tmp_path):
    feeds_path = write_feeds(tmp_path, "feeds:\n  a: https://example.com/a.xml\n")
    monkeypatch.setenv("FEEDS_CONFIG_PATH", feeds_path)
    cfg = Config()
    assert list(cfg.FEED_SOURCES) == ["a"]

    write_feeds(tmp_path, "feeds:\n  a: https://example.com/a.xml\n  b: https://example.com/b.xml\n")
    cfg.reload_feed_sources()

    assert list(cfg.FEED_SOURCES) == ["a", "b"]
    assert cfg.get_config_summary()["feed_count"] == 2
