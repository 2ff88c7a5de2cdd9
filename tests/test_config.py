"""Config loading tests."""
import json

import pytest
import yaml

from knew.config import DEFAULT_CONFIG, Config
from knew.errors import ConfigError


def test_defaults_without_file():
    cfg = Config()

    assert cfg.get("cache.news_ttl_seconds") == 600
    assert cfg.get("rate_limiting.endpoints.fetch-news.user_limit") == 5
    assert cfg.get("recovery.max_delay_seconds") == 32
    assert cfg.get("missing.key", "fallback") == "fallback"


def test_yaml_file_is_merged_over_defaults(tmp_path):
    path = tmp_path / "knew.yaml"
    path.write_text(yaml.dump({"cache": {"news_ttl_seconds": 120}, "feed": {"page_size": 10}}))

    cfg = Config(str(path))

    assert cfg.get("cache.news_ttl_seconds") == 120
    assert cfg.get("cache.max_entries") == 100
    assert cfg.get("feed.page_size") == 10
    # Defaults are never mutated by a loaded file
    assert DEFAULT_CONFIG["cache"]["news_ttl_seconds"] == 600


def test_bad_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "knew.toml"
    path.write_text("cache = 1")

    cfg = Config(str(path))

    assert cfg.get("cache.news_ttl_seconds") == 600


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "knew.json"
    path.write_text(json.dumps({"cache": {"news_ttl_seconds": 120}}))
    monkeypatch.setenv("KNEW_CACHE_NEWS_TTL_SECONDS", "300")
    monkeypatch.setenv("KNEW_UPSTREAM_MODEL", "some/model")

    cfg = Config(str(path))

    assert cfg.get("cache.news_ttl_seconds") == 300
    assert cfg.get("upstream.model") == "some/model"


def test_require_raises_for_missing_value():
    cfg = Config()

    assert cfg.require("feed.page_size") == 20
    with pytest.raises(ConfigError):
        cfg.require("upstream.api_key")


def test_save_round_trips_yaml(tmp_path):
    cfg = Config()
    cfg.config["feed"]["page_size"] = 5
    target = tmp_path / "saved.yml"

    assert cfg.save(str(target))
    assert Config(str(target)).get("feed.page_size") == 5
    assert not cfg.save(str(tmp_path / "saved.txt"))
