import json
from pathlib import Path

import pytest

from term_engine.exceptions.core import ConfigError
from term_engine.utils.config import EngineConfig, PublisherConfig, engine_config_from_dict, load_engine_config


def test_defaults():
    cfg = EngineConfig()
    assert cfg.router.lanes == 8
    assert cfg.publisher.max_attempts == 5
    assert cfg.publish_rounds == 3
    assert cfg.skip_malformed_and_ack is False
    assert cfg.registry_wait_timeout_s is None
    assert cfg.term_feed.retry_base_ms == 500 and cfg.term_feed.retry_max_ms == 30_000


def test_repo_config_file_loads():
    root = Path(__file__).resolve().parents[3]
    cfg = load_engine_config(root / "configs" / "engine.json")
    assert cfg == EngineConfig()


def test_partial_override(tmp_path):
    p = tmp_path / "engine.json"
    p.write_text(json.dumps({"router": {"lanes": 2}, "skip_malformed_and_ack": True}), encoding="utf-8")
    cfg = load_engine_config(p)
    assert cfg.router.lanes == 2
    assert cfg.router.queue_maxsize == 256
    assert cfg.skip_malformed_and_ack is True


@pytest.mark.parametrize(
    "raw",
    [
        [],
        {"router": {"lanes": 0}},
        {"publisher": {"max_attempts": 0}},
        {"publisher": {"base_backoff_ms": 100, "max_backoff_ms": 10}},
        {"term_feed": {"retry_base_ms": 100, "retry_max_ms": 10}},
        {"publish_rounds": 0},
        {"drain_timeout_s": -1},
    ],
)
def test_invalid_config_raises_config_error(raw):
    with pytest.raises(ConfigError):
        engine_config_from_dict(raw)


def test_missing_or_broken_file(tmp_path):
    with pytest.raises(ConfigError):
        load_engine_config(tmp_path / "nope.json")
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_engine_config(bad)


def test_backoff_bounds_validated_on_model():
    with pytest.raises(ValueError):
        PublisherConfig(base_backoff_ms=10, max_backoff_ms=5)
