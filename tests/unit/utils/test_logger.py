from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from term_engine.utils.logger import (
    CATEGORY_DATA_INTEGRITY,
    ContextFilter,
    JsonFormatter,
    _debug_module_matches,
    bind_context,
    bound_context,
    get_logger,
    init_logging,
    load_profile,
    log_data_integrity,
    safe_jsonable,
)


class Color(Enum):
    RED = "red"


@dataclass
class Sample:
    path: Path
    created: datetime
    color: Color


def test_safe_jsonable_handles_common_types() -> None:
    payload = {
        "path": Path("foo/bar"),
        "created": datetime(2020, 1, 1, 0, 0, 0),
        "enum": Color.RED,
        "sample": Sample(Path("x/y"), datetime(2021, 1, 2, 3, 4, 5), Color.RED),
        "exc": ValueError("boom"),
        "tuple": (1, 2),
        "set": {3, 4},
    }

    out = safe_jsonable(payload)
    json.dumps(out)
    assert out["path"] == "foo/bar"
    assert "2020" in out["created"]
    assert out["enum"] == "red"
    assert out["exc"] == "ValueError: boom"


def test_debug_module_matching() -> None:
    assert _debug_module_matches("term_engine.routing.router", "routing")
    assert _debug_module_matches("term_engine.routing.router", "term_engine.routing")
    assert _debug_module_matches("routing.router", "routing")
    assert not _debug_module_matches("term_engine.registry", "routing")


def test_json_formatter_lifts_category() -> None:
    record = logging.LogRecord("term_engine.x", logging.WARNING, __file__, 1, "router.gap_skipped", None, None)
    record.context = {"category": CATEGORY_DATA_INTEGRITY, "instrument": "USD-SWAP", "seq": 7}
    out = json.loads(JsonFormatter().format(record))
    assert out["event"] == "router.gap_skipped"
    assert out["category"] == CATEGORY_DATA_INTEGRITY
    assert out["context"] == {"instrument": "USD-SWAP", "seq": 7}
    assert out["level"] == "WARNING"


def test_category_helper_sets_level_and_context(caplog) -> None:
    logger = get_logger("term_engine.test.category")
    with caplog.at_level(logging.WARNING, logger="term_engine.test.category"):
        log_data_integrity(logger, "engine.malformed_event", field="seq")
    (rec,) = caplog.records
    assert rec.levelno == logging.WARNING
    assert rec.context["field"] == "seq"
    assert rec.context["category"] == CATEGORY_DATA_INTEGRITY


def test_bound_context_reaches_records_and_unwinds() -> None:
    record = logging.LogRecord("term_engine.x", logging.INFO, __file__, 1, "engine.violation", None, None)
    record.context = {"seq": 99}
    with bind_context(lane=3, instrument="USD-SWAP", seq=42):
        with bind_context(term_id="RATE_CAP_5PCT"):
            assert bound_context() == {"lane": 3, "instrument": "USD-SWAP", "seq": 42, "term_id": "RATE_CAP_5PCT"}
            ContextFilter().filter(record)
        assert "term_id" not in bound_context()
    assert bound_context() == {}
    # explicit fields win over bound ones
    assert record.context["seq"] == 99
    assert record.context["lane"] == 3
    assert record.context["term_id"] == "RATE_CAP_5PCT"


def test_load_profile_merges_over_default(tmp_path: Path) -> None:
    config = {
        "profiles": {
            "default": {"level": "INFO", "handlers": {"console": {"enabled": True}}},
            "quiet": {"level": "WARNING"},
        }
    }
    path = tmp_path / "logging.json"
    path.write_text(json.dumps(config), encoding="utf-8")
    name, profile = load_profile(path, "quiet")
    assert name == "quiet"
    assert profile["level"] == "WARNING"
    assert profile["handlers"]["console"]["enabled"] is True


def test_init_logging_dictconfig_applied(tmp_path: Path) -> None:
    config = {
        "active_profile": "default",
        "profiles": {
            "default": {
                "level": "DEBUG",
                "debug": {"enabled": True, "modules": ["routing"]},
                "handlers": {"console": {"enabled": True, "level": "DEBUG"}},
                "format": {"json": True, "timestamp_utc": True},
            }
        },
    }
    config_path = tmp_path / "logging.json"
    config_path.write_text(json.dumps(config), encoding="utf-8")

    init_logging(config_path=str(config_path), run_id="r1")
    logger = get_logger("term_engine.test")

    assert logging.getLogger().level == logging.DEBUG
    assert logger.getEffectiveLevel() == logging.DEBUG

    root_handlers = logging.getLogger().handlers
    assert root_handlers
    assert any(isinstance(h.formatter, JsonFormatter) for h in root_handlers)
    assert any(any(isinstance(f, ContextFilter) for f in h.filters) for h in root_handlers)


def test_repo_logging_profiles_load() -> None:
    root = Path(__file__).resolve().parents[3]
    init_logging(config_path=str(root / "configs" / "logging.json"), mode="debug")
    assert logging.getLogger().handlers
