import contextlib
import contextvars
import dataclasses
import json
import logging
import logging.config
import time
from collections.abc import Iterator, Mapping
from dataclasses import asdict
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from logging import Logger
from pathlib import Path
from typing import Any, Optional, cast

_DEFAULT_LEVEL = logging.INFO
_DEBUG_ENABLED = False
_DEBUG_MODULES: set[str] = set()
_CONFIGURED = False
_RUN_ID: str | None = None
_MODE: str | None = None

# Fields bound for the duration of one unit of work (one event in one lane).
# Each asyncio task sees its own copy, so concurrent lanes never mix them.
_BOUND: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("term_engine_log_context", default={})

# ---------------------------------------------------------------------
# Log categories (lifted to the top level of each JSON record)
# ---------------------------------------------------------------------

CATEGORY_DATA_INTEGRITY = "data_integrity"
CATEGORY_DECISION = "violation_decision"
CATEGORY_DELIVERY = "alert_delivery"
CATEGORY_REGISTRY = "term_registry"
CATEGORY_HEARTBEAT = "health_heartbeat"

_CATEGORY_LEVELS: dict[str, int] = {
    CATEGORY_DATA_INTEGRITY: logging.WARNING,
    CATEGORY_DECISION: logging.INFO,
    CATEGORY_DELIVERY: logging.ERROR,
    CATEGORY_REGISTRY: logging.INFO,
    CATEGORY_HEARTBEAT: logging.INFO,
}


# ---------------------------------------------------------------------
# Profiles -> dictConfig
# ---------------------------------------------------------------------

def _merge_profile(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k] = _merge_profile(merged[k], v)
        else:
            merged[k] = v
    return merged


def _section(cfg: Mapping[str, Any], key: str) -> dict[str, Any]:
    val = cfg.get(key)
    return dict(val) if isinstance(val, dict) else {}


def load_profile(config_path: str | Path, mode: str | None = None) -> tuple[str, dict[str, Any]]:
    """Read logging.json and return (profile name, profile merged over `default`)."""
    path = Path(config_path)
    if not path.is_absolute():
        path = Path.cwd() / path
    with path.open("r", encoding="utf-8") as f:
        cfg = json.load(f)

    profiles = cfg.get("profiles", {})
    if not isinstance(profiles, dict):
        raise TypeError("logging.json 'profiles' must be a dict")

    name = str(mode or cfg.get("active_profile") or "default")
    if name not in profiles:
        raise KeyError(f"logging profile not found: {name}")
    return name, _merge_profile(_section(profiles, "default"), _section(profiles, name))


def _console_handler(cfg: dict[str, Any], level: str, formatter: str) -> dict[str, Any]:
    return {
        "class": "logging.StreamHandler",
        "level": str(cfg.get("level", level)).upper(),
        "formatter": formatter,
        "filters": ["context"],
        "stream": "ext://sys.stdout",
    }


def _file_handler(cfg: dict[str, Any], level: str, formatter: str, *, run_id: str | None, mode: str) -> dict[str, Any]:
    template = str(cfg.get("path", "artifacts/logs/{mode}-{run_id}.jsonl"))
    path = Path(template.format(run_id=run_id or "run", mode=mode))
    path.parent.mkdir(parents=True, exist_ok=True)
    spec: dict[str, Any] = {
        "level": str(cfg.get("level", level)).upper(),
        "formatter": formatter,
        "filters": ["context"],
        "filename": str(path),
        "encoding": "utf-8",
    }
    max_bytes = int(cfg.get("max_bytes", 0) or 0)
    if max_bytes > 0:
        spec["class"] = "logging.handlers.RotatingFileHandler"
        spec["maxBytes"] = max_bytes
        spec["backupCount"] = int(cfg.get("backup_count", 5))
    else:
        spec["class"] = "logging.FileHandler"
    return spec


def _build_dict_config(profile: dict[str, Any], *, run_id: str | None, mode: str) -> dict[str, Any]:
    level_name = str(profile.get("level", "INFO")).upper()
    formatter = "json" if bool(_section(profile, "format").get("json", True)) else "standard"

    handlers_cfg = _section(profile, "handlers")
    console_cfg = _section(handlers_cfg, "console")
    file_cfg = _section(handlers_cfg, "file")

    handlers: dict[str, Any] = {}
    if bool(console_cfg.get("enabled", True)):
        handlers["console"] = _console_handler(console_cfg, level_name, formatter)
    if bool(file_cfg.get("enabled", False)):
        handlers["file"] = _file_handler(file_cfg, level_name, formatter, run_id=run_id, mode=mode)

    # per-logger overrides, e.g. {"term_engine.routing": "DEBUG"}
    loggers = {
        str(name): {"level": str(lvl).upper()}
        for name, lvl in _section(profile, "loggers").items()
    }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "context": {"()": "term_engine.utils.logger.ContextFilter"},
        },
        "formatters": {
            "json": {"()": "term_engine.utils.logger.JsonFormatter"},
            "standard": {
                "()": "term_engine.utils.logger.UtcFormatter",
                "format": "%(asctime)s %(levelname)s %(name)s %(message)s %(context)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": loggers,
        "root": {
            "level": level_name,
            "handlers": list(handlers),
        },
    }


def init_logging(
    config_path: str = "configs/logging.json",
    *,
    run_id: str | None = None,
    mode: str | None = None,
) -> None:
    """Configure the root logger from a profile-based JSON file.

    `mode` selects the profile (falls back to `active_profile`, then
    `default`); the chosen profile is merged over `default`. Every record
    then carries `run_id` and `mode` in its context.
    """
    global _DEFAULT_LEVEL, _DEBUG_ENABLED, _DEBUG_MODULES, _CONFIGURED, _RUN_ID, _MODE

    profile_name, profile = load_profile(config_path, mode)

    _DEFAULT_LEVEL = getattr(logging, str(profile.get("level", "INFO")).upper(), logging.INFO)
    debug_cfg = _section(profile, "debug")
    _DEBUG_ENABLED = bool(debug_cfg.get("enabled", False))
    _DEBUG_MODULES = {str(x) for x in debug_cfg.get("modules", [])}
    _RUN_ID = run_id
    _MODE = profile_name

    logging.config.dictConfig(_build_dict_config(profile, run_id=run_id, mode=profile_name))

    _CONFIGURED = True
    get_logger.cache_clear()
    for logger in logging.root.manager.loggerDict.values():
        if isinstance(logger, logging.Logger) and logger.level != logging.NOTSET and logger.name not in _section(profile, "loggers"):
            logger.setLevel(logging.NOTSET)


# ---------------------------------------------------------------------
# Per-event context
# ---------------------------------------------------------------------

@contextlib.contextmanager
def bind_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """Attach fields (lane, instrument, seq, ...) to every record logged inside the block."""
    merged = {**_BOUND.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _BOUND.set(merged)
    try:
        yield merged
    finally:
        _BOUND.reset(token)


def bound_context() -> dict[str, Any]:
    return dict(_BOUND.get())


class ContextFilter(logging.Filter):
    """Guarantees every LogRecord carries a `context` dict with run and event fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = getattr(record, "context", None)
        bound = _BOUND.get()

        if not _CONFIGURED and not bound:
            if not hasattr(record, "context"):
                setattr(record, "context", None)
            return True

        if ctx is None:
            ctx = {}
        elif not isinstance(ctx, dict):
            ctx = {"_context": safe_jsonable(ctx)}
        # explicit fields win over bound ones
        for k, v in bound.items():
            ctx.setdefault(k, safe_jsonable(v))
        if _RUN_ID is not None:
            ctx.setdefault("run_id", _RUN_ID)
        if _MODE is not None:
            ctx.setdefault("mode", _MODE)
        setattr(record, "context", ctx)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record; `category` is lifted out of the context."""

    def format(self, record: logging.LogRecord) -> str:
        dt = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "ts": dt.isoformat(timespec="milliseconds"),
            "ts_ms": int(record.created * 1000),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }

        context = cast(Optional[dict[str, Any]], getattr(record, "context", None))
        if isinstance(context, dict) and context:
            context = dict(context)
            category = context.pop("category", None)
            if category is not None:
                payload["category"] = safe_jsonable(category)
            if context:
                payload["context"] = safe_jsonable(context)

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        try:
            return json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            payload["context"] = repr(payload.get("context"))
            payload.pop("exc", None)
            payload["format_error"] = repr(exc)
            return json.dumps(payload, ensure_ascii=False, default=repr)


class UtcFormatter(logging.Formatter):
    converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "context"):
            setattr(record, "context", None)
        return super().format(record)


@lru_cache(None)
def get_logger(name: str = "term_engine") -> Logger:
    logger = logging.getLogger(name)
    if not _CONFIGURED:
        logger.setLevel(logging.NOTSET)
    return logger


# ---------------------------------------------------------------------
# JSON-safe context values
# ---------------------------------------------------------------------

def safe_jsonable(x: Any) -> Any:
    if x is None or isinstance(x, (str, int, float, bool)):
        return x
    if isinstance(x, datetime):
        if x.tzinfo is None:
            return x.replace(tzinfo=timezone.utc).isoformat()
        return x.astimezone(timezone.utc).isoformat()
    if isinstance(x, Path):
        return str(x)
    if isinstance(x, Enum):
        value = safe_jsonable(getattr(x, "value", None))
        return value if value is not None else str(x)
    if dataclasses.is_dataclass(x) and not isinstance(x, type):
        try:
            return safe_jsonable(asdict(cast(Any, x)))
        except (TypeError, RecursionError):
            return repr(x)
    if isinstance(x, BaseException):
        return f"{type(x).__name__}: {x}"
    if isinstance(x, Mapping):
        out: dict[str, Any] = {}
        for k, v in x.items():
            key = safe_jsonable(k)
            out[key if isinstance(key, str) else repr(key)] = safe_jsonable(v)
        return out
    if isinstance(x, (list, tuple, set, frozenset)):
        return [safe_jsonable(v) for v in x]
    # numpy scalars
    if hasattr(x, "item") and callable(x.item):
        try:
            return safe_jsonable(x.item())
        except (TypeError, ValueError):
            pass
    return str(x)


def _sanitize_context(context: dict[str, Any]) -> dict[str, Any]:
    cleaned = safe_jsonable(context)
    if isinstance(cleaned, dict):
        return cleaned
    return {"_context": cleaned}


def _debug_module_matches(logger_name: str, module: str) -> bool:
    module = module.strip()
    if not module:
        return False
    if logger_name == module or logger_name.startswith(module + "."):
        return True
    return module in logger_name.split(".")


# ---------------------------------------------------------------------
# Structured helpers: log_xxx(logger, "dotted.event", **context)
# ---------------------------------------------------------------------

def log_debug(logger: Logger, msg: str, **context):
    if not _DEBUG_ENABLED:
        return
    if _DEBUG_MODULES and not any(_debug_module_matches(logger.name, m) for m in _DEBUG_MODULES):
        return
    logger.debug(msg, extra={"context": _sanitize_context(context)})


def log_info(logger: Logger, msg: str, **context):
    logger.info(msg, extra={"context": _sanitize_context(context)})


def log_warn(logger: Logger, msg: str, **context):
    logger.warning(msg, extra={"context": _sanitize_context(context)})


def log_error(logger: Logger, msg: str, **context):
    logger.error(msg, extra={"context": _sanitize_context(context)})


def log_exception(logger: Logger, msg: str, **context):
    logger.exception(msg, extra={"context": _sanitize_context(context)})


def log_category(logger: Logger, category: str, msg: str, **context):
    """Emit a categorized record at the level the category is pinned to."""
    level = _CATEGORY_LEVELS.get(category, logging.INFO)
    context["category"] = category
    logger.log(level, msg, extra={"context": _sanitize_context(context)})


def log_data_integrity(logger: Logger, msg: str, **context):
    """
    Inbound data health: malformed payloads, sequence gaps, late arrivals.
    Expected context: instrument, seq, expected_seq, reason
    """
    log_category(logger, CATEGORY_DATA_INTEGRITY, msg, **context)


def log_decision(logger: Logger, msg: str, **context):
    """Violation decision trace (term_id, term_version, instrument, seq, dedup_key, observed)."""
    log_category(logger, CATEGORY_DECISION, msg, **context)


def log_delivery(logger: Logger, msg: str, **context):
    """Alert delivery failures operators must see (dedup_key, attempts, err)."""
    log_category(logger, CATEGORY_DELIVERY, msg, **context)


def log_registry(logger: Logger, msg: str, **context):
    log_category(logger, CATEGORY_REGISTRY, msg, **context)


def log_heartbeat(logger: Logger, msg: str, **context):
    log_category(logger, CATEGORY_HEARTBEAT, msg, **context)
