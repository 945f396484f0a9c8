from __future__ import annotations

import threading
from typing import Any

from ingestion.contracts.message import MessageSource
from ingestion.market_data.normalize import MarketDataNormalizer
from ingestion.term_feed.worker import TermFeedWorker
from term_engine.engine.engine import DeadLetterSink, EvaluationEngine
from term_engine.publish.publisher import AlertPublisher, AlertSink
from term_engine.registry.registry import TermRegistry
from term_engine.runtime.driver import EvaluationDriver
from term_engine.utils.config import EngineConfig


def build_driver(
    config: EngineConfig,
    *,
    source: MessageSource,
    sink: AlertSink,
    term_source: Any | None = None,
    dead_letters: DeadLetterSink | None = None,
    registry: TermRegistry | None = None,
    stop_event: threading.Event | None = None,
) -> EvaluationDriver:
    """
    Wire registry, publisher, engine and driver from one config.

    NOTE:
      - `term_source` is any feed accepted by TermFeedWorker; when omitted the
        caller owns the registry and must publish a first snapshot itself
        (or set `allow_empty_registry`).
    """
    stop_event = stop_event or threading.Event()
    registry = registry or TermRegistry()
    publisher = AlertPublisher(sink, config.publisher)
    engine = EvaluationEngine(
        registry=registry,
        publisher=publisher,
        config=config,
        dead_letters=dead_letters,
    )
    term_feed = None
    if term_source is not None:
        term_feed = TermFeedWorker(
            registry=registry,
            source=term_source,
            config=config.term_feed,
            stop_event=stop_event,
        )
    return EvaluationDriver(
        engine=engine,
        registry=registry,
        source=source,
        term_feed=term_feed,
        normalizer=MarketDataNormalizer(),
        stop_event=stop_event,
    )
