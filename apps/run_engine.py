from __future__ import annotations

import argparse
import asyncio
import json
import signal
import uuid
from pathlib import Path

from ingestion.market_data.source import ReplayMarketDataSource
from ingestion.term_feed.source import StaticTermFeed, TermChangeRESTSource
from term_engine.publish.sinks import HttpAlertSink, InMemoryAlertSink, JsonlDeadLetterSink
from term_engine.runtime.bootstrap import build_driver
from term_engine.utils.config import load_engine_config
from term_engine.utils.logger import get_logger, init_logging, log_info

logger = get_logger(__name__)


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Evaluate market data against compliance terms.")
    p.add_argument("--config", default="configs/engine.json")
    p.add_argument("--logging", default="configs/logging.json")
    p.add_argument("--profile", default=None, help="logging profile name")
    p.add_argument("--replay", required=True, help="parquet/csv/jsonl market data to replay")
    terms = p.add_mutually_exclusive_group(required=True)
    terms.add_argument("--terms-file", help="JSON list of term payloads")
    terms.add_argument("--terms-url", help="term service base URL")
    p.add_argument("--alerts-url", default=None, help="HTTP alert sink; in-memory when omitted")
    p.add_argument("--dead-letter", default="artifacts/dead_letter.jsonl")
    return p.parse_args()


async def main() -> None:
    args = _parse_args()
    run_id = uuid.uuid4().hex[:12]
    init_logging(args.logging, run_id=run_id, mode=args.profile)

    config = load_engine_config(args.config)

    # -------------------------------------------------
    # 1) Term feed (bootstrap + changes)
    # -------------------------------------------------
    if args.terms_file:
        with Path(args.terms_file).open("r", encoding="utf-8") as f:
            term_source = StaticTermFeed(initial=json.load(f))
    else:
        term_source = TermChangeRESTSource(base_url=args.terms_url)

    # -------------------------------------------------
    # 2) Outbound sinks
    # -------------------------------------------------
    sink = HttpAlertSink(url=args.alerts_url) if args.alerts_url else InMemoryAlertSink()
    dead_letters = JsonlDeadLetterSink(args.dead_letter)

    # -------------------------------------------------
    # 3) Driver; SIGINT/SIGTERM is the shutdown signal
    # -------------------------------------------------
    driver = build_driver(
        config,
        source=ReplayMarketDataSource(args.replay, sort=True),
        sink=sink,
        term_source=term_source,
        dead_letters=dead_letters,
    )
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, driver.request_stop)
        except NotImplementedError:
            pass

    try:
        await driver.run()
    finally:
        log_info(logger, "app.finished", run_id=run_id, **driver.health().to_dict())
        if isinstance(sink, InMemoryAlertSink):
            log_info(logger, "app.alerts", observed=len(sink.observed), deliveries=sink.deliveries)


if __name__ == "__main__":
    asyncio.run(main())
