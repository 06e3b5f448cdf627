"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import signal
import sys
from decimal import Decimal

from pmmbot.config.config import ConfigError, Settings
from pmmbot.core.models import Instrument
from pmmbot.exchange.errors import ExchangeError
from pmmbot.exchange.mexc import MexcClient
from pmmbot.exchange.paper import PaperExchange
from pmmbot.infra.logging_cfg import ERROR, build_logger, log_event
from pmmbot.monitoring.metrics import MarketMakerMetrics, start_metrics_server
from pmmbot.orchestrator.bot_factory import build_market_maker, resolve_instrument

log = logging.getLogger("pmmbot")


async def main() -> None:
    try:
        cfg = Settings.load()
    except ConfigError as exc:
        build_logger("pmmbot", file_path=None)
        log_event(log, "config_invalid", level=ERROR, err=str(exc))
        sys.exit(1)

    build_logger("pmmbot", level=logging.getLevelName(cfg.log_level), file_path=cfg.log_file)

    # Public market data never needs credentials; the paper venue reads prices through it
    venue = MexcClient(
        cfg.base_url,
        api_key=cfg.api_key,
        api_secret=cfg.api_secret,
        timeout=cfg.http_timeout,
        recv_window_ms=cfg.recv_window_ms,
    )
    try:
        instrument = await resolve_instrument(cfg, venue)
    except ExchangeError as exc:
        log_event(log, "instrument_lookup_failed", level=ERROR, symbol=cfg.symbol, err=str(exc))
        await venue.close()
        sys.exit(1)

    exchange = venue
    if cfg.paper:
        exchange = PaperExchange(
            instrument,
            balances=_paper_balances(cfg, instrument),
            book_source=venue,
        )

    metrics = MarketMakerMetrics()
    start_metrics_server(metrics, cfg.metrics_port)
    mm = build_market_maker(cfg, exchange, instrument, metrics=metrics)

    log_event(
        log,
        "startup",
        symbol=instrument.symbol,
        mode="paper" if cfg.paper else "live",
        instrument=dataclasses.asdict(instrument),
    )

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()

    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            pass

    try:
        await mm.start()
        waiter = asyncio.create_task(stop_requested.wait())
        runner = asyncio.create_task(mm.wait())
        await asyncio.wait({waiter, runner}, return_when=asyncio.FIRST_COMPLETED)
        waiter.cancel()
        log_event(log, "shutdown_requested", symbol=instrument.symbol)
    except ExchangeError as exc:
        log_event(log, "startup_failed", level=ERROR, symbol=instrument.symbol, err=str(exc))
    finally:
        await mm.stop()
        log_event(log, "final_status", **mm.status().to_dict())
        await exchange.close()
        log.info("Shutdown complete")


def _paper_balances(cfg: Settings, instrument: Instrument) -> dict:
    balances = {instrument.quote_asset: cfg.paper_quote_balance}
    if cfg.paper_base_balance > Decimal("0"):
        balances[instrument.base_asset] = cfg.paper_base_balance
    return balances


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nBot stopped by user")


if __name__ == "__main__":
    run()
