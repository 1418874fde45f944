"""optiontrader — application entry point.

Boots the FastAPI internal server and provides the CLI entry point for
paper, live, and backtest modes.
"""

import logging

from fastapi import FastAPI

from optiontrader.api.routers import router

app = FastAPI(title="optiontrader Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("optiontrader")


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}


def warn_if_live(mode: str) -> bool:
    """Log a prominent warning when running in live mode.

    Returns ``True`` if *mode* is ``"live"``.
    """
    if mode == "live":
        logger.warning(
            "LIVE MODE — decisions are made on real market data. Starting in 5 seconds..."
        )
        return True
    return False


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments and dispatch to the appropriate mode."""
    import argparse
    import asyncio
    import signal
    import time

    from optiontrader.config import load_config, load_strategy_config

    parser = argparse.ArgumentParser(description="optiontrader options strategy engine")
    parser.add_argument(
        "--mode",
        choices=["paper", "live", "backtest"],
        default="paper",
        help="Run mode (default: paper)",
    )
    parser.add_argument("--env", help="Path to a .env file")
    parser.add_argument("--strategy", help="Path to the strategy JSON file")
    parser.add_argument("--token", help="Backtest instrument token")
    parser.add_argument("--start", help="Backtest start date (YYYY-MM-DD)")
    parser.add_argument("--end", help="Backtest end date (YYYY-MM-DD)")
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Run the trading engine without the API server",
    )
    args = parser.parse_args()

    config = load_config(args.env)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    strategy = load_strategy_config(args.strategy or config.strategy_config_path)

    if args.mode == "backtest":
        asyncio.run(_run_backtest(config, strategy, args.token, args.start, args.end))
        return

    if warn_if_live(args.mode):
        time.sleep(5)

    engine, catalog, notifier, trade_repo = _build_engine(config, strategy)

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping gracefully.")
        engine.stop()

    signal.signal(signal.SIGINT, handle_shutdown)

    asyncio.run(
        _run_engine(engine, catalog, notifier, config, serve_api=not args.engine_only)
    )

    from optiontrader.cli.dashboard import print_report, print_status
    from optiontrader.reporting.stats import daily_report

    print_status(engine.status())
    print_report(
        daily_report(trade_repo, engine.aggregator.bucket_start.date())
    )


def _build_engine(config, strategy):
    """Wire the engine and its collaborators from configuration."""
    from optiontrader.api.routers import configure_routers
    from optiontrader.broker.history import HistoricalRefresher
    from optiontrader.broker.smartapi_client import SmartApiClient
    from optiontrader.engine import TradingEngine
    from optiontrader.events import FanoutSink, LoggingSink
    from optiontrader.instruments import InstrumentCatalog
    from optiontrader.notify.telegram import TelegramNotifier
    from optiontrader.repos.position_store import PositionStore
    from optiontrader.repos.trade_repo import TradeRepo
    from optiontrader.scheduler import SystemClock

    catalog = InstrumentCatalog.from_json(config.instruments_path)
    instruments = []
    for token in strategy.instruments:
        instrument = catalog.get(token)
        if instrument is None:
            logger.warning("Instrument %s not in catalog — skipped.", token)
            continue
        instruments.append(instrument)

    trade_repo = TradeRepo(config.db_path)
    sink = FanoutSink(LoggingSink(), trade_repo)
    notifier = None
    if config.telegram_enabled:
        notifier = TelegramNotifier(config.telegram_bot_token, config.telegram_chat_id)
        sink.add(notifier)

    client = SmartApiClient(config)
    engine = TradingEngine(
        strategy,
        SystemClock(strategy.market_hours.timezone),
        PositionStore(config.db_path),
        sink=sink,
        instruments=instruments,
        feed=client,
        history=HistoricalRefresher(
            client,
            max_concurrency=strategy.history_concurrency,
            call_delay=strategy.history_call_delay_seconds,
        ),
    )
    configure_routers(engine=engine, trade_repo=trade_repo)
    return engine, catalog, notifier, trade_repo


async def stop_notifier(notifier, task) -> int:
    """Cancel the delivery worker, wait for it, then flush what is still queued."""
    import asyncio
    import contextlib

    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    return await notifier.drain()


async def _run_engine(engine, catalog, notifier, config, serve_api: bool = True) -> None:
    """Initialise the engine, then run it (and optionally the API) until stopped."""
    import asyncio

    import uvicorn

    await engine.initialize(catalog)

    notifier_task = asyncio.create_task(notifier.run()) if notifier else None
    server = None
    tasks = [engine.run(poll_interval=config.poll_interval_seconds)]
    if serve_api:
        uvi_config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=config.health_port,
            log_level="info",
        )
        server = uvicorn.Server(uvi_config)
        tasks.append(server.serve())
        logger.info("API available at http://localhost:%d", config.health_port)

    async def _engine_then_stop_server():
        try:
            await tasks[0]
        finally:
            if server is not None:
                server.should_exit = True

    results = await asyncio.gather(
        _engine_then_stop_server(), *tasks[1:], return_exceptions=True,
    )
    if notifier_task is not None:
        await stop_notifier(notifier, notifier_task)
    logger.info("optiontrader stopped. Results: %s", [type(r).__name__ for r in results])


async def _run_backtest(config, strategy, token, start_date, end_date) -> None:
    """Fetch historical candles for one instrument and run a backtest."""
    from datetime import datetime, timedelta
    from zoneinfo import ZoneInfo

    from optiontrader.backtest.engine import BacktestEngine
    from optiontrader.broker.smartapi_client import SmartApiClient
    from optiontrader.cli.dashboard import print_report
    from optiontrader.instruments import InstrumentCatalog

    token = token or (strategy.instruments[0] if strategy.instruments else None)
    if token is None:
        raise SystemExit("Backtest needs --token or a configured instrument")

    catalog = InstrumentCatalog.from_json(config.instruments_path)
    instrument = catalog.get(token)
    if instrument is None:
        raise SystemExit(f"Instrument {token} not in catalog")

    tz = ZoneInfo(strategy.market_hours.timezone)
    end = (
        datetime.fromisoformat(end_date).replace(hour=23, minute=59, tzinfo=tz)
        if end_date else datetime.now(tz)
    )
    start = (
        datetime.fromisoformat(start_date).replace(tzinfo=tz)
        if start_date else end - timedelta(days=strategy.history_days)
    )

    client = SmartApiClient(config)
    candles = await client.fetch_candles(
        instrument.token, instrument.exchange_segment,
        strategy.candle_interval_minutes, start, end,
    )
    result = await BacktestEngine(strategy).run(instrument, candles)
    print_report({**result["stats"], "date": f"{start.date()}..{end.date()}"})


if __name__ == "__main__":
    _run_cli()
