"""
Headless entry point.

Responsibilities:
- Start the live trade stream for the configured symbols
- Poll an instant quote for every configured stock symbol
- Log the newest trades and the latest quotes at a fixed interval
- Stop the stream and cancel every poller on Ctrl+C

Single-command execution:
    python app.py
"""

import logging
import time
from typing import Dict, List

from analytics import format_percent, format_price, format_signed
from api import build_clients
from config import load_settings
from errors import ConfigurationError
from fetcher import QuotePoller, quote_poller
from ingest import StreamManager


# ---------------- Logging ----------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s"
)
logger = logging.getLogger("app")


# ---------------- Configuration ----------------
REPORT_INTERVAL = 5.0  # seconds
REPORT_TRADES = 5


def stock_symbols(symbols: List[str]) -> List[str]:
    """Symbols the quote endpoint understands; exchange-qualified ones (BINANCE:...) are feed-only."""
    return [s for s in symbols if ":" not in s]


def report(stream: StreamManager, pollers: Dict[str, QuotePoller]):
    head = stream.buffer.snapshot()[:REPORT_TRADES]
    if head:
        logger.info(f"⚡ [{stream.status.upper()}] {stream.buffer.received} trades received, newest first:")
        for trade in head:
            logger.info(f"     • {trade.symbol:<16} {format_price(trade.price):>12}  vol {trade.volume:g}")
    else:
        logger.info(f"⏳ [{stream.status.upper()}] No trades yet")

    for symbol, poller in pollers.items():
        state = poller.state
        if state.error:
            logger.warning(f"❌ [{symbol}] {state.error}")
        elif state.data is not None:
            q = state.data
            logger.info(
                f"📊 [{symbol}] {format_price(q.current)} "
                f"{format_signed(q.change)} ({format_percent(q.percent_change)})"
            )


def main():
    logger.info("=" * 60)
    logger.info("🚀 STOCK MARKET DASHBOARD - headless runner")
    logger.info("=" * 60)

    try:
        settings = load_settings()
    except ConfigurationError as e:
        logger.error(f"❌ Configuration error: {e}")
        return 1

    logging.getLogger().setLevel(getattr(logging, settings.log_level, logging.INFO))
    symbols = list(settings.ticker_symbols)
    logger.info(f"   Symbols: {', '.join(symbols)}")

    clients = build_clients(settings)
    stream = StreamManager.from_settings(settings)
    pollers: Dict[str, QuotePoller] = {}

    try:
        try:
            stream.start(symbols)
        except ConfigurationError as e:
            logger.error(f"❌ Live trades disabled: {e}")

        if settings.has("finnhub_api_key"):
            for symbol in stock_symbols(symbols):
                pollers[symbol] = quote_poller(clients, symbol)
                pollers[symbol].start()

        if not stream.running and not pollers:
            logger.error("❌ Nothing to run, set FINNHUB_API_KEY")
            return 1

        logger.info("✅ Running, press Ctrl+C to stop")
        logger.info("-" * 60)
        while True:
            time.sleep(REPORT_INTERVAL)
            report(stream, pollers)

    except KeyboardInterrupt:
        logger.info("")
        logger.info("=" * 60)
        logger.info("🛑 Shutting down...")
    finally:
        stream.stop()
        for poller in pollers.values():
            poller.close()
        clients.close()
        logger.info("   ✓ Stream stopped, pollers cancelled")
        logger.info("=" * 60)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
