import asyncio
import logging
import signal
import sys
from typing import Optional

from api.alerts import AlertWebhook
from api.metrics import start_metrics_server
from config import config, load_settings
from config.settings import Settings
from monitoring.logging_utils import setup_logging
from orchestration.engine import TradingEngine
from orchestration.errors import ConfigurationError, PersistenceError
from orchestration.persistence import TradingRepository
from strategy.transports.binance import BinanceTransport


logger = logging.getLogger(__name__)


class TradingBot:
    """Wire the venue client, repository and engine for one process."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.transport = BinanceTransport(settings.exchange)
        self.repository: Optional[TradingRepository] = None
        if settings.database.host:
            self.repository = TradingRepository(settings.database)
        self.engine = TradingEngine(
            settings,
            self.transport,
            repository=self.repository,
            alerts=AlertWebhook(settings.alert_webhook),
        )
        self._shutdown = asyncio.Event()

    async def start(self):
        if self.repository is not None:
            await self.repository.initialize()
        elif not self.settings.trading.enable_paper_trading:
            raise ConfigurationError("database host is required for live trading")
        else:
            logger.info("No database configured; running paper trading without persistence")

        if self.settings.prometheus_port:
            start_metrics_server(self.settings.prometheus_port)
        await self.engine.start()

    def request_shutdown(self):
        logger.info("Shutdown requested")
        self._shutdown.set()

    async def run_forever(self):
        await self.start()
        try:
            await self._shutdown.wait()
        finally:
            await self.stop()

    async def stop(self):
        await self.engine.stop()
        await self.transport.close()
        if self.repository is not None:
            await self.repository.close()


async def main() -> int:
    try:
        settings = load_settings(config)
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    bot = TradingBot(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, bot.request_shutdown)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    try:
        await bot.run_forever()
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1
    except PersistenceError as exc:
        logger.error("Database unavailable: %s", exc)
        return 1
    return 0


def run():
    logger_cfg = config.get('logger') or {}
    setup_logging(logger_cfg.get('level', 'info'), logger_cfg.get('format'))
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
