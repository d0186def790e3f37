# main.py
import os
import sys
import signal
import asyncio
import logging
import dataclasses
from logging.handlers import RotatingFileHandler
from typing import Optional

from dycast_proxy.core.config_manager import ProxyConfig, load_config_from_env
from dycast_proxy.core.proxy_manager import ProxyServer
from dycast_proxy.utils.port_utils import NoFreePortError, describe_port_owner, find_available_port

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def setup_logging(debug: bool = False, log_file: Optional[str] = None):
    """Configures console logging and, when log_file is given, a rotating file log"""
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handlers = [console_handler]

    if log_file:
        # Rotating file: 5MB max, 5 backups
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=handlers,
        force=True
    )


def setup_exception_handler():
    """Logs uncaught exceptions before the interpreter exits"""

    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Uncaught exception:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


def _install_signal_handlers(stop_event: asyncio.Event):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def run_server(config: ProxyConfig) -> int:
    """Allocates the port, runs the proxy until SIGINT/SIGTERM and returns the exit code"""
    try:
        active_port = find_available_port(config.port, config.host)
    except NoFreePortError as e:
        logger.critical(f"❌ {e}")
        return 1
    except OSError as e:
        logger.critical(f"❌ Cannot bind {config.host}:{config.port}: {e}")
        return 1

    if active_port != config.port:
        logger.warning(f"⚠️ Port {config.port} is busy. Using {active_port} instead.")
        logger.info(f"📌 {describe_port_owner(config.port)}")
        config = dataclasses.replace(config, port=active_port)

    server = ProxyServer(config)
    try:
        await server.start()
    except OSError as e:
        logger.critical(f"❌ Failed to start DyCast proxy server: {e}")
        return 1

    logger.info(f"✅ DyCast proxy server is running at http://{config.host}:{active_port}")
    logger.debug(f"🔍 Debug mode: {config.debug}")

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    await stop_event.wait()

    logger.info("🛑 Stopping DyCast proxy server...")
    await server.stop()
    return 0


def main() -> int:
    try:
        config = load_config_from_env()
    except ValueError as e:
        setup_logging()
        logger.critical(f"❌ Invalid configuration: {e}")
        return 1

    setup_logging(config.debug, os.getenv('PROXY_LOG_FILE'))
    setup_exception_handler()

    return asyncio.run(run_server(config))


if __name__ == "__main__":
    sys.exit(main())
