# main.py
import sys
import signal
import logging
import threading
from logging.handlers import RotatingFileHandler

from core.config_manager import get_app_data_dir, get_config

logger = logging.getLogger(__name__)


def setup_logging(config):
    """Configures console and rotating file logging before anything else runs"""
    logs_dir = get_app_data_dir() / "logs"
    logs_dir.mkdir(exist_ok=True)

    log_file = logs_dir / "key_aggregator.log"

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=config.get('logging.max_bytes', 5 * 1024 * 1024),
        backupCount=config.get('logging.backup_count', 5),
        encoding='utf-8'
    )
    file_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    level = getattr(logging, str(config.get('logging.level', 'INFO')).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        handlers=[console_handler, file_handler]
    )


def setup_exception_handler():
    """Logs uncaught exceptions instead of letting them vanish with stderr"""

    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Unhandled exception:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


def main():
    """Runs the proxy daemon until SIGINT/SIGTERM"""
    config = get_config()
    setup_logging(config)
    setup_exception_handler()

    from core.key_cache import KeyCache
    from core.key_pool import KeyPool
    from core.proxy_manager import ProxyManager

    logger.info("=" * 40)
    logger.info("  API Key Aggregator Daemon")
    logger.info("=" * 40)

    pool = KeyPool(failure_threshold=config.get('keys.failure_threshold', 3))
    key_cache = KeyCache(config.get_keys_cache_path())

    cached_keys = key_cache.load()
    if cached_keys:
        pool.replace(cached_keys)
    else:
        logger.warning("⚠️ No cached keys, waiting for POST /update-keys")

    proxy_manager = ProxyManager(config, pool, key_cache)
    if not proxy_manager.start():
        logger.error(f"❌ Startup failed ({proxy_manager.last_error_type}): {proxy_manager.last_error_details}")
        return 1

    shutdown = threading.Event()

    def request_shutdown(signum, frame):
        logger.info(f"Received signal {signum}")
        shutdown.set()

    signal.signal(signal.SIGINT, request_shutdown)
    signal.signal(signal.SIGTERM, request_shutdown)

    logger.info("✅ Daemon started successfully")

    while not shutdown.is_set() and proxy_manager.thread.is_alive():
        shutdown.wait(1)

    proxy_manager.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
