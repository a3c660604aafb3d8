import os

from spsync import db, scheduler
from spsync.api import create_app
from spsync.changes import CursorStore
from spsync.config import ConnectorConfig, InvalidConfigurationError
from spsync.connector import SharePointConnector
from spsync.pusher import HttpDocIdPusher
from spsync.runtime_logger import emit

_bootstrapped = False


def _is_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized in {"1", "true", "t", "yes", "y", "on"}


def build_connector(config: ConnectorConfig) -> SharePointConnector:
    if not config.index_push_url:
        raise InvalidConfigurationError("INDEX_PUSH_URL must be set")
    db.configure(config.database_url)
    if db.is_configured():
        db.ensure_schema()
    pusher = HttpDocIdPusher(
        config.index_push_url,
        config.index_push_token,
        batch_size=config.feed_max_urls,
        max_retries=config.max_retries,
        timeout=config.read_timeout,
    )
    connector = SharePointConnector(config, pusher, cursor_store=CursorStore(persist=db.is_configured()))
    connector.init()
    return connector


def bootstrap_background_threads():
    global _bootstrapped
    if _bootstrapped:
        return
    if not _is_enabled(os.getenv("WORKER_ENABLE_BACKGROUND_THREADS"), default=True):
        emit("INFO", "SCHEDULER", "Background threads disabled by WORKER_ENABLE_BACKGROUND_THREADS")
        _bootstrapped = True
        return
    scheduler.start_scheduler_thread()
    _bootstrapped = True


config = ConnectorConfig.from_env()
connector = build_connector(config)
scheduler.configure(connector, full_cron=config.full_crawl_cron, incremental_cron=config.incremental_crawl_cron)
app = create_app(connector)

bootstrap_background_threads()

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("WORKER_PORT", "5000")))
