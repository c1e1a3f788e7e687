from __future__ import annotations

import logging
import os

import uvicorn

from eventsync.config_manager import ConfigManager
from eventsync.errors import ConfigurationError
from eventsync.logging_setup import setup_logging
from eventsync.state_store import StateStore
from eventsync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


def _config_manager() -> ConfigManager:
    return ConfigManager(os.getenv("EVENTSYNC_CONFIG_PATH", "config.yaml"))


def main() -> None:
    config = _config_manager().load()
    setup_logging(config.logging.level, config.logging.json)
    host = os.getenv("EVENTSYNC_HOST", "0.0.0.0")
    port = int(os.getenv("EVENTSYNC_PORT", "8080"))
    uvicorn.run("eventsync.web_admin:create_app", factory=True, host=host, port=port, reload=False, log_config=None)


def sync_main() -> int:
    config = _config_manager().load()
    setup_logging(config.logging.level, config.logging.json)
    state_store = StateStore(os.getenv("EVENTSYNC_STATE_PATH", "data/state.db"))
    try:
        engine = SyncEngine.from_config(config, state_store)
    except ConfigurationError as exc:
        logger.error(f"Cannot start sync: {exc}")
        return 1

    fleet = engine.sync_all_calendars()
    if not fleet.results:
        logger.warning("No active calendars found")
    for outcome in fleet.results:
        if outcome.result.success:
            logger.info(
                f"{outcome.calendar_slug}: {outcome.result.stats.people_found} people, "
                f"{outcome.result.stats.events_found} events in {outcome.result.duration_ms}ms",
                extra={"calendar_slug": outcome.calendar_slug},
            )
        else:
            logger.error(f"{outcome.calendar_slug}: {outcome.result.error}", extra={"calendar_slug": outcome.calendar_slug})
    logger.info("Sync summary", extra=fleet.total_stats.to_dict())
    return 0 if fleet.all_succeeded else 1


if __name__ == "__main__":
    main()
