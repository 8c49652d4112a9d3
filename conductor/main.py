from datetime import datetime, timezone
import logging

from fastapi import FastAPI

from .api import configure_plugins_api, plugins_router
from .config import PluginSystemSettings
from .messaging.event_bus import NotificationBus
from .plugin_manager.manager import PluginManager


class AddPluginIdFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, "plugin_id"):
            record.plugin_id = "core"
        return True


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - plugin_id=%(plugin_id)s - %(message)s",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, AddPluginIdFilter) for f in handler.filters):
            handler.addFilter(AddPluginIdFilter())


settings = PluginSystemSettings.from_provider()
configure_logging(settings.log_level)
logger = logging.getLogger("conductor.core")

app = FastAPI(
    title="Conductor Plugin Host",
    version="1.0.0",
    docs_url=None,
    redoc_url=None,
)

bus = NotificationBus()
plugin_manager = PluginManager(settings, bus=bus)

# Wire admin API dependencies
configure_plugins_api(manager=plugin_manager)
app.include_router(plugins_router)


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "1.0.0",
        "plugins": {
            "loaded": len(plugin_manager.get_all_plugins()),
            "enabled": len(plugin_manager.get_enabled_plugins()),
        },
    }


@app.on_event("startup")
async def startup_event():
    logger.info("Conductor plugin host starting")

    if settings.auto_load:
        try:
            loaded = await plugin_manager.load_all_plugins()
            logger.info(f"Auto-loaded plugins: {', '.join(loaded) or 'none'}")
        except Exception as e:
            logger.error(f"Failed to auto-load plugins: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Conductor plugin host shutting down")

    try:
        await plugin_manager.shutdown()
    except Exception as e:
        logger.error(f"Error stopping plugin manager: {e}")
