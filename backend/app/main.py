import logging.config

from fastapi import FastAPI

from app.api.metrics import router as metrics_router
from app.config import get_settings
from app.realtime import get_transport, shutdown_realtime, startup_realtime


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        }
    },
    "handlers": {
        "default": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        }
    },
    "root": {
        "handlers": ["default"],
        "level": "INFO",
    },
    "loggers": {
        "judgeline.realtime.transport": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        }
    },
}


logging.config.dictConfig(LOGGING_CONFIG)

settings = get_settings()

app = FastAPI(title=settings.app_name, debug=settings.debug)


@app.get("/health", tags=["system"])
def health_check() -> dict[str, str | bool]:
    """Simple health check endpoint."""
    return {
        "status": "ok",
        "environment": settings.environment,
        "gateway": settings.gateway_backend,
        "realtime_transport": get_transport().started,
    }


@app.on_event("startup")
async def _startup() -> None:
    await startup_realtime()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await shutdown_realtime()


app.include_router(metrics_router)
