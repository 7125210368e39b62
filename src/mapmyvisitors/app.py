"""
Standalone FastAPI application serving the widget API.

    uvicorn mapmyvisitors.app:create_app --factory
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__, setup_visitor_globe
from .config import GlobeConfig

logger = logging.getLogger(__name__)


def create_app(config: GlobeConfig | None = None, **components) -> FastAPI:
    """Build the app; ``components`` may override ``store`` and ``geoip``."""
    globe = setup_visitor_globe(config or GlobeConfig.from_env(), **components)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await globe.store.init_schema()
        logger.info(f"MapMyVisitors API ready (widget base {globe.config.app_url})")
        yield

    app = FastAPI(title="MapMyVisitors", version=__version__, lifespan=lifespan)
    app.state.globe = globe
    app.include_router(globe.router)
    return app
