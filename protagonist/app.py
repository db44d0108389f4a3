import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from protagonist.checkpoints import PersistenceCoordinator
from protagonist.config import load_settings
from protagonist.llm import ContentProvider, EchoProvider, HttpProvider
from protagonist.pipeline import SessionEngine
from protagonist.routes import router
from protagonist.storage import JsonStore

load_dotenv(Path(__file__).parent.parent / ".env")

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"

logger = logging.getLogger(__name__)


def create_app(data_dir: Path | None = None, provider: ContentProvider | None = None) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    settings = load_settings(resolved)
    coordinator = PersistenceCoordinator(JsonStore(resolved))

    app = FastAPI(title="Protagonist")
    app.state.data_dir = resolved
    if provider is None:
        if os.getenv("PROTAGONIST_PROVIDER") == "echo":
            logger.warning("Using EchoProvider: story turns will fail to parse")
            provider = EchoProvider()
        else:
            provider = HttpProvider.from_settings(settings)

    app.state.engine = SessionEngine(settings, provider, coordinator)
    app.include_router(router, prefix="/api")
    logger.info("Data directory: %s (%d checkpoint(s))", resolved, len(coordinator.saves))
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
