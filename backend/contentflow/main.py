import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .api.routes import api_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan: startup and shutdown events.
    """
    config.configure_logging()
    logger.info("contentflow started; node handler at %s", config.node_handler_url())

    yield

    engine = getattr(app.state, "engine", None)
    if engine is not None:
        engine.cancel_all()
    logger.info("contentflow shut down")


app = FastAPI(
    title="contentflow",
    description="Workflow execution engine for content-generation node graphs: validates graphs, runs nodes in parallel, routes YES/NO branches and bounds loops.",
    lifespan=lifespan,
)

# Replaced by tests or embedders; a RemoteNodeHandler is created on first use.
app.state.node_handler = None
app.state.engine = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=[],
    allow_origin_regex=r"^http:\/\/localhost:\d+$|^http:\/\/127\.0\.0\.1:\d+$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(api_router)
