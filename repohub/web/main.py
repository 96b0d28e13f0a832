from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from repohub.core.config import AppConfig, load_config
from repohub.sync.engine import SyncEngine, build_engine
from repohub.web.api import router as api_router
from repohub.web.security import NetworkAllowlistMiddleware, get_allowed_nets


def build_app(cfg: Optional[AppConfig] = None, engine: Optional[SyncEngine] = None) -> FastAPI:
    if engine is None:
        engine = build_engine(cfg or load_config())

    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        engine.loop.start()
        try:
            yield
        finally:
            await engine.loop.stop()

    api = FastAPI(title="repohub-sync", version="0.1.0", lifespan=lifespan)
    api.state.engine = engine
    api.add_middleware(NetworkAllowlistMiddleware, allowed_nets=get_allowed_nets())
    api.include_router(api_router)
    return api


def main():
    import uvicorn

    from repohub.core.logging_setup import setup_logging

    cfg = load_config()
    setup_logging(cfg.logging.level, cfg.logging.file)

    uvicorn.run(
        build_app(cfg),
        host=cfg.web_bind_host,
        port=cfg.web_port,
        log_level=cfg.logging.level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
