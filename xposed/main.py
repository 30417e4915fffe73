"""xposed - Account location lookup server."""

import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from loguru import logger

from xposed.config import Settings, settings as default_settings
from xposed.engine import LookupEngine
from xposed.errors import InvalidInputError, UnauthorizedError
from xposed.schemas import BatchLookupRequest


def create_app(settings: Optional[Settings] = None, engine: Optional[LookupEngine] = None) -> FastAPI:
    """Build the HTTP app around one engine."""
    settings = settings or default_settings
    engine = engine or LookupEngine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        await engine.init()
        yield
        await engine.teardown()

    app = FastAPI(
        title="xposed",
        description="Account location lookups with local, shared and live tiers",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    @app.get("/api/lookup/{username}")
    async def lookup(username: str, live: bool = True):
        """Look up one account."""
        try:
            result = await engine.lookup(username, live)
        except InvalidInputError as e:
            raise HTTPException(status_code=400, detail=e.message)
        except UnauthorizedError as e:
            raise HTTPException(status_code=401, detail=e.message)
        return result.model_dump(mode="json")

    @app.post("/api/lookup/batch")
    async def lookup_batch(request: BatchLookupRequest):
        """Look up many accounts; invalid names come back as INVALID_INPUT results."""
        results = await engine.lookup_batch(request.usernames, request.live)
        return [result.model_dump(mode="json") for result in results]

    @app.get("/api/status")
    async def get_status():
        """Get system status."""
        return engine.status()

    return app


app = create_app()


def main():
    """Run the server."""
    import uvicorn

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if default_settings.debug else "INFO")

    logger.info("Starting xposed server...")
    logger.info(f"Server available at http://{default_settings.server.host}:{default_settings.server.port}")
    logger.info(f"Cloud cache: {'on' if default_settings.cloud.enabled else 'off'}")

    uvicorn.run(
        "xposed.main:app",
        host=default_settings.server.host,
        port=default_settings.server.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
