import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from cobrowse.config import CORS_ORIGINS, ENGINE_HOST, ENGINE_PORT, LOG_FORMAT, LOG_LEVEL
from cobrowse.engine import BrowserEngine
from cobrowse.errors import CobrowseError
from cobrowse.routes.browser import router as browser_router

# -----------------------------
# Logging
# -----------------------------
logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)


# -----------------------------
# Lifespan: eager browser start, cleanup on exit
# -----------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    engine: BrowserEngine = app.state.engine
    tier = await engine.initialize()
    logger.info(f"Browser automation engine ready ({tier.value}) at {engine.current_url}")
    yield

    await engine.shutdown()
    logger.info("Browser session closed.")


async def handle_cobrowse_error(request: Request, exc: CobrowseError):
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


# -----------------------------
# FastAPI app
# -----------------------------
def create_app(engine: Optional[BrowserEngine] = None) -> FastAPI:
    app = FastAPI(title="cobrowse browser engine", lifespan=lifespan)
    app.state.engine = engine or BrowserEngine()
    app.add_exception_handler(CobrowseError, handle_cobrowse_error)
    app.include_router(browser_router)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


app = create_app()


def main():
    uvicorn.run(app, host=ENGINE_HOST, port=ENGINE_PORT)


if __name__ == "__main__":
    main()
