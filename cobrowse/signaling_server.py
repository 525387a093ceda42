import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from cobrowse.config import CORS_ORIGINS, LOG_FORMAT, LOG_LEVEL, RELAY_HOST, RELAY_PORT
from cobrowse.engine_link import EngineLink
from cobrowse.relay import SignalingRelay
from cobrowse.rooms import RoomManager
from cobrowse.routes.signaling import router as signaling_router

# -----------------------------
# Logging
# -----------------------------
logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)


# -----------------------------
# Lifespan: engine link + heartbeat
# -----------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    relay: SignalingRelay = app.state.relay
    relay.start()
    logger.info(f"Signaling relay started, browser service at {relay.engine_link.url}")
    yield

    await relay.stop()
    logger.info("Signaling relay stopped.")


# -----------------------------
# FastAPI app
# -----------------------------
def create_app(relay: Optional[SignalingRelay] = None) -> FastAPI:
    app = FastAPI(title="cobrowse signaling relay", lifespan=lifespan)
    app.state.relay = relay or SignalingRelay(RoomManager(), EngineLink())
    app.include_router(signaling_router)

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
    uvicorn.run(app, host=RELAY_HOST, port=RELAY_PORT)


if __name__ == "__main__":
    main()
