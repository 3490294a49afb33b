"""
PocketDrop: FastAPI application entry point.

Starts the Discovery Service and the Transfer Manager's TLS listener on
startup, serves the local REST API and WebSocket event stream.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.events import EventBroadcaster
from api.routes import init_routes, router
from config import API_HOST, API_PORT, DEVICE_NAME, TRANSFER_PORT
from discovery.service import DiscoveryService
from security.tls import client_context, ensure_certificate, server_context
from transfer.manager import TransferManager

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
discovery_service = DiscoveryService()
transfer_manager = TransferManager(device_name=DEVICE_NAME)
events = EventBroadcaster()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting PocketDrop services...")

    try:
        cert_file, key_file = ensure_certificate()
        transfer_manager.server_ssl = server_context(cert_file, key_file)
        transfer_manager.client_ssl = client_context(cert_file)

        transfer_manager.on_event(events.publish)
        discovery_service.on_peer_discovered(events.on_peer_discovered)

        await discovery_service.start()
        await transfer_manager.start_server(TRANSFER_PORT)

        # Advertise the address the listener actually got
        discovery_service.advertised_address = transfer_manager.pairing_address

        logger.info(
            f"PocketDrop ready. API: {API_HOST}:{API_PORT}, "
            f"pairing address: {discovery_service.advertised_address.to_uri()}"
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down PocketDrop services...")
        await transfer_manager.stop()
        await discovery_service.stop()


app = FastAPI(
    title="PocketDrop",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173", "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Inject services into routes
init_routes(discovery_service, transfer_manager)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await events.connect(websocket)
    try:
        while True:
            # Keep the connection open; the UI never sends anything
            await websocket.receive_text()
    except WebSocketDisconnect:
        await events.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
