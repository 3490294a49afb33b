"""REST API routes for PocketDrop."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from transfer.errors import (
    SessionError,
    SourceReadError,
    TransferBusyError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_discovery_service = None
_transfer_manager = None


def init_routes(discovery_service, transfer_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _discovery_service, _transfer_manager
    _discovery_service = discovery_service
    _transfer_manager = transfer_manager


# --- Discovery & pairing ---

@router.get("/devices")
async def list_devices():
    """Return the devices discovered in this discovery session."""
    peers = _discovery_service.get_peers()
    return {
        "devices": [
            {**p.model_dump(), "uri": p.address.to_uri()} for p in peers
        ]
    }


@router.get("/address")
async def get_address():
    """Our own pairing address, the payload of the QR code."""
    address = _transfer_manager.pairing_address
    if address is None:
        raise HTTPException(status_code=503, detail="Not accepting connections")
    return {"address": address.to_uri()}


class ConnectBody(BaseModel):
    address: str


@router.post("/connect")
async def connect(body: ConnectBody):
    """Dial a peer by its `tcp://host:port|deviceName` address."""
    try:
        await _transfer_manager.connect(body.address)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid address: {e}")
    except SessionError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"status": "connected", "device_name": _transfer_manager.connected_device}


@router.get("/connection")
async def get_connection():
    session = _transfer_manager.session
    return {
        "connected": _transfer_manager.is_connected,
        "device_name": _transfer_manager.connected_device,
        "role": session.role.value if session else None,
    }


@router.delete("/connection")
async def disconnect():
    await _transfer_manager.disconnect()
    return {"status": "disconnected"}


# --- Transfers ---

class SendFileBody(BaseModel):
    file_path: str
    mime_tag: str = "file"


@router.post("/transfers")
async def send_file(body: SendFileBody):
    """Send one file from local disk to the paired device."""
    if not os.path.isfile(body.file_path):
        raise HTTPException(status_code=404, detail="File not found")

    try:
        descriptor = await _transfer_manager.send_file(body.file_path, body.mime_tag)
    except TransferBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SourceReadError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SessionError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {"transfer": descriptor.model_dump(by_alias=True)}


@router.get("/transfers")
async def list_transfers():
    """Finished files in both directions plus the session byte counters."""
    machine = _transfer_manager.machine
    return {
        "sent": [r.model_dump() for r in _transfer_manager.sent_files],
        "received": [r.model_dump() for r in _transfer_manager.received_files],
        "total_sent_bytes": machine.total_sent_bytes,
        "total_received_bytes": machine.total_received_bytes,
        "sending": machine.sending,
        "receiving": machine.receiving,
    }


# --- Settings ---

class SettingsBody(BaseModel):
    device_name: str | None = None
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {
        "device_name": _transfer_manager.device_name,
        "save_dir": _transfer_manager.save_dir,
    }


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.device_name is not None:
        if not body.device_name or "|" in body.device_name:
            raise HTTPException(status_code=400, detail="Invalid device name")
        _transfer_manager.device_name = body.device_name
        _discovery_service.advertised_address = _transfer_manager.pairing_address
    if body.save_dir is not None:
        try:
            _transfer_manager.save_dir = body.save_dir
        except OSError as e:
            raise HTTPException(
                status_code=400, detail=f"Invalid directory: {e}"
            )
    return {"status": "updated"}
