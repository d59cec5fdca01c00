import asyncio
from typing import Any, Optional

from fastapi import APIRouter, Query, Request
from pydantic import AliasChoices, BaseModel, Field, StrictInt, StrictStr

from .. import config
from ..orchestrator import frame_too_large
from .deps import OrchestratorDep


router = APIRouter()


class ExplicitStartRequest(BaseModel):
    # Older clients send rtmpUrl/rtmpKey.
    remote_url: Optional[StrictStr] = Field(None, validation_alias=AliasChoices("remoteUrl", "rtmpUrl"))
    remote_key: Optional[StrictStr] = Field(None, validation_alias=AliasChoices("remoteKey", "rtmpKey"))
    input_mode: Optional[StrictStr] = Field(None, validation_alias="inputMode")
    resolution: Optional[StrictStr] = None
    bitrate: Optional[StrictStr] = None
    framerate: Optional[StrictInt] = None


class VolumeRequest(BaseModel):
    volume: float = Field(..., ge=0, le=100, strict=True, allow_inf_nan=False)


class DestinationRequest(BaseModel):
    destinationId: Any = None


class OverlayLayoutRequest(BaseModel):
    layout: Any = None


class SettingsRequest(BaseModel):
    settings: Any = None


async def _read_frame(request: Request) -> bytes:
    """Read the request body, giving up as soon as it passes FRAME_MAX_BYTES."""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > config.FRAME_MAX_BYTES:
        raise frame_too_large()
    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > config.FRAME_MAX_BYTES:
            raise frame_too_large()
        chunks.append(chunk)
    return b"".join(chunks)


@router.post("/stream/frame")
async def stream_frame(request: Request, orch=OrchestratorDep):
    """Accept one JPEG frame for the pipe-mode encoder."""
    orch.require_frame_sink()
    frame = await _read_frame(request)
    # Pipe writes block while ffmpeg is busy.
    await asyncio.to_thread(orch.write_frame, frame)
    return {"ok": True}


@router.post("/stream/live")
async def stream_live(orch=OrchestratorDep):
    """Go live on the configured destination."""
    return await orch.go_live()


@router.post("/stream/offline")
async def stream_offline(orch=OrchestratorDep):
    """Take the stream offline."""
    return await orch.go_offline()


@router.post("/stream/start")
async def stream_start(req: ExplicitStartRequest, orch=OrchestratorDep):
    """Start the encoder with caller-supplied credentials."""
    return await orch.start_explicit(
        req.remote_url,
        req.remote_key,
        input_mode=req.input_mode,
        resolution=req.resolution,
        bitrate=req.bitrate,
        framerate=req.framerate,
    )


@router.post("/stream/stop")
async def stream_stop(orch=OrchestratorDep):
    """Stop the encoder."""
    return await orch.stop_explicit()


@router.get("/stream/status")
def stream_status(orch=OrchestratorDep):
    """Return pipeline health."""
    return orch.status()


@router.post("/stream/volume")
async def stream_volume(req: VolumeRequest, orch=OrchestratorDep):
    """Set output volume."""
    return await orch.set_volume(req.volume)


@router.post("/stream/mute")
async def stream_mute(orch=OrchestratorDep):
    return await orch.mute()


@router.post("/stream/unmute")
async def stream_unmute(orch=OrchestratorDep):
    return await orch.unmute()


@router.get("/streaming/destinations")
def streaming_destinations(orch=OrchestratorDep):
    """List configured destinations."""
    return {"ok": True, "destinations": orch.list_destinations()}


@router.post("/streaming/destination")
def streaming_destination(req: DestinationRequest, orch=OrchestratorDep):
    """Confirm the active destination."""
    return {"ok": True, "destination": orch.select_destination(req.destinationId)}


@router.get("/stream/overlay-layout")
def overlay_layout_get(destination: Optional[str] = Query(None), orch=OrchestratorDep):
    """Return the overlay layout for a destination or the global one."""
    return orch.read_overlay_layout(destination)


@router.post("/stream/overlay-layout")
def overlay_layout_post(req: OverlayLayoutRequest, destination: Optional[str] = Query(None), orch=OrchestratorDep):
    """Save an overlay layout."""
    return orch.write_overlay_layout(req.layout, destination)


@router.get("/stream/settings")
def settings_get(orch=OrchestratorDep):
    """Return persisted stream settings."""
    return orch.read_settings()


@router.post("/stream/settings")
def settings_post(req: SettingsRequest, orch=OrchestratorDep):
    """Validate and save stream settings."""
    return orch.save_settings(req.settings)
