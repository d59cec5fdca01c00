from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel

from .deps import OrchestratorDep


router = APIRouter()


class VoiceSettingsRequest(BaseModel):
    enabled: Any = None
    autoSpeak: Any = None
    provider: Any = None


class SpeakRequest(BaseModel):
    text: Any = None


@router.get("/stream/voice")
def voice_get(orch=OrchestratorDep):
    """Return voice narration status."""
    return orch.voice_status()


@router.post("/stream/voice")
def voice_post(req: VoiceSettingsRequest, orch=OrchestratorDep):
    """Update voice narration preferences."""
    return orch.update_voice(enabled=req.enabled, auto_speak=req.autoSpeak, provider=req.provider)


@router.post("/stream/voice/speak")
async def voice_speak(req: SpeakRequest, orch=OrchestratorDep):
    """Speak text on the live stream."""
    return await orch.speak(req.text)
