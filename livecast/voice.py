"""Stream narration: TTS provider resolution, the PCM audio bridge and its gate.

The encoder exposes a raw PCM pipe (s16le, 24 kHz, mono) as its audio input
when voice is enabled. :class:`PcmVoiceBridge` keeps that pipe fed with
50 ms chunks, silence when idle and synthesized speech when asked to speak.
:class:`VoiceGate` is the single entry point the HTTP layer and the
assistant message hook go through.
"""

from __future__ import annotations

import asyncio
import os
import re
from collections import deque
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Deque, Dict, Mapping, Optional, Protocol

import requests

from . import config
from .errors import ConflictError, PreconditionError, ValidationError
from .logging_config import log


SAMPLE_RATE = 24000
CHANNELS = 1
BYTES_PER_SAMPLE = 2
CHUNK_MS = 50
CHUNK_BYTES = SAMPLE_RATE * BYTES_PER_SAMPLE * CHANNELS * CHUNK_MS // 1000

TTS_TIMEOUT_S = 20.0
SPEAK_TEXT_MAX_CHARS = 2000

PROVIDER_ORDER = ("elevenlabs", "openai")

_REDACTED_RE = re.compile(r"\*+")


@dataclass(frozen=True)
class TtsConfig:
    provider: str
    api_key: str
    voice: str
    model: str


def is_redacted_secret(value: str) -> bool:
    """Return True for placeholder values left by secret redaction."""
    return bool(_REDACTED_RE.fullmatch(value)) or value in ("REDACTED", "[REDACTED]")


def _key_from_env(env: Mapping[str, str], name: str) -> Optional[str]:
    """Return a usable key from `env`, skipping redacted placeholders."""
    value = str(env.get(name, "") or "").strip()
    if value and not is_redacted_secret(value):
        return value
    return None


def resolve_tts_config(provider_pref: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> Optional[TtsConfig]:
    """Pick the first provider with a usable key: preferred, then elevenlabs, then openai."""
    env = os.environ if env is None else env
    order = []
    for name in (str(provider_pref or "").strip().lower(), *PROVIDER_ORDER):
        if name and name not in order:
            order.append(name)

    for provider in order:
        if provider == "elevenlabs":
            key = _key_from_env(env, "ELEVENLABS_API_KEY")
            if key:
                return TtsConfig(
                    provider="elevenlabs",
                    api_key=key,
                    voice=env.get("ELEVENLABS_VOICE_ID") or "EXAVITQu4vr4xnSDxMaL",
                    model=env.get("ELEVENLABS_MODEL_ID") or "eleven_flash_v2_5",
                )
        elif provider == "openai":
            key = _key_from_env(env, "OPENAI_API_KEY")
            if key:
                return TtsConfig(
                    provider="openai",
                    api_key=key,
                    voice=env.get("OPENAI_TTS_VOICE") or "alloy",
                    model=env.get("OPENAI_TTS_MODEL") or "tts-1",
                )
    return None


def tts_provider_status(provider_pref: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Summarize provider resolution for status responses."""
    resolved = resolve_tts_config(provider_pref, env)
    return {
        "configuredProvider": provider_pref or None,
        "hasApiKey": resolved is not None,
        "resolvedProvider": resolved.provider if resolved else None,
    }


def _synthesize_elevenlabs(text: str, tts: TtsConfig) -> bytes:
    """Synthesize 24 kHz PCM through ElevenLabs."""
    resp = requests.post(
        f"https://api.elevenlabs.io/v1/text-to-speech/{requests.utils.quote(tts.voice, safe='')}/stream",
        params={"output_format": f"pcm_{SAMPLE_RATE}"},
        headers={"xi-api-key": tts.api_key, "Content-Type": "application/json"},
        json={"text": text, "model_id": tts.model},
        timeout=TTS_TIMEOUT_S,
    )
    if resp.status_code != 200:
        raise RuntimeError(f"ElevenLabs {resp.status_code}: {resp.text[:200]}")
    return resp.content


def _synthesize_openai(text: str, tts: TtsConfig) -> bytes:
    """Synthesize 24 kHz PCM through OpenAI."""
    # The "pcm" format is already 24 kHz s16le mono.
    resp = requests.post(
        "https://api.openai.com/v1/audio/speech",
        headers={"Authorization": f"Bearer {tts.api_key}", "Content-Type": "application/json"},
        json={"model": tts.model, "input": text, "voice": tts.voice, "response_format": "pcm"},
        timeout=TTS_TIMEOUT_S,
    )
    if resp.status_code != 200:
        raise RuntimeError(f"OpenAI TTS {resp.status_code}: {resp.text[:200]}")
    return resp.content


SYNTHESIZERS: Dict[str, Callable[[str, TtsConfig], bytes]] = {
    "elevenlabs": _synthesize_elevenlabs,
    "openai": _synthesize_openai,
}


def synthesize_pcm(text: str, tts: TtsConfig) -> bytes:
    """Synthesize `text` with the provider named in `tts`."""
    fn = SYNTHESIZERS.get(tts.provider)
    if fn is None:
        raise RuntimeError(f"Unknown TTS provider: {tts.provider}")
    return fn(text, tts)


class VoiceBridge(Protocol):
    def is_attached(self) -> bool: ...

    def is_speaking(self) -> bool: ...

    async def speak(self, text: str, tts: TtsConfig) -> bool: ...

    def attach(self, writer: BinaryIO) -> None: ...

    def detach(self) -> None: ...


class PcmVoiceBridge:
    def __init__(self, synthesize: Callable[[str, TtsConfig], bytes] = synthesize_pcm) -> None:
        """Initialize an unattached bridge."""
        self._synthesize = synthesize
        self._writer: Optional[BinaryIO] = None
        self._task: Optional[asyncio.Task] = None
        self._queue: Deque[bytes] = deque()
        self._speaking = False
        self._silence = bytes(CHUNK_BYTES)

    def attach(self, writer: BinaryIO) -> None:
        """Start feeding audio into `writer` every chunk interval."""
        self.detach()
        self._writer = writer
        self._task = asyncio.get_running_loop().create_task(self._tick_loop())
        log.info("[voice] Attached to encoder audio pipe")

    def detach(self) -> None:
        """Stop feeding audio and drop queued speech."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
        if self._writer is not None:
            log.info("[voice] Detached from encoder audio pipe")
        self._writer = None
        self._queue.clear()
        self._speaking = False

    def is_attached(self) -> bool:
        return self._writer is not None

    def is_speaking(self) -> bool:
        return self._speaking

    async def speak(self, text: str, tts: TtsConfig) -> bool:
        """Synthesize `text` and queue it; True once the audio is queued."""
        if self._writer is None:
            log.warning("[voice] Cannot speak, not attached to the encoder")
            return False
        trimmed = str(text or "").strip()
        if not trimmed:
            return False

        self._speaking = True
        try:
            log.info("[voice] Generating TTS (%s, %d chars)", tts.provider, len(trimmed))
            pcm = await asyncio.to_thread(self._synthesize, trimmed, tts)
        except Exception:
            self._speaking = False
            raise
        if not pcm or self._writer is None:
            self._speaking = False
            log.warning("[voice] TTS returned no audio")
            return False

        for i in range(0, len(pcm), CHUNK_BYTES):
            self._queue.append(pcm[i:i + CHUNK_BYTES].ljust(CHUNK_BYTES, b"\x00"))
        log.info("[voice] Queued %d PCM chunks (%.1fs)", len(self._queue), len(pcm) / (SAMPLE_RATE * BYTES_PER_SAMPLE))
        return True

    def _tick(self) -> None:
        """Write the next speech chunk, or silence when idle."""
        if self._queue:
            chunk = self._queue.popleft()
            if not self._queue:
                self._speaking = False
                log.info("[voice] Finished speaking")
        else:
            chunk = self._silence
        if self._writer is not None:
            self._writer.write(chunk)

    async def _tick_loop(self) -> None:
        """Tick until detached or the pipe breaks."""
        interval = CHUNK_MS / 1000.0
        while self._writer is not None:
            try:
                self._tick()
            except (OSError, ValueError) as e:
                log.warning("[voice] Audio pipe write failed: %s", e)
                self._writer = None
                self._queue.clear()
                self._speaking = False
                return
            await asyncio.sleep(interval)


class VoiceGate:
    """Preconditions in front of the bridge: manual speak and assistant auto-speak."""

    def __init__(
        self,
        bridge: VoiceBridge,
        read_settings: Callable[[], Dict[str, Any]],
        is_running: Callable[[], bool],
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Initialize the gate around `bridge` and its settings source."""
        self.bridge = bridge
        self._read_settings = read_settings
        self._is_running = is_running
        self._env = env

    def provider_preference(self, settings: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Return the preferred provider from settings or the environment."""
        voice = (settings if settings is not None else self._read_settings()).get("voice") or {}
        return voice.get("provider") or config.TTS_PROVIDER

    def resolve(self, settings: Optional[Dict[str, Any]] = None) -> Optional[TtsConfig]:
        """Resolve a usable TTS config for the current preferences."""
        return resolve_tts_config(self.provider_preference(settings), self._env)

    def voice_enabled(self) -> bool:
        """Return True when narration is switched on in settings."""
        voice = self._read_settings().get("voice") or {}
        return voice.get("enabled") is True

    def status(self) -> Dict[str, Any]:
        """Return the voice status payload."""
        settings = self._read_settings()
        voice = settings.get("voice") or {}
        provider = tts_provider_status(self.provider_preference(settings), self._env)
        return {
            "enabled": voice.get("enabled") is True,
            "autoSpeak": voice.get("autoSpeak") is not False,
            "provider": provider["resolvedProvider"],
            "configuredProvider": provider["configuredProvider"],
            "hasApiKey": provider["hasApiKey"],
            "isSpeaking": self.bridge.is_speaking(),
            "isAttached": self.bridge.is_attached(),
        }

    async def speak(self, text: Any) -> bool:
        """Manual speak; raises with the reason it cannot speak."""
        trimmed = text.strip() if isinstance(text, str) else ""
        if not trimmed:
            raise ValidationError("text is required")
        if len(trimmed) > SPEAK_TEXT_MAX_CHARS:
            raise ValidationError(f"text exceeds maximum length of {SPEAK_TEXT_MAX_CHARS} characters")
        tts = self.resolve()
        if tts is None:
            raise ValidationError("No TTS provider available. Configure a provider API key first")
        if not self.bridge.is_attached():
            raise PreconditionError("Voice bridge not attached; start the stream with voice enabled first")
        if self.bridge.is_speaking():
            raise ConflictError("Already speaking; wait for current speech to finish")
        return await self.bridge.speak(trimmed, tts)

    async def auto_speak(self, text: Any) -> None:
        """Narrate an assistant message when everything lines up; otherwise do nothing."""
        trimmed = text.strip() if isinstance(text, str) else ""
        if not trimmed or not self._is_running() or not self.bridge.is_attached():
            return
        if self.bridge.is_speaking():
            return
        settings = self._read_settings()
        voice = settings.get("voice") or {}
        if voice.get("enabled") is not True or voice.get("autoSpeak") is False:
            return
        tts = self.resolve(settings)
        if tts is None:
            return
        try:
            await self.bridge.speak(trimmed[:SPEAK_TEXT_MAX_CHARS], tts)
        except Exception as e:
            log.warning("[voice] Auto-TTS failed: %s", e)
