"""Stream lifecycle owner.

One :class:`StreamOrchestrator` is built at process start and handed to the
HTTP layer. It owns the encoder handle, the active destination and the
helpers around them; routes never touch those collaborators directly.
"""

from __future__ import annotations

import re
from typing import Any, BinaryIO, Dict, List, Optional

from . import config
from .browser import BrowserCapture
from .destinations import Destination
from .encoder import EncoderSupervisor, PipelineConfig
from .errors import BestEffort, ConflictError, NotFoundError, PreconditionError, UpstreamError, ValidationError
from .logging_config import log
from .persistence import TEXT_FIELD_MAX, StreamStore
from .pipeline import CaptureHost, PipelineSequencer
from .voice import VoiceBridge, VoiceGate


EXPLICIT_INPUT_MODES = ("testsrc", "avfoundation", "pipe")
EXPLICIT_DEFAULTS = {
    "input_mode": "testsrc",
    "resolution": "1280x720",
    "bitrate": "2500k",
    "framerate": 30,
}

RTMP_URL_RE = re.compile(r"rtmps?://", re.IGNORECASE)
RESOLUTION_RE = re.compile(r"\d+x\d+")
BITRATE_RE = re.compile(r"\d+k")


def frame_too_large() -> ValidationError:
    """Build the 413 raised for frames over FRAME_MAX_BYTES."""
    return ValidationError(f"Frame exceeds {config.FRAME_MAX_BYTES} byte limit", status=413)


class StreamOrchestrator:
    def __init__(
        self,
        encoder: EncoderSupervisor,
        store: StreamStore,
        *,
        browser: Optional[BrowserCapture] = None,
        destination: Optional[Destination] = None,
        capture_host: Optional[CaptureHost] = None,
        voice_bridge: Optional[VoiceBridge] = None,
        sequencer: Optional[PipelineSequencer] = None,
    ) -> None:
        """Wire collaborators and hook the voice bridge to the encoder audio pipe."""
        self.encoder = encoder
        self.store = store
        self.browser = browser
        self.destination = destination
        self.voice = VoiceGate(voice_bridge, store.read_settings, encoder.is_running) if voice_bridge is not None else None
        self.sequencer = sequencer or PipelineSequencer(
            encoder,
            browser,
            store,
            capture_host,
            tts_available=self._tts_available,
        )
        self._starting = False

        add_listener = getattr(encoder, "add_audio_listener", None)
        if voice_bridge is not None and callable(add_listener):
            add_listener(self._on_audio_pipe)

    # -- wiring --------------------------------------------------------------

    def _tts_available(self, settings: Dict[str, Any]) -> bool:
        """Return True when narration could be used with `settings`."""
        return self.voice is not None and self.voice.resolve(settings) is not None

    def _on_audio_pipe(self, pipe: Optional[BinaryIO]) -> None:
        """Attach the voice bridge to a new audio pipe, or detach on None."""
        if self.voice is None:
            return
        if pipe is None:
            self.voice.bridge.detach()
        else:
            self.voice.bridge.attach(pipe)

    def is_running(self) -> bool:
        return bool(self.encoder.is_running())

    def _destination_info(self) -> Optional[Dict[str, str]]:
        """Return the active destination's public identity, if any."""
        return self.destination.describe() if self.destination is not None else None

    # -- lifecycle -----------------------------------------------------------

    async def go_live(self) -> Dict[str, Any]:
        """Start streaming to the configured destination; idempotent while live."""
        if self.encoder.is_running():
            return {"ok": True, "live": True, "message": "Already streaming", **self.encoder.health().as_dict()}
        if self._starting:
            raise ConflictError("Stream is already starting")
        if self.destination is None:
            raise PreconditionError("No streaming destination configured")

        self._starting = True
        try:
            creds = await self.destination.get_credentials()
            started = await self.sequencer.start(creds.remote_url, creds.remote_key, self.destination)
            await self.destination.on_start()
        finally:
            self._starting = False

        log.info("[stream] Live on %s (mode=%s)", self.destination.id, started.mode.value)
        return {
            "ok": True,
            "live": True,
            "remoteUrl": creds.remote_url,
            "mode": started.mode.value,
            "audioSource": started.audio_source,
            "destination": self.destination.id,
        }

    async def _stop_browser(self) -> BestEffort:
        """Stop browser capture, tolerating failures."""
        if self.browser is None:
            return BestEffort.success()
        try:
            await self.browser.stop()
        except Exception as e:
            return BestEffort.failed(f"browser stop failed: {e}")
        return BestEffort.success()

    async def _notify_stop(self) -> BestEffort:
        """Tell the destination the stream ended, tolerating failures."""
        if self.destination is None:
            return BestEffort.success()
        try:
            await self.destination.on_stop()
        except Exception as e:
            return BestEffort.failed(f"destination stop notification failed: {e}")
        return BestEffort.success()

    async def go_offline(self) -> Dict[str, Any]:
        """Tear the pipeline down; always succeeds."""
        browser = await self._stop_browser()
        if not browser.ok:
            log.debug("[stream] %s", browser.warning)
        if self.encoder.is_running():
            await self.encoder.stop()
        notified = await self._notify_stop()
        if not notified.ok:
            log.warning("[stream] %s", notified.warning)
        return {"ok": True, "live": False}

    def status(self) -> Dict[str, Any]:
        """Return encoder health plus the active destination."""
        return {"ok": True, **self.encoder.health().as_dict(), "destination": self._destination_info()}

    # -- frames and audio ----------------------------------------------------

    def require_frame_sink(self) -> None:
        """Raise 503 unless the encoder is running and can take frames."""
        if not self.encoder.is_running():
            raise PreconditionError("Stream not running; start it via POST /stream/live", status=503)

    def write_frame(self, frame: bytes) -> None:
        """Forward one pushed frame to the encoder."""
        self.require_frame_sink()
        if not frame:
            raise ValidationError("Empty frame")
        if len(frame) > config.FRAME_MAX_BYTES:
            raise frame_too_large()
        try:
            self.encoder.write_frame(frame)
        except Exception as e:
            log.warning("[stream] Frame write failed: %s", e)
            raise UpstreamError("Frame write failed") from e

    def _audio_state(self) -> Dict[str, Any]:
        return {"ok": True, "volume": self.encoder.get_volume(), "muted": self.encoder.is_muted()}

    async def set_volume(self, level: float) -> Dict[str, Any]:
        """Set output volume and report the resulting audio state."""
        await self.encoder.set_volume(level)
        return self._audio_state()

    async def mute(self) -> Dict[str, Any]:
        await self.encoder.mute()
        return self._audio_state()

    async def unmute(self) -> Dict[str, Any]:
        await self.encoder.unmute()
        return self._audio_state()

    # -- destinations --------------------------------------------------------

    def list_destinations(self) -> List[Dict[str, str]]:
        """Return the destinations this process can publish to."""
        info = self._destination_info()
        return [info] if info else []

    def select_destination(self, destination_id: Optional[str]) -> Dict[str, str]:
        """Confirm `destination_id` is the active destination; switching is not supported."""
        if not destination_id:
            raise ValidationError("destinationId is required")
        if self.destination is None or self.destination.id != destination_id:
            raise NotFoundError(f"Unknown destination: {destination_id}")
        return self.destination.describe()

    # -- explicit start/stop -------------------------------------------------

    async def start_explicit(
        self,
        remote_url: Optional[str],
        remote_key: Optional[str],
        *,
        input_mode: Optional[str] = None,
        resolution: Optional[str] = None,
        bitrate: Optional[str] = None,
        framerate: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Start the encoder with caller-supplied credentials, skipping the destination.

        Kept for manual and testing use; no destination hooks run here.
        """
        if not remote_url or not remote_key:
            raise ValidationError("remoteUrl and remoteKey are required")
        if not RTMP_URL_RE.match(remote_url):
            raise ValidationError("remoteUrl must use rtmp:// or rtmps:// scheme")

        mode = EXPLICIT_DEFAULTS["input_mode"] if input_mode is None else input_mode
        if mode not in EXPLICIT_INPUT_MODES:
            raise ValidationError(f"inputMode must be one of: {', '.join(EXPLICIT_INPUT_MODES)}")
        resolution = resolution or EXPLICIT_DEFAULTS["resolution"]
        if not RESOLUTION_RE.fullmatch(resolution):
            raise ValidationError("resolution must match WIDTHxHEIGHT (e.g. 1280x720)")
        bitrate = bitrate or EXPLICIT_DEFAULTS["bitrate"]
        if not BITRATE_RE.fullmatch(bitrate):
            raise ValidationError("bitrate must match NUMBERk (e.g. 2500k)")
        fps = EXPLICIT_DEFAULTS["framerate"] if framerate is None else framerate
        if isinstance(fps, bool) or not isinstance(fps, int) or not (1 <= fps <= 60):
            raise ValidationError("framerate must be an integer between 1 and 60")

        source = (config.VIDEO_DEVICE or "3") if mode == "avfoundation" else None
        cfg = PipelineConfig.for_mode(
            mode,
            source,
            remote_url=remote_url,
            remote_key=remote_key,
            resolution=resolution,
            bitrate=bitrate,
            framerate=fps,
        )
        if self._starting:
            raise ConflictError("Stream is already starting")
        self._starting = True
        try:
            await self.encoder.start(cfg)
        finally:
            self._starting = False
        return {"ok": True, "message": "Stream started"}

    async def stop_explicit(self) -> Dict[str, Any]:
        """Stop the encoder regardless of how it was started."""
        result = await self.encoder.stop()
        return {"ok": True, **(result or {})}

    # -- persisted settings --------------------------------------------------

    def read_overlay_layout(self, dest_id: Optional[str]) -> Dict[str, Any]:
        """Resolve the overlay layout for `dest_id` through the fallback chain."""
        layout = self.store.read_overlay_layout(dest_id, self.destination)
        return {"ok": True, "layout": layout, "destinationId": dest_id or None}

    def write_overlay_layout(self, layout: Any, dest_id: Optional[str]) -> Dict[str, Any]:
        """Validate and persist an overlay layout for one scope."""
        version = layout.get("version") if isinstance(layout, dict) else None
        if isinstance(version, bool) or version != 1 or not isinstance(layout.get("widgets"), list):
            raise ValidationError("Invalid layout: must have { version: 1, widgets: [...] }")
        self.store.write_overlay_layout(layout, dest_id)
        return {"ok": True, "layout": layout, "destinationId": dest_id or None}

    def read_settings(self) -> Dict[str, Any]:
        return {"ok": True, "settings": self.store.read_settings()}

    def save_settings(self, raw: Any) -> Dict[str, Any]:
        """Validate and persist visual and voice settings."""
        settings, error = self.store.validate_settings(raw)
        if error is not None:
            raise ValidationError(error)
        self.store.write_settings(settings)
        return {"ok": True, "settings": settings}

    # -- voice ---------------------------------------------------------------

    def _require_voice(self) -> VoiceGate:
        if self.voice is None:
            raise PreconditionError("Voice narration is not available")
        return self.voice

    def voice_status(self) -> Dict[str, Any]:
        """Return voice settings, provider resolution and bridge state."""
        return {"ok": True, **self._require_voice().status()}

    def update_voice(self, enabled: Any = None, auto_speak: Any = None, provider: Any = None) -> Dict[str, Any]:
        """Merge voice preferences into persisted settings; wrongly typed values are ignored."""
        current = self.store.read_settings()
        previous = current.get("voice") or {}
        voice: Dict[str, Any] = {
            "enabled": previous.get("enabled", False),
            "autoSpeak": previous.get("autoSpeak", True),
        }
        if "provider" in previous:
            voice["provider"] = previous["provider"]
        if isinstance(enabled, bool):
            voice["enabled"] = enabled
        if isinstance(auto_speak, bool):
            voice["autoSpeak"] = auto_speak
        if isinstance(provider, str) and len(provider) <= TEXT_FIELD_MAX:
            voice["provider"] = provider
        current["voice"] = voice
        self.store.write_settings(current)
        return {"ok": True, "voice": voice}

    async def speak(self, text: Any) -> Dict[str, Any]:
        """Speak `text` through the voice bridge."""
        speaking = await self._require_voice().speak(text)
        return {"ok": True, "speaking": speaking}

    async def on_agent_message(self, text: str) -> None:
        """Hook for assistant messages; narrates them when voice is on, otherwise no-op."""
        if self.voice is None:
            return
        await self.voice.auto_speak(text)
