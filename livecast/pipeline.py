import asyncio
import os
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from . import config
from .browser import BrowserCapture, BrowserCaptureOptions
from .capture_mode import CaptureMode, detect_capture_mode
from .display import ensure_virtual_display
from .encoder import EncoderSupervisor, PipelineConfig, clamp_volume
from .errors import BestEffort, UpstreamError
from .logging_config import log
from .persistence import StreamStore


RTMP_SCHEME_RE = re.compile(r"rtmps?://", re.IGNORECASE)

FRAME_ENDPOINT = "/api/stream/frame"
PIPE_FPS = 15
GRAB_FPS = 30
CAPTURE_QUALITY = 70

FRAME_POLL_INTERVAL_S = 0.2
FRAME_POLL_TIMEOUT_S = 10.0


class CaptureHost(Protocol):
    """A host surface (desktop shell) that can push its own frames to the frame endpoint."""

    def is_frame_capture_active(self) -> bool: ...

    async def start_frame_capture(self, *, fps: int, quality: int, endpoint: str) -> None: ...


@dataclass(frozen=True)
class PipelineStart:
    mode: CaptureMode
    audio_source: str


class PipelineSequencer:
    """Turns a pair of credentials into a running encoder for the detected capture mode."""

    def __init__(
        self,
        encoder: EncoderSupervisor,
        browser: Optional[BrowserCapture],
        store: StreamStore,
        capture_host: Optional[CaptureHost] = None,
        *,
        detect: Callable[[], CaptureMode] = detect_capture_mode,
        ensure_display: Callable[[str, str], Awaitable[bool]] = ensure_virtual_display,
        tts_available: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> None:
        """Wire collaborators; detection and display hooks are injectable."""
        self.encoder = encoder
        self.browser = browser
        self.store = store
        self.capture_host = capture_host
        self._detect = detect
        self._ensure_display = ensure_display
        self._tts_available = tts_available
        self.frame_poll_interval_s = FRAME_POLL_INTERVAL_S
        self.frame_poll_timeout_s = FRAME_POLL_TIMEOUT_S
        self._handlers: Dict[CaptureMode, Callable[[Dict[str, Any], Optional[str]], Awaitable[PipelineConfig]]] = {
            CaptureMode.PIPE: self._configure_pipe,
            CaptureMode.DISPLAY_GRAB: self._configure_display_grab,
            CaptureMode.NATIVE_GRAB: self._configure_native_grab,
            CaptureMode.FILE_RELAY: self._configure_file_relay,
        }

    # -- base config ---------------------------------------------------------

    def _audio_source(self, settings: Dict[str, Any]) -> str:
        """Pick tts when voice is enabled and a provider resolves."""
        voice = settings.get("voice") or {}
        if voice.get("enabled") is True and self._tts_available is not None and self._tts_available(settings):
            return "tts"
        return config.AUDIO_SOURCE or "silent"

    def base_config(self, remote_url: str, remote_key: str) -> Dict[str, Any]:
        """Config fields shared by every capture mode."""
        settings = self.store.read_settings()
        return {
            "remote_url": remote_url,
            "remote_key": remote_key,
            "resolution": config.DEFAULT_RESOLUTION,
            "bitrate": config.DEFAULT_BITRATE,
            "audio_source": self._audio_source(settings),
            "audio_device": config.AUDIO_DEVICE,
            "volume": clamp_volume(config.DEFAULT_VOLUME),
        }

    # -- best-effort helpers -------------------------------------------------

    async def _launch_browser(self, headless: bool, dest_id: Optional[str], resolution: str) -> BestEffort:
        """Launch the render surface in a browser."""
        if self.browser is None:
            return BestEffort.failed("no browser capture configured")
        width, height = (int(x) for x in resolution.split("x", 1))
        visual = self.store.headless_capture_config(dest_id)
        options = BrowserCaptureOptions(
            url=config.capture_url(),
            width=width,
            height=height,
            quality=CAPTURE_QUALITY,
            headless=headless,
            **visual,
        )
        try:
            await self.browser.start(options)
        except Exception as e:
            return BestEffort.failed(f"browser launch failed: {e}")
        return BestEffort.success()

    async def _wait_for_frame_file(self, path: str) -> BestEffort:
        """Wait until the browser has written a non-empty frame file."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.frame_poll_timeout_s
        while True:
            try:
                if os.path.getsize(path) > 0:
                    return BestEffort.success()
            except OSError:
                pass
            if loop.time() >= deadline:
                return BestEffort.failed(f"no frame written to {path} after {self.frame_poll_timeout_s:.0f}s")
            await asyncio.sleep(self.frame_poll_interval_s)

    async def _start_capture_host(self) -> BestEffort:
        """Ask the host surface to start pushing frames."""
        host = self.capture_host
        if host is None:
            return BestEffort.failed("capture host not available; frame capture must be started manually")
        if host.is_frame_capture_active():
            return BestEffort.success()
        try:
            await host.start_frame_capture(fps=PIPE_FPS, quality=CAPTURE_QUALITY, endpoint=FRAME_ENDPOINT)
        except Exception as e:
            return BestEffort.failed(f"failed to auto-start frame capture: {e}")
        log.info("[stream] Auto-started host frame capture")
        return BestEffort.success()

    @staticmethod
    def _note(result: BestEffort) -> None:
        """Log a failed best-effort step."""
        if not result.ok:
            log.warning("[stream] %s", result.warning)

    # -- per-mode handlers ---------------------------------------------------

    async def _configure_pipe(self, base: Dict[str, Any], dest_id: Optional[str]) -> PipelineConfig:
        """Host pushes JPEG frames over HTTP."""
        log.info("[stream] Capture mode: pipe (host pushes frames)")
        return PipelineConfig.for_mode(CaptureMode.PIPE.value, framerate=PIPE_FPS, **base)

    async def _configure_display_grab(self, base: Dict[str, Any], dest_id: Optional[str]) -> PipelineConfig:
        """Grab an X display showing a kiosk browser."""
        display = config.DISPLAY_ID or ":99"
        log.info("[stream] Capture mode: x11grab (display %s)", display)
        if not await self._ensure_display(display, base["resolution"]):
            log.warning("[stream] Virtual display %s is not available", display)
        self._note(await self._launch_browser(False, dest_id, base["resolution"]))
        return PipelineConfig.for_mode(CaptureMode.DISPLAY_GRAB.value, display, framerate=GRAB_FPS, **base)

    async def _configure_native_grab(self, base: Dict[str, Any], dest_id: Optional[str]) -> PipelineConfig:
        """Grab the macOS screen directly."""
        device = config.VIDEO_DEVICE or "3"
        log.info("[stream] Capture mode: avfoundation (device %s)", device)
        return PipelineConfig.for_mode(CaptureMode.NATIVE_GRAB.value, device, framerate=GRAB_FPS, **base)

    async def _configure_file_relay(self, base: Dict[str, Any], dest_id: Optional[str]) -> PipelineConfig:
        """Relay screenshots from a headless browser through a frame file."""
        frame_file = getattr(self.browser, "frame_file", None) or config.FRAME_FILE
        log.info("[stream] Capture mode: file (browser capture -> %s)", config.capture_url())
        launched = await self._launch_browser(True, dest_id, base["resolution"])
        self._note(launched)
        if launched.ok:
            self._note(await self._wait_for_frame_file(frame_file))
        return PipelineConfig.for_mode(CaptureMode.FILE_RELAY.value, frame_file, framerate=GRAB_FPS, **base)

    # -- entry point ---------------------------------------------------------

    async def start(self, remote_url: str, remote_key: str, destination: Any = None) -> PipelineStart:
        """Run go-live for the detected capture mode and start the encoder."""
        if not RTMP_SCHEME_RE.match(str(remote_url or "")):
            raise UpstreamError("RTMP URL must use rtmp:// or rtmps:// scheme")

        if destination is not None:
            self.store.seed_overlay_defaults(destination)
        dest_id = getattr(destination, "id", None)

        mode = self._detect()
        base = self.base_config(remote_url, remote_key)
        cfg = await self._handlers[mode](base, dest_id)
        await self.encoder.start(cfg)

        if mode is CaptureMode.PIPE:
            self._note(await self._start_capture_host())

        log.info("[stream] Pipeline started: mode=%s audio=%s", mode.value, cfg.audio_source)
        return PipelineStart(mode=mode, audio_source=cfg.audio_source)
