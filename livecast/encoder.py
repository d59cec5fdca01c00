"""Encoder supervisor boundary and the ffmpeg-backed implementation.

The orchestrator only talks to the `EncoderSupervisor` protocol; the
`FfmpegEncoderSupervisor` below is the implementation wired by the server
bootstrap. It owns one ffmpeg process that reads the selected capture input
plus an audio input and pushes FLV to the remote RTMP endpoint.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Protocol

import psutil

from . import config
from .errors import ConflictError
from .logging_config import log


MODE_FIELDS = {
    "x11grab": "display",
    "avfoundation": "video_device",
    "file": "frame_file",
}

TTS_SAMPLE_RATE = 24000
STDERR_TAIL_LINES = 40


@dataclass
class PipelineConfig:
    remote_url: str
    remote_key: str
    input_mode: str = "testsrc"
    resolution: str = config.DEFAULT_RESOLUTION
    bitrate: str = config.DEFAULT_BITRATE
    framerate: int = 30
    audio_source: str = "silent"
    audio_device: Optional[str] = None
    volume: int = 80
    display: Optional[str] = None
    video_device: Optional[str] = None
    frame_file: Optional[str] = None

    @classmethod
    def for_mode(cls, input_mode: str, source: Optional[str] = None, **kwargs: Any) -> "PipelineConfig":
        """Build a config populating only the capture field that belongs to `input_mode`."""
        name = MODE_FIELDS.get(str(input_mode))
        if name is not None:
            kwargs[name] = source
        return cls(input_mode=str(input_mode), **kwargs)

    def validate(self) -> None:
        """Raise ValueError when the config breaks an invariant."""
        if not (1 <= int(self.framerate) <= 60):
            raise ValueError("framerate must be between 1 and 60")
        if not (0 <= int(self.volume) <= 100):
            raise ValueError("volume must be between 0 and 100")
        owner = MODE_FIELDS.get(self.input_mode)
        for mode, name in MODE_FIELDS.items():
            value = getattr(self, name)
            if name == owner and not value:
                raise ValueError(f"{name} is required for input mode {self.input_mode}")
            if name != owner and value:
                raise ValueError(f"{name} is only valid for input mode {mode}")

    def size(self) -> tuple[int, int]:
        """Return `(width, height)` parsed from the resolution."""
        w, h = str(self.resolution).split("x", 1)
        return int(w), int(h)


@dataclass
class PipelineHealth:
    running: bool = False
    encoder_alive: bool = False
    uptime_seconds: int = 0
    frame_count: int = 0
    volume: int = 80
    muted: bool = False
    audio_source: str = "silent"
    capture_mode: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        """Render health with the camelCase keys used on the wire."""
        return {
            "running": self.running,
            "encoderAlive": self.encoder_alive,
            "uptime": self.uptime_seconds,
            "frameCount": self.frame_count,
            "volume": self.volume,
            "muted": self.muted,
            "audioSource": self.audio_source,
            "inputMode": self.capture_mode,
        }


class EncoderSupervisor(Protocol):
    def is_running(self) -> bool: ...

    def write_frame(self, frame: bytes) -> bool: ...

    async def start(self, cfg: PipelineConfig) -> None: ...

    async def stop(self) -> Dict[str, Any]: ...

    def health(self) -> PipelineHealth: ...

    def get_volume(self) -> int: ...

    def is_muted(self) -> bool: ...

    async def set_volume(self, level: float) -> None: ...

    async def mute(self) -> None: ...

    async def unmute(self) -> None: ...


def clamp_volume(level: float) -> int:
    """Clamp a volume level to an integer in 0..100."""
    return max(0, min(100, int(round(float(level)))))


def _bitrate_k(bitrate: str) -> int:
    """Parse `NNNNk` into kilobits, falling back to 1500."""
    try:
        return max(1, int(str(bitrate).rstrip("kK")))
    except ValueError:
        return 1500


def build_video_input_args(cfg: PipelineConfig) -> List[str]:
    """Return ffmpeg input arguments for the video source."""
    fps = str(int(cfg.framerate))
    mode = cfg.input_mode
    if mode == "pipe":
        return ["-f", "image2pipe", "-c:v", "mjpeg", "-framerate", fps, "-i", "pipe:0"]
    if mode == "x11grab":
        return [
            "-thread_queue_size", "512",
            "-f", "x11grab",
            "-video_size", cfg.resolution,
            "-framerate", fps,
            "-i", str(cfg.display),
        ]
    if mode == "avfoundation":
        return [
            "-f", "avfoundation",
            "-capture_cursor", "1",
            "-framerate", fps,
            "-i", f"{cfg.video_device}:none",
        ]
    if mode == "file":
        # -loop 1 makes ffmpeg re-open the frame file, which the browser keeps replacing.
        return ["-re", "-f", "image2", "-loop", "1", "-framerate", fps, "-i", str(cfg.frame_file)]
    return ["-re", "-f", "lavfi", "-i", f"testsrc=size={cfg.resolution}:rate={fps}"]


def build_audio_input_args(cfg: PipelineConfig, audio_fd: Optional[int] = None) -> List[str]:
    """Return ffmpeg input arguments for the audio source."""
    source = str(cfg.audio_source or "silent").lower()
    if source == "tts" and audio_fd is not None:
        return ["-f", "s16le", "-ar", str(TTS_SAMPLE_RATE), "-ac", "1", "-i", f"pipe:{audio_fd}"]
    if source in ("pulse", "alsa"):
        return ["-f", source, "-i", cfg.audio_device or "default"]
    return ["-f", "lavfi", "-i", "anullsrc=channel_layout=stereo:sample_rate=44100"]


def build_ffmpeg_cmd(
    cfg: PipelineConfig,
    *,
    volume: int,
    muted: bool,
    audio_fd: Optional[int] = None,
    ffmpeg_bin: str = "ffmpeg",
) -> List[str]:
    """Build the full ffmpeg argv for one pipeline session."""
    w, h = cfg.size()
    fps = int(cfg.framerate)
    kbps = _bitrate_k(cfg.bitrate)
    gain = 0.0 if muted else clamp_volume(volume) / 100.0
    target = f"{str(cfg.remote_url).rstrip('/')}/{cfg.remote_key}"
    return [
        ffmpeg_bin,
        "-y",
        "-loglevel", "error",
        *build_video_input_args(cfg),
        *build_audio_input_args(cfg, audio_fd),
        "-map", "0:v:0",
        "-map", "1:a:0",
        "-vf", f"scale={w}:{h}:force_original_aspect_ratio=decrease,pad={w}:{h}:(ow-iw)/2:(oh-ih)/2",
        "-af", f"volume={gain:.2f}",
        "-c:v", "libx264",
        "-preset", "veryfast",
        "-tune", "zerolatency",
        "-b:v", f"{kbps}k",
        "-maxrate", f"{kbps}k",
        "-bufsize", f"{kbps * 2}k",
        "-pix_fmt", "yuv420p",
        "-g", str(fps * 2),
        "-c:a", "aac",
        "-b:a", "128k",
        "-ar", "44100",
        "-f", "flv",
        target,
    ]


def _cmd_preview(cmd: List[str]) -> str:
    """Render a command for logs with the stream key masked."""
    if not cmd:
        return ""
    parts = list(cmd[:-1])
    target = str(cmd[-1])
    if "/" in target:
        target = target.rsplit("/", 1)[0] + "/***"
    return " ".join(parts + [target])


class FfmpegEncoderSupervisor:
    """Owns a single ffmpeg process pushing the stream to the remote endpoint."""

    def __init__(self, ffmpeg_bin: Optional[str] = None, startup_delay_s: float = 1.5) -> None:
        """Initialize supervisor state; ffmpeg is not spawned until `start`."""
        self.ffmpeg_bin = ffmpeg_bin or config.FFMPEG_BIN
        self.startup_delay_s = float(startup_delay_s)
        self._proc: Optional[subprocess.Popen] = None
        self._config: Optional[PipelineConfig] = None
        self._audio_pipe: Optional[BinaryIO] = None
        self._audio_listeners: List[Callable[[Optional[BinaryIO]], None]] = []
        self._started_at = 0.0
        self._frame_count = 0
        self._volume = clamp_volume(config.DEFAULT_VOLUME)
        self._muted = False
        self._starting = False
        self._stderr_tail: List[str] = []
        self._stderr_lock = threading.Lock()

    # -- audio pipe wiring -------------------------------------------------

    def add_audio_listener(self, listener: Callable[[Optional[BinaryIO]], None]) -> None:
        """Register a callback receiving the PCM pipe after each spawn (None on stop)."""
        self._audio_listeners.append(listener)

    def _notify_audio(self, pipe: Optional[BinaryIO]) -> None:
        """Hand `pipe` to every registered audio listener."""
        for listener in self._audio_listeners:
            try:
                listener(pipe)
            except Exception:
                log.exception("[encoder] Audio listener failed")

    # -- state -------------------------------------------------------------

    def _alive(self) -> bool:
        """Return True while the ffmpeg process has not exited."""
        return self._proc is not None and self._proc.poll() is None

    def is_running(self) -> bool:
        """Return True when a session is configured and ffmpeg is alive."""
        return self._config is not None and self._alive()

    def get_volume(self) -> int:
        return 0 if self._muted else self._volume

    def is_muted(self) -> bool:
        return self._muted

    def health(self) -> PipelineHealth:
        """Snapshot the current session for status reporting."""
        running = self.is_running()
        cfg = self._config
        return PipelineHealth(
            running=running,
            encoder_alive=self._alive(),
            uptime_seconds=int(time.time() - self._started_at) if running else 0,
            frame_count=self._frame_count,
            volume=self._volume,
            muted=self._muted,
            audio_source=cfg.audio_source if cfg else "silent",
            capture_mode=cfg.input_mode if cfg else None,
        )

    def last_error(self) -> str:
        """Return the most recent ffmpeg stderr line."""
        with self._stderr_lock:
            return self._stderr_tail[-1] if self._stderr_tail else ""

    # -- process lifecycle -------------------------------------------------

    def _ffmpeg_available(self) -> bool:
        """Return True when the ffmpeg binary resolves on PATH."""
        return bool(shutil.which(self.ffmpeg_bin))

    def _start_stderr_reader(self, proc: subprocess.Popen) -> None:
        def _reader() -> None:
            """Keep a bounded tail of ffmpeg stderr for diagnostics."""
            if not proc.stderr:
                return
            for raw in iter(proc.stderr.readline, b""):
                line = raw.decode("utf-8", errors="replace").strip()
                if not line or line.startswith("frame="):
                    continue
                with self._stderr_lock:
                    self._stderr_tail.append(line[:200])
                    del self._stderr_tail[:-STDERR_TAIL_LINES]
                log.debug("[encoder] ffmpeg: %s", line[:200])

        threading.Thread(target=_reader, daemon=True).start()

    def _spawn(self, cfg: PipelineConfig) -> None:
        """Spawn ffmpeg for `cfg`, opening the PCM pipe in tts mode."""
        read_fd: Optional[int] = None
        write_fd: Optional[int] = None
        if str(cfg.audio_source).lower() == "tts":
            read_fd, write_fd = os.pipe()
        cmd = build_ffmpeg_cmd(
            cfg,
            volume=self._volume,
            muted=self._muted,
            audio_fd=read_fd,
            ffmpeg_bin=self.ffmpeg_bin,
        )
        log.info("[encoder] Starting ffmpeg: mode=%s audio=%s cmd=%s", cfg.input_mode, cfg.audio_source, _cmd_preview(cmd))
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE if cfg.input_mode == "pipe" else subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                pass_fds=(read_fd,) if read_fd is not None else (),
                bufsize=0,
            )
        except OSError:
            if write_fd is not None:
                os.close(write_fd)
            raise
        finally:
            if read_fd is not None:
                try:
                    os.close(read_fd)
                except OSError:
                    pass
        self._proc = proc
        with self._stderr_lock:
            self._stderr_tail = []
        self._start_stderr_reader(proc)
        self._audio_pipe = os.fdopen(write_fd, "wb", buffering=0) if write_fd is not None else None
        self._notify_audio(self._audio_pipe)

    async def start(self, cfg: PipelineConfig) -> None:
        """Validate `cfg`, spawn ffmpeg and confirm it survives the startup delay."""
        if self._starting:
            raise ConflictError("Stream is already starting")
        cfg.validate()
        if not self._ffmpeg_available():
            raise RuntimeError("FFmpeg is not installed or not on PATH")
        self._starting = True
        try:
            if self._proc is not None:
                await self._terminate()
            self._volume = clamp_volume(cfg.volume)
            self._spawn(cfg)
            await asyncio.sleep(self.startup_delay_s)
            if not self._alive():
                rc = self._proc.returncode if self._proc is not None else None
                detail = self.last_error() or f"exit code {rc}"
                await self._terminate()
                raise RuntimeError(f"FFmpeg exited during startup: {detail}")
            self._config = cfg
            self._started_at = time.time()
            self._frame_count = 0
            log.info("[encoder] ffmpeg streaming (pid %s)", self._proc.pid if self._proc else "?")
        finally:
            self._starting = False

    async def _terminate(self) -> None:
        """Close the audio pipe and stop ffmpeg, killing it after a grace period."""
        proc, self._proc = self._proc, None
        pipe, self._audio_pipe = self._audio_pipe, None
        if pipe is not None:
            self._notify_audio(None)
            try:
                pipe.close()
            except OSError:
                pass
        if proc is None:
            return
        if proc.stdin:
            try:
                proc.stdin.close()
            except OSError:
                pass
        if proc.poll() is not None:
            return
        proc.terminate()
        try:
            await asyncio.to_thread(proc.wait, 5)
        except subprocess.TimeoutExpired:
            log.warning("[encoder] ffmpeg did not exit after SIGTERM, killing")
            try:
                for child in psutil.Process(proc.pid).children(recursive=True):
                    child.kill()
            except psutil.Error:
                pass
            proc.kill()
            await asyncio.to_thread(proc.wait, 5)

    async def stop(self) -> Dict[str, Any]:
        """Stop the session and report its uptime."""
        uptime = int(time.time() - self._started_at) if self._config is not None else 0
        self._config = None
        await self._terminate()
        log.info("[encoder] Stopped (uptime %ss)", uptime)
        return {"uptime": uptime}

    async def _restart(self) -> None:
        """Respawn ffmpeg with the current config to apply a new audio level."""
        cfg = self._config
        if cfg is None or not self._alive():
            return
        log.info("[encoder] Restarting ffmpeg to apply audio level")
        await self._terminate()
        self._spawn(cfg)
        self._started_at = time.time()

    def write_frame(self, frame: bytes) -> bool:
        """Forward one encoded frame to ffmpeg stdin; False when not in pipe mode."""
        proc = self._proc
        if proc is None or proc.stdin is None or not self._alive():
            return False
        proc.stdin.write(frame)
        self._frame_count += 1
        return True

    async def set_volume(self, level: float) -> None:
        """Set the output volume, restarting ffmpeg when it changes."""
        new_level = clamp_volume(level)
        changed = new_level != self._volume
        self._volume = new_level
        if changed and not self._muted:
            await self._restart()

    async def mute(self) -> None:
        """Silence the output without forgetting the volume."""
        if self._muted:
            return
        self._muted = True
        await self._restart()

    async def unmute(self) -> None:
        """Restore the remembered volume."""
        if not self._muted:
            return
        self._muted = False
        await self._restart()
