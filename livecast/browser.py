"""Browser capture launcher.

Opens the local render surface in Chrome so one of the grab backends has
something to capture. Two shapes are supported:

* on-screen: a kiosk window on the current X display, captured by ffmpeg's
  display grab;
* headless: a screenshot loop that keeps replacing a frame file which ffmpeg
  re-reads in file mode.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

import psutil

from . import config
from .logging_config import log


SCREENSHOT_TIMEOUT_S = 20.0


@dataclass
class BrowserCaptureOptions:
    url: str
    width: int = 1280
    height: int = 720
    quality: int = 70
    headless: bool = True
    overlay_layout: Optional[str] = None
    theme: Optional[str] = None
    avatar_index: Optional[int] = None
    destination_id: Optional[str] = None


class BrowserCapture(Protocol):
    frame_file: str

    def is_active(self) -> bool: ...

    async def start(self, options: BrowserCaptureOptions) -> None: ...

    async def stop(self) -> None: ...


def ensure_popout_url(raw: str, extra: Optional[dict] = None) -> str:
    """Append `popout` (and optional render hints) so the app renders only the stream view."""
    try:
        parts = urlsplit(str(raw or ""))
        if not parts.scheme or not parts.netloc:
            raise ValueError("relative_url")
    except ValueError:
        sep = "&" if "?" in str(raw) else "?"
        return f"{raw}{sep}popout"

    hints = [(k, str(v)) for k, v in (extra or {}).items() if v is not None and v != ""]
    if parts.fragment:
        # Hash routing keeps its own query string after the fragment path.
        fragment = parts.fragment
        if "popout" not in fragment:
            fragment = f"{fragment}{'&' if '?' in fragment else '?'}popout"
        if hints:
            fragment = f"{fragment}&{urlencode(hints)}"
        return urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, fragment))

    query = parse_qsl(parts.query, keep_blank_values=True)
    if not any(k == "popout" for k, _ in query):
        query.append(("popout", ""))
    query.extend(hints)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), ""))


def _kill_tree(pid: int) -> None:
    """Terminate a process and its children, killing whatever outlives the grace period."""
    try:
        parent = psutil.Process(pid)
    except psutil.Error:
        return
    procs = parent.children(recursive=True) + [parent]
    for p in procs:
        try:
            p.terminate()
        except psutil.Error:
            pass
    _, alive = psutil.wait_procs(procs, timeout=3)
    for p in alive:
        try:
            p.kill()
        except psutil.Error:
            pass


class ChromeBrowserCapture:
    """Chrome-backed capture launcher; one browser at a time."""

    def __init__(self, chrome_bin: Optional[str] = None, frame_file: Optional[str] = None, interval_s: float = 1.0):
        """Initialize capture state; nothing is launched until `start`."""
        self.chrome_bin = chrome_bin or config.CHROME_BIN
        self.frame_file = frame_file or config.FRAME_FILE
        self.interval_s = max(0.2, float(interval_s))
        self._proc: Optional[subprocess.Popen] = None
        self._loop_task: Optional[asyncio.Task] = None

    def is_active(self) -> bool:
        """Return True while a kiosk window or screenshot loop is alive."""
        if self._loop_task is not None and not self._loop_task.done():
            return True
        return self._proc is not None and self._proc.poll() is None

    def _resolve_chrome(self) -> str:
        """Return an executable Chrome path or raise when none is found."""
        path = shutil.which(self.chrome_bin) or (self.chrome_bin if os.path.exists(self.chrome_bin) else "")
        if not path:
            raise RuntimeError(f"chrome_not_found:{self.chrome_bin}")
        return path

    @staticmethod
    def _common_args(options: BrowserCaptureOptions) -> list:
        """Chrome flags shared by kiosk and headless launches."""
        return [
            f"--window-size={int(options.width)},{int(options.height)}",
            "--no-first-run",
            "--no-default-browser-check",
            "--no-sandbox",
            "--disable-dev-shm-usage",
            "--disable-extensions",
            "--mute-audio",
            "--use-gl=swiftshader",
            "--enable-webgl",
            "--ignore-gpu-blocklist",
        ]

    @staticmethod
    def _target_url(options: BrowserCaptureOptions) -> str:
        """Render surface URL with popout and visual hints applied."""
        return ensure_popout_url(
            options.url,
            {
                "theme": options.theme,
                "avatar": options.avatar_index,
                "destination": options.destination_id,
            },
        )

    async def start(self, options: BrowserCaptureOptions) -> None:
        """Launch the browser in the shape `options.headless` asks for."""
        if self.is_active():
            log.info("[browser] Capture already running")
            return
        chrome = self._resolve_chrome()
        url = self._target_url(options)

        if not options.headless:
            log.info("[browser] Launching kiosk window -> %s", url)
            self._proc = subprocess.Popen(
                [chrome, "--kiosk", *self._common_args(options), url],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
            return

        log.info("[browser] Starting headless screenshot loop -> %s (%s)", url, self.frame_file)
        self._loop_task = asyncio.create_task(self._screenshot_loop(chrome, url, options))

    async def _capture_once(self, chrome: str, url: str, options: BrowserCaptureOptions) -> bool:
        """Take one headless screenshot and swap it into the frame file."""
        tmp_path = self.frame_file + ".tmp.png"
        proc = await asyncio.create_subprocess_exec(
            chrome,
            "--headless=new",
            "--hide-scrollbars",
            f"--screenshot={tmp_path}",
            *self._common_args(options),
            url,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            await asyncio.wait_for(proc.wait(), timeout=SCREENSHOT_TIMEOUT_S)
        except asyncio.TimeoutError:
            await asyncio.to_thread(_kill_tree, proc.pid)
            return False
        except asyncio.CancelledError:
            await asyncio.to_thread(_kill_tree, proc.pid)
            raise
        if proc.returncode != 0 or not os.path.exists(tmp_path):
            return False
        os.replace(tmp_path, self.frame_file)
        return True

    async def _screenshot_loop(self, chrome: str, url: str, options: BrowserCaptureOptions) -> None:
        """Keep replacing the frame file until cancelled."""
        failures = 0
        while True:
            try:
                ok = await self._capture_once(chrome, url, options)
            except OSError as e:
                log.warning("[browser] Screenshot failed: %s", e)
                ok = False
            failures = 0 if ok else failures + 1
            if failures == 5:
                log.warning("[browser] Five consecutive screenshot failures for %s", url)
            await asyncio.sleep(self.interval_s)

    async def stop(self) -> None:
        """Stop the screenshot loop and kill any browser process tree."""
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        proc, self._proc = self._proc, None
        if proc is not None and proc.poll() is None:
            await asyncio.to_thread(_kill_tree, proc.pid)
        log.info("[browser] Capture stopped")
