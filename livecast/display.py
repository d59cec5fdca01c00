import asyncio
import os
import re
import shutil
import subprocess
import sys

from . import config
from .logging_config import log


DISPLAY_RE = re.compile(r":\d+")
RESOLUTION_RE = re.compile(r"(\d+)x(\d+)")

DISPLAY_SETTLE_S = 1.0
CHECK_TIMEOUT_S = 3.0


def is_valid_display(display: str) -> bool:
    """Return True for display ids of the form `:<digits>`."""
    return bool(DISPLAY_RE.fullmatch(str(display or "")))


def _display_server_running(display: str) -> bool:
    """Check `display` with xdpyinfo; False when xdpyinfo is unavailable."""
    xdpyinfo = shutil.which("xdpyinfo")
    if not xdpyinfo:
        return False
    try:
        proc = subprocess.run(
            [xdpyinfo, "-display", display],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=CHECK_TIMEOUT_S,
            check=False,
        )
        return int(proc.returncode) == 0
    except (OSError, subprocess.SubprocessError):
        return False


def _spawn_virtual_display(display: str, width: str, height: str) -> None:
    """Start Xvfb on `display` at the given size."""
    # Not tracked; the display outlives the stream.
    subprocess.Popen(
        [config.XVFB_BIN, display, "-screen", "0", f"{width}x{height}x24", "-ac"],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )


async def ensure_virtual_display(display: str, resolution: str) -> bool:
    """Make sure an X display is available at `display`; never raises.

    Returns False on non-Linux hosts and for any display id that is not
    `:<digits>`, before anything is executed.
    """
    if not sys.platform.startswith("linux"):
        return False

    if not is_valid_display(display):
        log.warning("[display] Invalid display format: %r (expected :<number>)", display)
        return False

    if os.environ.get("DISPLAY") == display:
        return True

    try:
        if await asyncio.to_thread(_display_server_running, display):
            log.info("[display] X server already running on %s", display)
            return True

        match = RESOLUTION_RE.fullmatch(str(resolution or ""))
        if not match:
            log.warning("[display] Invalid resolution for virtual display: %r", resolution)
            return False
        width, height = match.group(1), match.group(2)

        _spawn_virtual_display(display, width, height)
        await asyncio.sleep(DISPLAY_SETTLE_S)
        os.environ["DISPLAY"] = display
        log.info("[display] Started virtual display on %s (%s)", display, resolution)
        return True
    except Exception as e:
        log.warning("[display] Failed to start virtual display: %s", e)
        return False
