import os
import sys
from enum import Enum
from typing import Mapping, Optional


class CaptureMode(str, Enum):
    """How video frames reach the encoder. Values are encoder input-mode names."""

    PIPE = "pipe"
    DISPLAY_GRAB = "x11grab"
    NATIVE_GRAB = "avfoundation"
    FILE_RELAY = "file"


MODE_OVERRIDE_VARS = ("LIVECAST_STREAM_MODE", "STREAM_MODE")

_OVERRIDE_VALUES = {
    "ui": CaptureMode.PIPE,
    "pipe": CaptureMode.PIPE,
    "x11grab": CaptureMode.DISPLAY_GRAB,
    "display-grab": CaptureMode.DISPLAY_GRAB,
    "avfoundation": CaptureMode.NATIVE_GRAB,
    "native-grab": CaptureMode.NATIVE_GRAB,
    "screen": CaptureMode.NATIVE_GRAB,
    "file": CaptureMode.FILE_RELAY,
}


def _override(env: Mapping[str, str]) -> Optional[CaptureMode]:
    """Return the mode forced through the environment, if any."""
    # The first variable that is present decides, even when its value is unknown.
    for name in MODE_OVERRIDE_VARS:
        raw = env.get(name)
        if raw is not None:
            return _OVERRIDE_VALUES.get(str(raw).strip().lower())
    return None


def embedded_ui_host(env: Mapping[str, str]) -> bool:
    """Return True when running inside a desktop shell that pushes its own frames."""
    return str(env.get("LIVECAST_EMBEDDED_UI", "") or "").strip().lower() in ("1", "true", "yes")


def detect_capture_mode(
    env: Optional[Mapping[str, str]] = None,
    platform: Optional[str] = None,
    embedded: Optional[bool] = None,
) -> CaptureMode:
    """Pick the capture backend for this host.

    Priority: explicit override, embedded UI host, Linux with a display,
    macOS, then the headless browser file relay.
    """
    env = os.environ if env is None else env
    platform = sys.platform if platform is None else platform

    explicit = _override(env)
    if explicit is not None:
        return explicit

    if embedded if embedded is not None else embedded_ui_host(env):
        return CaptureMode.PIPE

    if platform.startswith("linux") and env.get("DISPLAY"):
        return CaptureMode.DISPLAY_GRAB

    if platform == "darwin":
        return CaptureMode.NATIVE_GRAB

    return CaptureMode.FILE_RELAY
