import os
import sys
import tempfile
from typing import List, Optional


VERSION = "v0.4.0"


def env_first(*names: str, default: Optional[str] = None) -> Optional[str]:
    """Return the first non-empty environment value among `names`."""
    for name in names:
        value = os.environ.get(name)
        if value is not None and str(value).strip() != "":
            return str(value).strip()
    return default


def _csv_list(raw: str) -> List[str]:
    """Parse a comma-separated string into normalized non-empty values."""
    out: List[str] = []
    for x in str(raw or "").split(","):
        s = str(x or "").strip()
        if s and s not in out:
            out.append(s)
    return out


def _int_env(*names: str, default: int) -> int:
    """Read an integer from the first set variable, falling back on parse errors."""
    raw = env_first(*names)
    if raw is None:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _default_chrome_path() -> str:
    """Return the usual Chrome install path for this platform."""
    if sys.platform == "darwin":
        return "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"
    if os.name == "nt":
        return "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe"
    return "/usr/bin/google-chrome-stable"


HOST = os.environ.get("LIVECAST_HOST", "127.0.0.1")
PORT = _int_env("LIVECAST_PORT", default=2138)
API_PREFIX = str(os.environ.get("LIVECAST_API_PREFIX", "/api") or "").rstrip("/")

DEBUG = os.environ.get("LIVECAST_DEBUG", "0") == "1"
CONSOLE_LOG = os.environ.get("LIVECAST_CONSOLE", "0") == "1"
LOG_ENABLED = os.environ.get("LIVECAST_LOG", "0") == "1" or CONSOLE_LOG
VERBOSE_HTTP_LOG = os.environ.get("LIVECAST_VERBOSE_HTTP_LOG", "1") == "1"
CORS_ORIGINS = _csv_list(os.environ.get("LIVECAST_CORS_ORIGINS", "*")) or ["*"]

DATA_DIR = os.path.abspath(env_first("LIVECAST_DATA_DIR", default=os.path.join(os.getcwd(), "data")))
STREAM_DIR = os.path.join(DATA_DIR, "stream")
SETTINGS_FILE = os.path.join(STREAM_DIR, "stream-settings.json")
LOG_FILE = os.path.join(DATA_DIR, "livecast.log")

# Stream knobs accept a primary LIVECAST_* name and the legacy STREAM_* alias.
AUDIO_SOURCE = env_first("LIVECAST_AUDIO_SOURCE", "STREAM_AUDIO_SOURCE", default="silent")
AUDIO_DEVICE = env_first("LIVECAST_AUDIO_DEVICE", "STREAM_AUDIO_DEVICE")
DEFAULT_VOLUME = _int_env("LIVECAST_VOLUME", "STREAM_VOLUME", default=80)
DISPLAY_ID = env_first("LIVECAST_DISPLAY", "STREAM_DISPLAY", default=":99")
VIDEO_DEVICE = env_first("LIVECAST_VIDEO_DEVICE", "STREAM_VIDEO_DEVICE", default="3")
CAPTURE_URL = env_first("LIVECAST_CAPTURE_URL", "STREAM_CAPTURE_URL")
DESTINATION = env_first("LIVECAST_DESTINATION")
TTS_PROVIDER = env_first("LIVECAST_TTS_PROVIDER", "STREAM_TTS_PROVIDER")

FFMPEG_BIN = env_first("LIVECAST_FFMPEG", default="ffmpeg")
XVFB_BIN = env_first("LIVECAST_XVFB", default="Xvfb")
CHROME_BIN = env_first("LIVECAST_CHROME", default=_default_chrome_path())
FRAME_FILE = env_first("LIVECAST_FRAME_FILE", default=os.path.join(tempfile.gettempdir(), "livecast-stream-frame.png"))

DEFAULT_RESOLUTION = "1280x720"
DEFAULT_BITRATE = "1500k"
FRAME_MAX_BYTES = 2 * 1024 * 1024


def capture_url() -> str:
    """Return the render surface URL the browser should open."""
    return CAPTURE_URL or f"http://127.0.0.1:{PORT}"


def reload_from_env() -> None:
    """Reload runtime configuration from environment variables."""
    global HOST, PORT, API_PREFIX, DEBUG, CONSOLE_LOG, LOG_ENABLED, VERBOSE_HTTP_LOG, CORS_ORIGINS
    global DATA_DIR, STREAM_DIR, SETTINGS_FILE, LOG_FILE
    global AUDIO_SOURCE, AUDIO_DEVICE, DEFAULT_VOLUME, DISPLAY_ID, VIDEO_DEVICE, CAPTURE_URL, DESTINATION, TTS_PROVIDER
    global FFMPEG_BIN, XVFB_BIN, CHROME_BIN, FRAME_FILE

    HOST = os.environ.get("LIVECAST_HOST", HOST)
    PORT = _int_env("LIVECAST_PORT", default=PORT)
    API_PREFIX = str(os.environ.get("LIVECAST_API_PREFIX", API_PREFIX) or "").rstrip("/")

    DEBUG = os.environ.get("LIVECAST_DEBUG", "0") == "1"
    CONSOLE_LOG = os.environ.get("LIVECAST_CONSOLE", "0") == "1"
    LOG_ENABLED = os.environ.get("LIVECAST_LOG", "0") == "1" or CONSOLE_LOG
    VERBOSE_HTTP_LOG = os.environ.get("LIVECAST_VERBOSE_HTTP_LOG", "1") == "1"
    CORS_ORIGINS = _csv_list(os.environ.get("LIVECAST_CORS_ORIGINS", ",".join(CORS_ORIGINS))) or ["*"]

    DATA_DIR = os.path.abspath(env_first("LIVECAST_DATA_DIR", default=DATA_DIR))
    STREAM_DIR = os.path.join(DATA_DIR, "stream")
    SETTINGS_FILE = os.path.join(STREAM_DIR, "stream-settings.json")
    LOG_FILE = os.path.join(DATA_DIR, "livecast.log")

    AUDIO_SOURCE = env_first("LIVECAST_AUDIO_SOURCE", "STREAM_AUDIO_SOURCE", default="silent")
    AUDIO_DEVICE = env_first("LIVECAST_AUDIO_DEVICE", "STREAM_AUDIO_DEVICE")
    DEFAULT_VOLUME = _int_env("LIVECAST_VOLUME", "STREAM_VOLUME", default=80)
    DISPLAY_ID = env_first("LIVECAST_DISPLAY", "STREAM_DISPLAY", default=":99")
    VIDEO_DEVICE = env_first("LIVECAST_VIDEO_DEVICE", "STREAM_VIDEO_DEVICE", default="3")
    CAPTURE_URL = env_first("LIVECAST_CAPTURE_URL", "STREAM_CAPTURE_URL")
    DESTINATION = env_first("LIVECAST_DESTINATION")
    TTS_PROVIDER = env_first("LIVECAST_TTS_PROVIDER", "STREAM_TTS_PROVIDER")

    FFMPEG_BIN = env_first("LIVECAST_FFMPEG", default="ffmpeg")
    XVFB_BIN = env_first("LIVECAST_XVFB", default="Xvfb")
    CHROME_BIN = env_first("LIVECAST_CHROME", default=_default_chrome_path())
    FRAME_FILE = env_first(
        "LIVECAST_FRAME_FILE",
        default=os.path.join(tempfile.gettempdir(), "livecast-stream-frame.png"),
    )
