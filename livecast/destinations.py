"""Remote streaming destinations.

A destination hands out RTMP credentials and may be notified when a stream
starts or stops. Exactly one destination is active per process; it is built
once at startup by :func:`destination_from_env` and never mutated.
"""

import itertools
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from . import config
from .errors import UpstreamError
from .logging_config import log


WIDGET_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "thought-bubble": {"position": {"x": 2, "y": 2, "width": 30, "height": 20}, "zIndex": 10},
    "action-ticker": {"position": {"x": 0, "y": 85, "width": 100, "height": 15}, "zIndex": 5},
    "alert-popup": {"position": {"x": 30, "y": 10, "width": 40, "height": 20}, "zIndex": 20},
    "viewer-count": {"position": {"x": 88, "y": 2, "width": 10, "height": 6}, "zIndex": 15},
    "branding": {"position": {"x": 2, "y": 90, "width": 20, "height": 8}, "zIndex": 2},
    "custom-html": {"position": {"x": 50, "y": 50, "width": 30, "height": 20}, "zIndex": 1},
}

_preset_ids = itertools.count(1)


def _base36(n: int) -> str:
    """Encode a non-negative integer in lower-case base 36."""
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = digits[r] + out
        if n == 0:
            return out


def build_preset_layout(name: str, enabled_types: Iterable[str]) -> Dict[str, Any]:
    """Build a version-1 overlay layout; every known widget is listed, only `enabled_types` on."""
    enabled = set(enabled_types)
    widgets = []
    for widget_type, defaults in WIDGET_DEFAULTS.items():
        widgets.append(
            {
                "id": f"preset{_base36(next(_preset_ids))}",
                "type": widget_type,
                "enabled": widget_type in enabled,
                "position": dict(defaults["position"]),
                "zIndex": defaults["zIndex"],
                "config": {},
            }
        )
    return {"version": 1, "name": name, "widgets": widgets}


@dataclass(frozen=True)
class Credentials:
    remote_url: str
    remote_key: str


class Destination:
    """Base destination; subclasses implement :meth:`get_credentials`."""

    id: str = ""
    name: str = ""
    default_overlay_layout: Optional[Dict[str, Any]] = None

    async def get_credentials(self) -> Credentials:
        """Return the RTMP URL and key to publish to."""
        raise NotImplementedError

    async def on_start(self) -> None:
        """Called after the encoder is live; errors abort go-live."""
        return None

    async def on_stop(self) -> None:
        """Called on go-offline; errors are only logged."""
        return None

    def describe(self) -> Dict[str, str]:
        """Public id and name as shown by the control surface."""
        return {"id": self.id, "name": self.name}


class RtmpDestination(Destination):
    """Plain RTMP ingest: key (and optionally URL) from the environment."""

    def __init__(
        self,
        dest_id: str,
        name: str,
        *,
        key_env: str,
        default_url: str = "",
        url_env: Optional[str] = None,
        default_overlay_layout: Optional[Dict[str, Any]] = None,
        stream_key: Optional[str] = None,
        remote_url: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Initialize a destination; explicit key and URL win over the environment."""
        self.id = dest_id
        self.name = name
        self.key_env = key_env
        self.default_url = default_url
        self.url_env = url_env
        self.default_overlay_layout = default_overlay_layout
        self._stream_key = stream_key
        self._remote_url = remote_url
        self._env = env

    async def get_credentials(self) -> Credentials:
        """Resolve credentials from overrides, then the environment."""
        env = os.environ if self._env is None else self._env
        key = str(self._stream_key if self._stream_key is not None else env.get(self.key_env, "") or "").strip()
        if not key:
            raise UpstreamError(f"{self.name} stream key not configured")

        url = self._remote_url
        if url is None and self.url_env:
            url = env.get(self.url_env) or None
        url = str(url if url is not None else self.default_url).strip()
        if not url:
            raise UpstreamError(f"{self.name} RTMP URL not configured")
        return Credentials(remote_url=url, remote_key=key)


PRESETS: Dict[str, Dict[str, Any]] = {
    "twitch": {
        "name": "Twitch",
        "key_env": "TWITCH_STREAM_KEY",
        "default_url": "rtmp://live.twitch.tv/app",
        "layout": ("viewer-count", "action-ticker", "branding"),
    },
    "youtube": {
        "name": "YouTube",
        "key_env": "YOUTUBE_STREAM_KEY",
        "default_url": "rtmp://a.rtmp.youtube.com/live2",
        "url_env": "YOUTUBE_RTMP_URL",
    },
    "custom-rtmp": {
        "name": "Custom RTMP",
        "key_env": "CUSTOM_RTMP_KEY",
        "url_env": "CUSTOM_RTMP_URL",
    },
}


def preset_destination(dest_id: str, env: Optional[Mapping[str, str]] = None) -> RtmpDestination:
    """Build the named preset destination."""
    preset = PRESETS.get(dest_id)
    if preset is None:
        raise ValueError(f"Unknown destination preset: {dest_id}")
    layout = preset.get("layout")
    return RtmpDestination(
        dest_id,
        preset["name"],
        key_env=preset["key_env"],
        default_url=preset.get("default_url", ""),
        url_env=preset.get("url_env"),
        default_overlay_layout=build_preset_layout(preset["name"], layout) if layout else None,
        env=env,
    )


def available_presets() -> List[str]:
    """Return preset ids in declaration order."""
    return list(PRESETS)


def destination_from_env(selection: Optional[str] = None) -> Optional[Destination]:
    """Build the process-wide destination from ``LIVECAST_DESTINATION``, if any."""
    dest_id = str(selection if selection is not None else (config.DESTINATION or "")).strip().lower()
    if not dest_id:
        return None
    if dest_id not in PRESETS:
        log.warning("[stream] Unknown destination %r; known: %s", dest_id, ", ".join(available_presets()))
        return None
    dest = preset_destination(dest_id)
    log.info("[stream] Active destination: %s", dest.name)
    return dest
