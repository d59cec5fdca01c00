import json
import os
import re
import uuid
from typing import Any, Dict, Optional, Tuple

from . import config
from .logging_config import log


SETTINGS_MAX_BYTES = 4096
SETTINGS_KEYS = ("theme", "avatarIndex", "voice")
TEXT_FIELD_MAX = 64
AVATAR_INDEX_MAX = 999

_UNSAFE_ID_RE = re.compile(r"[^A-Za-z0-9_-]")


def safe_dest_id(dest_id: str) -> str:
    """Strip everything but `[A-Za-z0-9_-]` so the id is safe as a filename fragment."""
    return _UNSAFE_ID_RE.sub("", str(dest_id or ""))


def _is_int(value: Any) -> bool:
    """Return True for real ints; bools do not count."""
    return isinstance(value, int) and not isinstance(value, bool)


def _short_text(value: Any) -> bool:
    """Return True for strings of at most TEXT_FIELD_MAX characters."""
    return isinstance(value, str) and len(value) <= TEXT_FIELD_MAX


def validate_settings(raw: Any) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """Validate a visual/voice settings payload.

    Returns ``(settings, None)`` on success and ``(None, message)`` otherwise.
    The size cap is checked before any field so oversized documents are
    rejected without inspecting them.
    """
    if not isinstance(raw, dict):
        return None, "Settings must be a non-array object"

    try:
        size = len(json.dumps(raw, ensure_ascii=False, separators=(",", ":")).encode("utf-8"))
    except (TypeError, ValueError):
        return None, "Settings must be a non-array object"
    if size > SETTINGS_MAX_BYTES:
        return None, f"Settings payload exceeds {SETTINGS_MAX_BYTES} byte limit"

    for key in raw:
        if key not in SETTINGS_KEYS:
            return None, f"Unknown settings key: {key}"

    out: Dict[str, Any] = {}
    if "theme" in raw:
        if not _short_text(raw["theme"]):
            return None, f"theme must be a string of at most {TEXT_FIELD_MAX} characters"
        out["theme"] = raw["theme"]

    if "avatarIndex" in raw:
        idx = raw["avatarIndex"]
        if not _is_int(idx) or not (0 <= idx <= AVATAR_INDEX_MAX):
            return None, f"avatarIndex must be an integer between 0 and {AVATAR_INDEX_MAX}"
        out["avatarIndex"] = idx

    if "voice" in raw:
        voice = raw["voice"]
        if not isinstance(voice, dict):
            return None, "voice must be an object"
        enabled = voice.get("enabled", False)
        if not isinstance(enabled, bool):
            return None, "voice.enabled must be a boolean"
        clean: Dict[str, Any] = {"enabled": enabled}
        if "autoSpeak" in voice:
            if not isinstance(voice["autoSpeak"], bool):
                return None, "voice.autoSpeak must be a boolean"
            clean["autoSpeak"] = voice["autoSpeak"]
        if "provider" in voice:
            if not _short_text(voice["provider"]):
                return None, f"voice.provider must be a string of at most {TEXT_FIELD_MAX} characters"
            clean["provider"] = voice["provider"]
        out["voice"] = clean

    return out, None


class StreamStore:
    """File-backed overlay layouts and visual/voice settings under one directory."""

    def __init__(self, stream_dir: Optional[str] = None) -> None:
        """Initialize the store rooted at `stream_dir`."""
        self.stream_dir = os.path.abspath(stream_dir or config.STREAM_DIR)

    @property
    def settings_file(self) -> str:
        """Path of the persisted settings document."""
        return os.path.join(self.stream_dir, "stream-settings.json")

    def overlay_file(self, dest_id: Optional[str] = None) -> str:
        """Path of the layout file for `dest_id`, or the global one."""
        if dest_id:
            return os.path.join(self.stream_dir, f"overlay-layout-{safe_dest_id(dest_id)}.json")
        return os.path.join(self.stream_dir, "overlay-layout.json")

    # -- io helpers ----------------------------------------------------------

    def _write_json(self, path: str, data: Any) -> None:
        """Write `data` atomically through a temporary file."""
        os.makedirs(self.stream_dir, exist_ok=True)
        tmp_path = path + f".tmp-{uuid.uuid4().hex[:8]}"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass

    @staticmethod
    def _read_json(path: str, label: str) -> Tuple[bool, Any]:
        """Return ``(found, data)``; unreadable files count as absent."""
        if not os.path.exists(path):
            return False, None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return True, json.load(f)
        except (OSError, ValueError) as e:
            log.warning("[stream] Failed to read %s: %s", label, e)
            return False, None

    # -- settings ------------------------------------------------------------

    def read_settings(self) -> Dict[str, Any]:
        """Return persisted settings; missing, corrupt or malformed files read as empty."""
        found, data = self._read_json(self.settings_file, "stream settings file")
        if not found:
            return {}
        settings, error = validate_settings(data)
        if error is not None:
            log.warning("[stream] Ignoring invalid stream settings file: %s", error)
            return {}
        return settings

    def write_settings(self, settings: Dict[str, Any]) -> None:
        """Persist already validated settings."""
        self._write_json(self.settings_file, settings)
        log.info("[stream] Stream settings saved")

    def validate_settings(self, raw: Any) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        return validate_settings(raw)

    # -- overlay layouts -----------------------------------------------------

    def read_overlay_layout(self, dest_id: Optional[str] = None, destination: Any = None) -> Any:
        """Resolve a layout: destination file, global file, destination default, None."""
        if dest_id:
            found, data = self._read_json(self.overlay_file(dest_id), f"overlay layout for {dest_id}")
            if found:
                return data

        found, data = self._read_json(self.overlay_file(None), "global overlay layout file")
        if found:
            return data

        default = getattr(destination, "default_overlay_layout", None)
        if default:
            return default
        return None

    def write_overlay_layout(self, layout: Any, dest_id: Optional[str] = None) -> None:
        """Persist `layout` for one destination, or globally."""
        self._write_json(self.overlay_file(dest_id), layout)
        log.info("[stream] Overlay layout [%s] saved", dest_id or "global")

    def seed_overlay_defaults(self, destination: Any) -> bool:
        """Write the destination's built-in layout once, when it has no file yet."""
        default = getattr(destination, "default_overlay_layout", None)
        if not default:
            return False
        if os.path.exists(self.overlay_file(destination.id)):
            return False
        self.write_overlay_layout(default, destination.id)
        log.info("[stream] Seeded default overlay layout for %s", destination.name)
        return True

    def _overlay_layout_json(self, dest_id: Optional[str]) -> Optional[str]:
        """Return the layout for `dest_id` as a JSON string for the render surface."""
        paths = [self.overlay_file(dest_id), self.overlay_file(None)] if dest_id else [self.overlay_file(None)]
        for path in paths:
            try:
                if os.path.exists(path):
                    with open(path, "r", encoding="utf-8") as f:
                        return f.read()
            except OSError as e:
                log.warning("[stream] Failed to read %s: %s", path, e)
        return None

    def headless_capture_config(self, dest_id: Optional[str] = None) -> Dict[str, Any]:
        """Visual hints for the capture browser; persisted settings win over env."""
        settings = self.read_settings()
        theme = settings.get("theme")
        if theme is None:
            theme = config.env_first("LIVECAST_THEME", "STREAM_THEME")
        avatar_index = settings.get("avatarIndex")
        if avatar_index is None:
            raw = config.env_first("LIVECAST_AVATAR_INDEX", "STREAM_AVATAR_INDEX")
            try:
                avatar_index = int(raw) if raw is not None else None
            except ValueError:
                avatar_index = None
        return {
            "overlay_layout": self._overlay_layout_json(dest_id),
            "theme": theme,
            "avatar_index": avatar_index,
            "destination_id": dest_id,
        }
