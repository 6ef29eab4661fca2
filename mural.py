#!/usr/bin/env python3
import argparse
import hashlib
import heapq
import hmac
import itertools
import json
import logging
import mimetypes
import os
import pathlib
import queue
import shlex
import shutil
import signal
import socket
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import quote, unquote, urljoin, urlparse

import requests


def default_ipc_path() -> str:
    return os.path.join(tempfile.gettempdir(), "mpv-mural.sock")


DEFAULT_CONFIG = {
    "manifest_url": "http://127.0.0.1:3001/api/manifest",
    "media_base_url": "",
    "media_dir": "",
    "reload_interval_sec": 60,
    "request_timeout_sec": 15,
    "transition_ms": 300,
    "min_item_duration_ms": 500,
    "video_max_duration_ms": 0,
    "reset_on_reload": True,
    "offline_fallback": True,
    "state_dir": "./state",
    "placeholder_text": "No media available right now",
    "mpv_path": "mpv",
    "ipc_path": default_ipc_path(),
    "rotation_deg": 0,
    "hwdec": "auto",
    "hotkeys_enabled": True,
    "hotkey_advance_key": "n",
    "hotkey_reload_key": "r",
    "html_viewer_command": [],
    "control_ui_enabled": True,
    "control_ui_bind": "127.0.0.1",
    "control_ui_port": 8765,
    "admin_token": "",
    "log_level": "INFO",
    "log_file": "",
    "log_max_bytes": 5_000_000,
    "log_backup_count": 3,
    "status_file": "",
    "status_interval_sec": 5,
    "watchdog_interval_sec": 10,
}

MANIFEST_FILENAME = "media.json"
WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".svg"}
VIDEO_EXTENSIONS = {".mp4", ".webm", ".ogg"}
HTML_EXTENSIONS = {".html", ".htm"}
MEDIA_TYPES = ("image", "video", "html")
FIT_MODES = ("fit", "crop", "fill", "zoom")

SYSTEM_DEFAULTS = {
    "imageDurationMs": 10000,
    "htmlDurationMs": 15000,
    "fitMode": "fit",
    "bgColor": "#000000",
    "mute": True,
    "volume": 1.0,
    "schedule": {"days": list(WEEKDAYS), "start": "00:00", "end": "23:59"},
}

PHASE_EMPTY = "empty"
PHASE_SHOWING = "showing"
PHASE_TRANSITIONING = "transitioning"

MPV_ADVANCE_MESSAGE = "mural-advance"
MPV_RELOAD_MESSAGE = "mural-reload"


@dataclass(frozen=True)
class Schedule:
    # tz is kept for the admin surface; evaluation always uses device local time.
    days: Optional[Tuple[str, ...]] = None
    start: Optional[str] = None
    end: Optional[str] = None
    tz: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {}
        if self.days is not None:
            data["days"] = list(self.days)
        if self.start is not None:
            data["start"] = self.start
        if self.end is not None:
            data["end"] = self.end
        if self.tz is not None:
            data["tz"] = self.tz
        return data


@dataclass(frozen=True)
class MediaItem:
    src: str
    type: str
    fit_mode: str = "fit"
    image_duration_ms: int = 10000
    html_duration_ms: int = 15000
    mute: bool = True
    volume: float = 1.0
    bg_color: str = "#000000"
    schedule: Optional[Schedule] = None

    def display_duration_ms(self, min_duration_ms: int = 500) -> Optional[int]:
        if self.type == "image":
            return max(min_duration_ms, self.image_duration_ms)
        if self.type == "html":
            return max(min_duration_ms, self.html_duration_ms)
        return None

    def to_dict(self) -> Dict[str, object]:
        return {
            "src": self.src,
            "type": self.type,
            "fitMode": self.fit_mode,
            "imageDurationMs": self.image_duration_ms,
            "htmlDurationMs": self.html_duration_ms,
            "mute": self.mute,
            "volume": self.volume,
            "bgColor": self.bg_color,
            "schedule": self.schedule.to_dict() if self.schedule is not None else None,
        }


@dataclass(frozen=True)
class Playlist:
    items: Tuple[MediaItem, ...] = ()
    resolved_at: float = field(default=0.0, compare=False)

    def __len__(self) -> int:
        return len(self.items)

    @property
    def signature(self) -> str:
        return items_signature(self.items)


@dataclass(frozen=True)
class RotationState:
    phase: str
    index: Optional[int] = None
    next_index: Optional[int] = None
    item: Optional[MediaItem] = None
    next_item: Optional[MediaItem] = None


def load_config(path: str) -> Dict:
    abs_path = os.path.abspath(path)
    if not os.path.exists(abs_path):
        raise FileNotFoundError(f"Config not found: {path}")
    with open(abs_path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    cfg = dict(DEFAULT_CONFIG)
    cfg.update(data)
    if not cfg.get("ipc_path"):
        cfg["ipc_path"] = default_ipc_path()
    config_dir = os.path.dirname(abs_path)
    for key in ("media_dir", "state_dir", "log_file", "status_file", "ipc_path"):
        value = cfg.get(key)
        if isinstance(value, str) and value:
            cfg[key] = resolve_path_from_base(config_dir, value)
    return cfg


def resolve_path_from_base(base_dir: str, value: str) -> str:
    if not value:
        return value
    if os.path.isabs(value):
        return os.path.normpath(value)
    return os.path.normpath(os.path.join(base_dir, value))


def setup_logging(cfg: Dict) -> None:
    level = getattr(logging, str(cfg.get("log_level") or "INFO").upper(), logging.INFO)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = cfg.get("log_file")
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_file,
                maxBytes=int(cfg.get("log_max_bytes") or 0),
                backupCount=int(cfg.get("log_backup_count") or 0),
            )
        )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
    )


def iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def client_timestamp_ms() -> int:
    return int(time.time() * 1000)


def sha1_hex(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8"), usedforsecurity=False).hexdigest()


def items_signature(items: Iterable[MediaItem]) -> str:
    payload = [item.to_dict() for item in items]
    return sha1_hex(json.dumps(payload, sort_keys=True))


# Schedule evaluation


def parse_minute_of_day(value: str) -> int:
    hours, minutes = str(value).strip().split(":")
    hour = int(hours)
    minute = int(minutes)
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Time out of range: {value!r}")
    return hour * 60 + minute


def parse_schedule(raw: object) -> Optional[Schedule]:
    if raw is None:
        return None
    if isinstance(raw, Schedule):
        return raw
    if not isinstance(raw, Mapping):
        logging.debug("Ignoring malformed schedule %r", raw)
        return None
    days = raw.get("days")
    if isinstance(days, (list, tuple, set, frozenset)):
        parsed_days: Optional[Tuple[str, ...]] = tuple(str(day).strip().lower() for day in days)
    else:
        parsed_days = None
    start = raw.get("start")
    end = raw.get("end")
    tz = raw.get("tz")
    return Schedule(
        days=parsed_days,
        start=start if isinstance(start, str) and start else None,
        end=end if isinstance(end, str) and end else None,
        tz=tz if isinstance(tz, str) and tz else None,
    )


def local_datetime(now: Union[datetime, float, int, None]) -> datetime:
    if now is None:
        return datetime.now()
    if isinstance(now, (int, float)):
        return datetime.fromtimestamp(now)
    if now.tzinfo is not None:
        return now.astimezone()
    return now


def is_eligible(
    schedule: Union[Schedule, Mapping, None],
    now: Union[datetime, float, int, None] = None,
) -> bool:
    """Return True when ``now`` (device local time) falls inside ``schedule``.

    A missing schedule is always eligible, and any parse failure fails open.
    """
    if schedule is None:
        return True
    try:
        parsed = parse_schedule(schedule)
        if parsed is None:
            return True
        days = parsed.days if parsed.days is not None else WEEKDAYS
        start_min = parse_minute_of_day(parsed.start or "00:00")
        end_min = parse_minute_of_day(parsed.end or "23:59")
        local = local_datetime(now)
        if WEEKDAYS[local.weekday()] not in days:
            return False
        now_min = local.hour * 60 + local.minute
        if end_min >= start_min:
            return start_min <= now_min <= end_min
        return now_min >= start_min or now_min <= end_min
    except Exception as exc:
        logging.debug("Schedule %r unreadable, treating as eligible: %s", schedule, exc)
        return True


# Manifest resolution


def infer_media_type(name: str) -> Optional[str]:
    ext = os.path.splitext(name.lower())[1]
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext in VIDEO_EXTENSIONS:
        return "video"
    if ext in HTML_EXTENSIONS:
        return "html"
    return None


def is_inventory_name(name: object) -> bool:
    if not isinstance(name, str) or not name:
        return False
    if name == MANIFEST_FILENAME or name.startswith("."):
        return False
    return "/" not in name and "\\" not in name


def inventory_sort_key(name: str) -> Tuple[str, str]:
    return name.lower(), name


def coerce_positive_int(value: object, fallback: int) -> int:
    if isinstance(value, bool) or value is None:
        return fallback
    try:
        parsed = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return fallback
    return parsed if parsed > 0 else fallback


def coerce_volume(value: object, fallback: float) -> float:
    if isinstance(value, bool) or value is None:
        return fallback
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    if parsed != parsed:
        return fallback
    return max(0.0, min(1.0, parsed))


def coerce_bool(value: object, fallback: bool) -> bool:
    if value is None:
        return fallback
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def coerce_fit_mode(value: object, fallback: str) -> str:
    if isinstance(value, str) and value.strip().lower() in FIT_MODES:
        return value.strip().lower()
    return fallback


def coerce_color(value: object, fallback: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return fallback


def normalize_defaults(raw: object) -> Dict[str, object]:
    data = raw if isinstance(raw, Mapping) else {}
    schedule = parse_schedule(data.get("schedule"))
    if schedule is None:
        schedule = parse_schedule(SYSTEM_DEFAULTS["schedule"])
    return {
        "imageDurationMs": coerce_positive_int(data.get("imageDurationMs"), SYSTEM_DEFAULTS["imageDurationMs"]),
        "htmlDurationMs": coerce_positive_int(data.get("htmlDurationMs"), SYSTEM_DEFAULTS["htmlDurationMs"]),
        "fitMode": coerce_fit_mode(data.get("fitMode"), SYSTEM_DEFAULTS["fitMode"]),
        "bgColor": coerce_color(data.get("bgColor"), SYSTEM_DEFAULTS["bgColor"]),
        "mute": coerce_bool(data.get("mute"), SYSTEM_DEFAULTS["mute"]),
        "volume": coerce_volume(data.get("volume"), SYSTEM_DEFAULTS["volume"]),
        "schedule": schedule,
    }


def override_index(overrides: object) -> Dict[str, Mapping]:
    index: Dict[str, Mapping] = {}
    if isinstance(overrides, Mapping):
        for src, props in overrides.items():
            if isinstance(src, str) and isinstance(props, Mapping):
                index[src] = props
        return index
    for entry in overrides or []:
        if isinstance(entry, Mapping) and isinstance(entry.get("src"), str):
            index[entry["src"]] = entry
    return index


def build_media_item(
    src: str,
    inferred_type: Optional[str],
    defaults: Mapping[str, object],
    override: Mapping,
) -> MediaItem:
    explicit_type = override.get("type")
    media_type = explicit_type if explicit_type in MEDIA_TYPES else inferred_type
    if media_type not in MEDIA_TYPES:
        raise ValueError(f"Cannot determine media type for {src!r}")
    schedule = parse_schedule(override.get("schedule"))
    return MediaItem(
        src=src,
        type=media_type,
        fit_mode=coerce_fit_mode(override.get("fitMode"), defaults["fitMode"]),
        image_duration_ms=coerce_positive_int(override.get("imageDurationMs"), defaults["imageDurationMs"]),
        html_duration_ms=coerce_positive_int(override.get("htmlDurationMs"), defaults["htmlDurationMs"]),
        mute=coerce_bool(override.get("mute"), defaults["mute"]),
        volume=coerce_volume(override.get("volume"), defaults["volume"]),
        bg_color=coerce_color(override.get("bgColor"), defaults["bgColor"]),
        schedule=schedule if schedule is not None else defaults["schedule"],
    )


def resolve(
    inventory: Iterable[str],
    overrides: object,
    defaults: object,
    now: Union[datetime, float, int, None] = None,
) -> Playlist:
    try:
        base = normalize_defaults(defaults)
        by_src = override_index(overrides)
        names = sorted(
            {name for name in (inventory or []) if is_inventory_name(name)},
            key=inventory_sort_key,
        )
        items: List[MediaItem] = []
        for name in names:
            inferred = infer_media_type(name)
            if inferred is None:
                continue
            item = build_media_item(name, inferred, base, by_src.get(name) or {})
            if is_eligible(item.schedule or base["schedule"], now):
                items.append(item)
        return Playlist(items=tuple(items), resolved_at=time.time())
    except Exception:
        logging.exception("Playlist resolution failed; falling back to an empty playlist")
        return Playlist(resolved_at=time.time())


def resolve_legacy(
    raw_items: object,
    defaults: object,
    now: Union[datetime, float, int, None] = None,
) -> Playlist:
    try:
        base = normalize_defaults(defaults)
        seen: set = set()
        items: List[MediaItem] = []
        for entry in raw_items or []:
            if not isinstance(entry, Mapping):
                continue
            src = entry.get("src")
            if not is_inventory_name(src) or src in seen:
                continue
            inferred = infer_media_type(src)
            if inferred is None and entry.get("type") not in MEDIA_TYPES:
                continue
            seen.add(src)
            item = build_media_item(src, inferred, base, entry)
            if is_eligible(item.schedule or base["schedule"], now):
                items.append(item)
        return Playlist(items=tuple(items), resolved_at=time.time())
    except Exception:
        logging.exception("Legacy playlist resolution failed; falling back to an empty playlist")
        return Playlist(resolved_at=time.time())


def resolve_manifest(manifest: object, now: Union[datetime, float, int, None] = None) -> Playlist:
    if not isinstance(manifest, Mapping):
        logging.warning("Manifest is not an object (%s); using empty playlist", type(manifest).__name__)
        return Playlist(resolved_at=time.time())
    files = manifest.get("files")
    legacy_items = manifest.get("items")
    if not files and legacy_items:
        return resolve_legacy(legacy_items, manifest.get("defaults"), now)
    return resolve(files or [], manifest.get("overrides") or [], manifest.get("defaults"), now)


# media.json store


def media_config_path(media_dir: str) -> str:
    return os.path.join(media_dir, MANIFEST_FILENAME)


def load_json_file(path: str) -> Optional[Dict]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return None
    except Exception as exc:
        logging.warning("Failed to read %s: %s", path, exc)
        return None


def write_json_file(path: str, data: Dict, ensure_ascii: bool = True) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, ensure_ascii=ensure_ascii)
    os.replace(tmp_path, path)


def load_media_config(media_dir: str) -> Dict:
    data = load_json_file(media_config_path(media_dir))
    if not isinstance(data, dict):
        return {"defaults": {}, "items": []}
    defaults = data.get("defaults")
    items = data.get("items")
    return {
        "defaults": defaults if isinstance(defaults, dict) else {},
        "items": [entry for entry in items if isinstance(entry, dict)] if isinstance(items, list) else [],
    }


def write_media_config(media_dir: str, data: Dict) -> None:
    write_json_file(media_config_path(media_dir), data, ensure_ascii=False)


def list_media_files(media_dir: str) -> List[str]:
    if not os.path.isdir(media_dir):
        return []
    names = [
        name
        for name in os.listdir(media_dir)
        if is_inventory_name(name)
        and infer_media_type(name) is not None
        and os.path.isfile(os.path.join(media_dir, name))
    ]
    return sorted(names, key=inventory_sort_key)


def build_manifest(media_dir: str) -> Dict:
    media_cfg = load_media_config(media_dir)
    return {
        "defaults": media_cfg["defaults"],
        "overrides": media_cfg["items"],
        "files": list_media_files(media_dir),
    }


def set_defaults(media_dir: str, defaults: Dict) -> Dict:
    media_cfg = load_media_config(media_dir)
    media_cfg["defaults"] = dict(defaults)
    write_media_config(media_dir, media_cfg)
    return media_cfg["defaults"]


def upsert_override(media_dir: str, src: str, props: Mapping) -> Dict:
    media_cfg = load_media_config(media_dir)
    updated: Optional[Dict] = None
    items = []
    for entry in media_cfg["items"]:
        if entry.get("src") == src:
            updated = {**entry, **props, "src": src}
            items.append(updated)
        else:
            items.append(entry)
    if updated is None:
        updated = {**props, "src": src}
        items.append(updated)
    media_cfg["items"] = items
    write_media_config(media_dir, media_cfg)
    return updated


def delete_override(media_dir: str, src: str) -> bool:
    media_cfg = load_media_config(media_dir)
    kept = [entry for entry in media_cfg["items"] if entry.get("src") != src]
    removed = len(kept) != len(media_cfg["items"])
    media_cfg["items"] = kept
    write_media_config(media_dir, media_cfg)
    return removed


# Manifest fetching and offline state


def state_dir(cfg: Dict) -> str:
    configured = cfg.get("state_dir")
    if configured:
        return configured
    return os.path.join(tempfile.gettempdir(), "mural-state")


def state_path(cfg: Dict, filename: str) -> str:
    return os.path.join(state_dir(cfg), filename)


def manifest_state_path(cfg: Dict) -> str:
    return state_path(cfg, "manifest_last.json")


def save_manifest_state(cfg: Dict, manifest: Dict) -> None:
    payload = {
        "version": 1,
        "saved_at": iso_now(),
        "manifest": manifest,
    }
    write_json_file(manifest_state_path(cfg), payload, ensure_ascii=False)


def load_manifest_state(cfg: Dict) -> Tuple[Optional[Dict], Optional[str]]:
    data = load_json_file(manifest_state_path(cfg))
    if not data:
        return None, None
    manifest = data.get("manifest")
    saved_at = data.get("saved_at")
    if not isinstance(manifest, dict):
        return None, None
    return manifest, saved_at if isinstance(saved_at, str) else None


def fetch_manifest(cfg: Dict) -> Dict:
    url = cfg.get("manifest_url")
    if not url:
        media_dir = cfg.get("media_dir")
        if not media_dir:
            raise RuntimeError("Either manifest_url or media_dir must be configured")
        return build_manifest(media_dir)
    resp = requests.get(
        url,
        params={"_": client_timestamp_ms()},
        timeout=cfg["request_timeout_sec"],
    )
    resp.raise_for_status()
    data = resp.json()
    if not isinstance(data, dict):
        raise ValueError("Manifest response is not a JSON object")
    return data


def media_base_url(cfg: Dict) -> str:
    base = cfg.get("media_base_url")
    if base:
        return base if base.endswith("/") else f"{base}/"
    manifest_url = cfg.get("manifest_url")
    if manifest_url:
        return urljoin(manifest_url, "/media/")
    return ""


def media_location(cfg: Dict, src: str) -> str:
    media_dir = cfg.get("media_dir")
    if media_dir:
        path = os.path.join(media_dir, src)
        if os.path.isfile(path):
            return path
    base = media_base_url(cfg)
    if base:
        return urljoin(base, quote(src))
    return src


def html_url(location: str) -> str:
    if "://" in location:
        return location
    return pathlib.Path(location).resolve().as_uri()


def config_snapshot(cfg: Dict, lock: threading.Lock) -> Dict:
    with lock:
        return dict(cfg)


# Event loop and rotation


class TimerHandle:
    def __init__(self, due: float, callback: Callable, args: tuple) -> None:
        self.due = due
        self._callback = callback
        self._args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def run(self) -> None:
        if not self.cancelled:
            self._callback(*self._args)


class EventLoop:
    """Single-threaded timer and message loop.

    Timers are only created and cancelled on the loop thread. Other threads
    hand work over with ``post``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._timers: List[Tuple[float, int, TimerHandle]] = []
        self._counter = itertools.count()
        self._inbox: "queue.Queue[Tuple[Callable, tuple]]" = queue.Queue()

    def time(self) -> float:
        return self._clock()

    def call_later(self, delay_sec: float, callback: Callable, *args) -> TimerHandle:
        handle = TimerHandle(self._clock() + max(delay_sec, 0.0), callback, args)
        heapq.heappush(self._timers, (handle.due, next(self._counter), handle))
        return handle

    def post(self, callback: Callable, *args) -> None:
        self._inbox.put((callback, args))

    def pending_timers(self) -> int:
        return sum(1 for _due, _seq, handle in self._timers if not handle.cancelled)

    def next_delay(self) -> Optional[float]:
        while self._timers and self._timers[0][2].cancelled:
            heapq.heappop(self._timers)
        if not self._timers:
            return None
        return max(self._timers[0][0] - self._clock(), 0.0)

    def run_pending(self) -> int:
        ran = 0
        while True:
            try:
                callback, args = self._inbox.get_nowait()
            except queue.Empty:
                break
            self._invoke(callback, args)
            ran += 1
        while self._timers:
            due, _seq, handle = self._timers[0]
            if handle.cancelled:
                heapq.heappop(self._timers)
                continue
            if due > self._clock():
                break
            heapq.heappop(self._timers)
            self._invoke(handle.run, ())
            ran += 1
        return ran

    def run(self, stop_event: threading.Event, max_wait_sec: float = 0.2) -> None:
        while not stop_event.is_set():
            self.run_pending()
            delay = self.next_delay()
            wait = max_wait_sec if delay is None else min(delay, max_wait_sec)
            try:
                callback, args = self._inbox.get(timeout=max(wait, 0.001))
            except queue.Empty:
                continue
            self._invoke(callback, args)

    def _invoke(self, callback: Callable, args: tuple) -> None:
        try:
            callback(*args)
        except Exception:
            logging.exception("Event loop callback failed")


class RotationController:
    def __init__(
        self,
        loop: EventLoop,
        on_change: Optional[Callable[[RotationState], None]] = None,
        transition_ms: int = 300,
        min_duration_ms: int = 500,
        video_max_duration_ms: int = 0,
        reset_on_reload: bool = True,
    ) -> None:
        self.on_change = on_change
        self._loop = loop
        self._transition_ms = max(int(transition_ms), 0)
        self._min_duration_ms = max(int(min_duration_ms), 0)
        self._video_max_duration_ms = max(int(video_max_duration_ms), 0)
        self._reset_on_reload = reset_on_reload
        self._playlist = Playlist()
        self._phase = PHASE_EMPTY
        self._index = 0
        self._next_index: Optional[int] = None
        self._timer: Optional[TimerHandle] = None

    @property
    def playlist(self) -> Playlist:
        return self._playlist

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def current_item(self) -> Optional[MediaItem]:
        if self._phase == PHASE_EMPTY:
            return None
        return self._playlist.items[self._index]

    @property
    def state(self) -> RotationState:
        if self._phase == PHASE_EMPTY:
            return RotationState(phase=PHASE_EMPTY)
        items = self._playlist.items
        next_item = items[self._next_index] if self._next_index is not None else None
        return RotationState(
            phase=self._phase,
            index=self._index,
            next_index=self._next_index,
            item=items[self._index],
            next_item=next_item,
        )

    def load_playlist(self, playlist: Playlist) -> None:
        if (
            not self._reset_on_reload
            and self._phase != PHASE_EMPTY
            and playlist.signature == self._playlist.signature
        ):
            self._playlist = playlist
            logging.debug("Playlist unchanged; keeping position %d", self._index)
            return
        self._cancel_timer()
        self._playlist = playlist
        self._phase = PHASE_EMPTY
        self._index = 0
        self._next_index = None
        if not playlist.items:
            logging.info("Playlist is empty; showing placeholder")
            self._publish()
            return
        logging.info("Playlist loaded: %d items", len(playlist.items))
        self._enter_showing(0)

    def advance(self) -> bool:
        if self._phase != PHASE_SHOWING:
            logging.debug("Advance ignored while %s", self._phase)
            return False
        self._cancel_timer()
        self._next_index = (self._index + 1) % len(self._playlist.items)
        self._phase = PHASE_TRANSITIONING
        self._timer = self._loop.call_later(self._transition_ms / 1000.0, self._finish_transition)
        self._publish()
        return True

    def notify_ended(self, src: Optional[str] = None) -> bool:
        return self._video_signal("ended", src)

    def notify_error(self, src: Optional[str] = None) -> bool:
        return self._video_signal("error", src)

    def stop(self) -> None:
        self._cancel_timer()
        self._playlist = Playlist()
        self._phase = PHASE_EMPTY
        self._index = 0
        self._next_index = None
        self._publish()

    def _video_signal(self, kind: str, src: Optional[str]) -> bool:
        item = self.current_item
        if self._phase != PHASE_SHOWING or item is None or item.type != "video":
            return False
        if src is not None and src != item.src:
            logging.debug("Ignoring stale %s signal for %s (showing %s)", kind, src, item.src)
            return False
        if kind == "error":
            logging.warning("Video %s reported a playback error; advancing", item.src)
        return self.advance()

    def _enter_showing(self, index: int) -> None:
        self._cancel_timer()
        self._phase = PHASE_SHOWING
        self._index = index
        self._next_index = None
        item = self._playlist.items[index]
        delay_ms = item.display_duration_ms(self._min_duration_ms)
        if delay_ms is None and self._video_max_duration_ms > 0:
            delay_ms = max(self._min_duration_ms, self._video_max_duration_ms)
        if delay_ms is not None:
            self._timer = self._loop.call_later(delay_ms / 1000.0, self._auto_advance, item.src)
        self._publish()

    def _finish_transition(self) -> None:
        self._timer = None
        if self._phase != PHASE_TRANSITIONING or self._next_index is None:
            return
        self._enter_showing(self._next_index)

    def _auto_advance(self, src: str) -> None:
        self._timer = None
        item = self.current_item
        if self._phase != PHASE_SHOWING or item is None or item.src != src:
            return
        if item.type == "video":
            logging.warning("Video %s exceeded %d ms without ending; advancing", src, self._video_max_duration_ms)
        self.advance()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _publish(self) -> None:
        if self.on_change is not None:
            self.on_change(self.state)


# Status


class StatusState:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, Optional[object]] = {
            "started_at": iso_now(),
            "last_poll_success": None,
            "last_poll_error": None,
            "consecutive_failures": 0,
            "playlist_size": None,
            "playlist_signature": None,
            "rotation_phase": PHASE_EMPTY,
            "current_index": None,
            "current_item": None,
            "next_index": None,
            "mpv_running": None,
            "mpv_last_ok": None,
            "last_render_ok": None,
            "last_render_error": None,
        }
        self.start_time = time.time()

    def update(self, **kwargs: object) -> None:
        with self._lock:
            self._data.update(kwargs)

    def snapshot(self) -> Dict[str, Optional[object]]:
        with self._lock:
            return dict(self._data)


# Display


def ensure_hotkey_conf(cfg: Dict) -> Optional[str]:
    if not cfg.get("hotkeys_enabled"):
        return None
    conf_path = state_path(cfg, "hotkeys.conf")
    lines = [
        f"{cfg.get('hotkey_advance_key') or 'n'} script-message {MPV_ADVANCE_MESSAGE}\n",
        f"{cfg.get('hotkey_reload_key') or 'r'} script-message {MPV_RELOAD_MESSAGE}\n",
    ]
    try:
        os.makedirs(os.path.dirname(conf_path), exist_ok=True)
        with open(conf_path, "w", encoding="utf-8") as fh:
            fh.writelines(lines)
    except Exception as exc:
        logging.warning("Failed to write hotkey conf: %s", exc)
        return None
    return conf_path


def build_mpv_args(cfg: Dict) -> List[str]:
    args = [
        cfg["mpv_path"],
        "--fs",
        "--force-window=yes",
        "--idle=yes",
        "--keep-open=no",
        "--no-terminal",
        "--image-display-duration=inf",
        "--no-osc",
        "--osd-level=0",
        "--cursor-autohide=always",
        f"--input-ipc-server={cfg['ipc_path']}",
        "--no-input-default-bindings",
    ]
    if cfg.get("rotation_deg"):
        args.append(f"--video-rotate={int(cfg['rotation_deg'])}")
    hotkey_conf = ensure_hotkey_conf(cfg)
    if hotkey_conf:
        args.append(f"--input-conf={hotkey_conf}")
        args.append("--input-vo-keyboard=yes")
    else:
        args.append("--input-vo-keyboard=no")
    if cfg.get("hwdec"):
        args.append(f"--hwdec={cfg['hwdec']}")
    return args


def fit_mode_properties(fit_mode: str) -> Dict[str, object]:
    if fit_mode in ("crop", "zoom"):
        return {"keepaspect": True, "panscan": 1.0}
    if fit_mode == "fill":
        return {"keepaspect": False, "panscan": 0.0}
    return {"keepaspect": True, "panscan": 0.0}


def volume_percent(volume: float) -> int:
    return int(round(max(0.0, min(1.0, volume)) * 100))


def signal_process(proc: subprocess.Popen, force: bool = False) -> None:
    if os.name != "nt" and proc.pid:
        os.killpg(proc.pid, signal.SIGKILL if force else signal.SIGTERM)
    elif force:
        proc.kill()
    else:
        proc.terminate()


def reap_process(proc: subprocess.Popen, timeout: float = 5) -> None:
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        try:
            signal_process(proc, force=True)
        except OSError as exc:
            logging.warning("Failed to kill process %s: %s", proc.pid, exc)


def terminate_process(proc: Optional[subprocess.Popen], wait: bool = True) -> None:
    if proc is None or proc.poll() is not None:
        return
    try:
        signal_process(proc)
    except OSError as exc:
        logging.warning("Failed to stop process %s: %s", proc.pid, exc)
        return
    if wait:
        reap_process(proc)
    else:
        threading.Thread(target=reap_process, args=(proc,), daemon=True).start()


def popen_detached(args: List[str]) -> subprocess.Popen:
    popen_kwargs: Dict[str, object] = {
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
    }
    if os.name == "nt":
        popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        popen_kwargs["start_new_session"] = True
    return subprocess.Popen(args, **popen_kwargs)


class MPVController:
    def __init__(self, cfg: Dict, on_event: Optional[Callable[[Dict], None]] = None) -> None:
        self.on_event = on_event
        self._cfg = cfg
        self._proc: Optional[subprocess.Popen] = None
        self._ipc: Optional[socket.socket] = None
        self._lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._request_id = 0
        self._pending: Dict[int, "queue.Queue[Dict]"] = {}
        self._generation = 0

    def _cleanup_ipc_path(self) -> None:
        ipc_path = self._cfg["ipc_path"]
        if os.path.exists(ipc_path):
            try:
                os.remove(ipc_path)
            except OSError:
                pass

    def _open_ipc(self) -> bool:
        ipc_path = self._cfg["ipc_path"]
        start = time.time()
        timeout = 10
        while time.time() - start < timeout:
            if os.path.exists(ipc_path):
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                try:
                    sock.settimeout(2.0)
                    sock.connect(ipc_path)
                except OSError:
                    sock.close()
                    time.sleep(0.2)
                    continue
                sock.settimeout(None)
                self._ipc = sock
                reader = threading.Thread(
                    target=self._read_loop,
                    args=(sock, self._generation),
                    daemon=True,
                )
                reader.start()
                return True
            time.sleep(0.2)
        return False

    def _close_ipc(self) -> None:
        sock = self._ipc
        if sock is None:
            return
        self._ipc = None
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()

    def _stop_locked(self) -> None:
        self._close_ipc()
        terminate_process(self._proc)
        self._proc = None
        self._cleanup_ipc_path()

    def _start_locked(self) -> bool:
        if self._proc and self._proc.poll() is None and self._ipc is not None:
            return True
        if self._proc and self._proc.poll() is None and self._ipc is None:
            self._stop_locked()

        self._close_ipc()
        self._cleanup_ipc_path()
        try:
            self._proc = popen_detached(build_mpv_args(self._cfg))
        except Exception as exc:
            self._proc = None
            logging.error("Failed to start MPV process: %s", exc)
            return False
        self._generation += 1
        if self._open_ipc():
            return True
        logging.warning("MPV IPC not available after launch; will retry.")
        self._stop_locked()
        return False

    def start(self) -> None:
        with self._lock:
            if self._start_locked():
                return
            time.sleep(1)
            self._start_locked()

    def restart(self) -> None:
        with self._lock:
            self._stop_locked()
            time.sleep(1)
            self._start_locked()

    def stop(self) -> None:
        with self._lock:
            self._stop_locked()

    def ensure_running(self) -> None:
        if self._proc is None or self._proc.poll() is not None:
            self.start()

    def is_running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def generation(self) -> int:
        return self._generation

    def _read_loop(self, sock: socket.socket, generation: int) -> None:
        buffer = ""
        while True:
            try:
                chunk = sock.recv(4096)
            except OSError:
                break
            if not chunk:
                break
            buffer += chunk.decode("utf-8", errors="ignore")
            while "\n" in buffer:
                line, buffer = buffer.split("\n", 1)
                self.dispatch_line(line)
        logging.debug("MPV IPC reader for generation %d stopped", generation)

    def dispatch_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            payload = json.loads(line)
        except ValueError:
            logging.debug("Ignoring non-JSON MPV line: %r", line)
            return
        if not isinstance(payload, dict):
            return
        if "event" in payload:
            handler = self.on_event
            if handler is not None:
                try:
                    handler(payload)
                except Exception as exc:
                    logging.warning("MPV event handler failed: %s", exc)
            return
        with self._send_lock:
            waiter = self._pending.get(payload.get("request_id"))
        if waiter is not None:
            waiter.put(payload)

    def _write(self, payload: Dict) -> bool:
        data = (json.dumps(payload) + "\n").encode("utf-8")
        with self._send_lock:
            sock = self._ipc
            if sock is None:
                return False
            try:
                sock.sendall(data)
            except OSError:
                return False
        return True

    def _request(self, payload: Dict, timeout: float = 2.0) -> Optional[Dict]:
        waiter: "queue.Queue[Dict]" = queue.Queue(maxsize=1)
        with self._send_lock:
            sock = self._ipc
            if sock is None:
                return None
            self._request_id += 1
            request_id = self._request_id
            data = (json.dumps(dict(payload, request_id=request_id)) + "\n").encode("utf-8")
            self._pending[request_id] = waiter
            try:
                sock.sendall(data)
            except OSError:
                self._pending.pop(request_id, None)
                return None
        try:
            return waiter.get(timeout=max(timeout, 0.1))
        except queue.Empty:
            return None
        finally:
            with self._send_lock:
                self._pending.pop(request_id, None)

    def load_file(self, path: str) -> bool:
        return self._write({"command": ["loadfile", path, "replace"]})

    def stop_playback(self) -> bool:
        return self._write({"command": ["stop"]})

    def show_text(self, text: str, duration_ms: int = 86_400_000) -> bool:
        return self._write({"command": ["show-text", text, int(duration_ms), 0]})

    def set_property(self, name: str, value: object) -> bool:
        return self._write({"command": ["set_property", name, value]})

    def ping(self) -> bool:
        payload = self._request({"command": ["get_property", "idle-active"]}, timeout=2.0)
        return isinstance(payload, dict) and payload.get("error") == "success"

    def get_property(self, name: str, timeout: float = 2.0) -> Optional[object]:
        payload = self._request({"command": ["get_property", name]}, timeout=timeout)
        if isinstance(payload, dict) and payload.get("error") == "success":
            return payload.get("data")
        return None


class HtmlViewer:
    def __init__(self, cfg: Dict) -> None:
        command = cfg.get("html_viewer_command") or []
        if isinstance(command, str):
            command = shlex.split(command)
        self._command: List[str] = [str(arg) for arg in command]
        self._proc: Optional[subprocess.Popen] = None
        self._url: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self._command)

    def build_args(self, url: str) -> List[str]:
        if any("{url}" in arg for arg in self._command):
            return [arg.replace("{url}", url) for arg in self._command]
        return self._command + [url]

    def open(self, url: str) -> bool:
        if not self._command:
            logging.warning("No html_viewer_command configured; cannot show %s", url)
            return False
        if self._proc is not None and self._proc.poll() is None and self._url == url:
            return True
        self.close()
        try:
            self._proc = popen_detached(self.build_args(url))
        except Exception as exc:
            logging.error("Failed to start HTML viewer for %s: %s", url, exc)
            self._proc = None
            return False
        self._url = url
        return True

    def close(self, wait: bool = False) -> None:
        terminate_process(self._proc, wait=wait)
        self._proc = None
        self._url = None


class MpvDisplay:
    def __init__(
        self,
        cfg: Dict,
        mpv: MPVController,
        html_viewer: HtmlViewer,
        loop: EventLoop,
        controller: RotationController,
        status: StatusState,
    ) -> None:
        self.current_src: Optional[str] = None
        self.current_entry_id: Optional[int] = None
        self._awaiting_start = False
        self._cfg = cfg
        self._mpv = mpv
        self._html = html_viewer
        self._loop = loop
        self._controller = controller
        self._status = status

    def render(self, state: RotationState) -> None:
        self._status.update(
            rotation_phase=state.phase,
            current_index=state.index,
            next_index=state.next_index,
        )
        if state.phase == PHASE_TRANSITIONING:
            return
        if state.phase == PHASE_EMPTY or state.item is None:
            self.show_placeholder()
            return
        self.show(state.item)

    def redraw(self) -> None:
        # Loads sent to a replaced mpv never report start-file.
        self._awaiting_start = False
        self.current_entry_id = None
        self.render(self._controller.state)

    def file_started(self, entry_id: Optional[int]) -> None:
        self._awaiting_start = False
        self.current_entry_id = entry_id

    def is_current_entry(self, entry_id: Optional[int]) -> bool:
        if self._awaiting_start:
            return False
        return entry_id is None or entry_id == self.current_entry_id

    def show_placeholder(self) -> None:
        self.current_src = None
        self.current_entry_id = None
        self._awaiting_start = False
        self._html.close()
        self._mpv.stop_playback()
        self._mpv.show_text(str(self._cfg.get("placeholder_text") or ""))
        self._status.update(current_item=None)

    def show(self, item: MediaItem) -> None:
        location = media_location(self._cfg, item.src)
        self.current_src = item.src
        self.current_entry_id = None
        self._awaiting_start = False
        self._mpv.show_text("", 1)
        self._mpv.set_property("background-color", item.bg_color)
        for name, value in fit_mode_properties(item.fit_mode).items():
            self._mpv.set_property(name, value)

        if item.type == "html":
            self._mpv.stop_playback()
            if self._html.open(html_url(location)):
                self._render_ok(item, location)
            else:
                self._render_failed(item, location)
            return

        self._html.close()
        self._mpv.set_property("loop-file", "inf" if item.type == "image" else "no")
        if item.type == "video":
            self._mpv.set_property("mute", item.mute)
            self._mpv.set_property("volume", volume_percent(item.volume))
        if not self._mpv.load_file(location):
            logging.warning("Failed to load %s into MPV", location)
            self._render_failed(item, location)
            if item.type == "video":
                self._loop.post(self._controller.notify_error, item.src)
            return
        self._awaiting_start = True
        self._render_ok(item, location)

    def _render_ok(self, item: MediaItem, location: str) -> None:
        logging.info("Showing %s (%s) from %s", item.src, item.type, location)
        current = item.to_dict()
        current["location"] = location
        current["started_at"] = iso_now()
        self._status.update(current_item=current, last_render_ok=iso_now(), last_render_error=None)

    def _render_failed(self, item: MediaItem, location: str) -> None:
        self._status.update(last_render_error=f"{iso_now()} failed_to_render:{location}")


def handle_mpv_event(
    event: Dict,
    controller: RotationController,
    display: MpvDisplay,
    reload_event: threading.Event,
) -> None:
    name = event.get("event")
    if name == "start-file":
        display.file_started(event.get("playlist_entry_id"))
    elif name == "end-file":
        src = display.current_src
        if src is None or not display.is_current_entry(event.get("playlist_entry_id")):
            logging.debug("Ignoring end-file for a replaced entry: %s", event)
            return
        reason = event.get("reason")
        if reason == "eof":
            controller.notify_ended(src)
        elif reason == "error":
            logging.warning("MPV could not play %s: %s", src, event.get("file_error") or "unknown error")
            controller.notify_error(src)
    elif name == "client-message":
        args = event.get("args") or []
        message = args[0] if args else ""
        if message == MPV_ADVANCE_MESSAGE:
            controller.advance()
        elif message == MPV_RELOAD_MESSAGE:
            logging.info("Reload requested from keyboard")
            reload_event.set()


# Control server


class ControlServer:
    def __init__(
        self,
        cfg: Dict,
        cfg_lock: threading.Lock,
        loop: EventLoop,
        controller: RotationController,
        reload_event: threading.Event,
        status: StatusState,
    ) -> None:
        self._cfg = cfg
        self._cfg_lock = cfg_lock
        self._loop = loop
        self._controller = controller
        self._reload_event = reload_event
        self._status = status
        self._store_lock = threading.Lock()
        self._server: Optional[ThreadingHTTPServer] = None

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        if self._server is None:
            return None
        host, port = self._server.server_address[:2]
        return str(host), int(port)

    def start(self) -> None:
        snapshot = config_snapshot(self._cfg, self._cfg_lock)
        if not snapshot.get("control_ui_enabled"):
            return
        bind = snapshot.get("control_ui_bind", "127.0.0.1")
        port = int(snapshot.get("control_ui_port", 8765))
        try:
            server = ThreadingHTTPServer((bind, port), self._make_handler())
        except Exception as exc:
            logging.warning("Control UI unavailable on %s:%s: %s", bind, port, exc)
            return
        server.daemon_threads = True
        self._server = server
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        logging.info("Control UI available at http://%s:%s", *self.address)

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        self._server = None

    def _make_handler(self):
        cfg = self._cfg
        cfg_lock = self._cfg_lock
        loop = self._loop
        controller = self._controller
        reload_event = self._reload_event
        status = self._status
        store_lock = self._store_lock

        class Handler(BaseHTTPRequestHandler):
            def log_message(self, fmt, *args) -> None:
                logging.debug("ControlUI %s - %s", self.address_string(), fmt % args)

            def _send_json(self, code: HTTPStatus, payload: object) -> None:
                body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
                self.send_response(code)
                self.send_header("Content-Type", "application/json; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.send_header("Cache-Control", "no-store")
                self.end_headers()
                self.wfile.write(body)

            def _read_json(self) -> Optional[object]:
                try:
                    length = int(self.headers.get("Content-Length", "0") or 0)
                    raw = self.rfile.read(length).decode("utf-8") if length > 0 else ""
                except ValueError:
                    return None
                if not raw:
                    return {}
                try:
                    return json.loads(raw)
                except ValueError:
                    return None

            def _media_dir(self) -> Optional[str]:
                media_dir = config_snapshot(cfg, cfg_lock).get("media_dir")
                if not media_dir:
                    self._send_json(HTTPStatus.NOT_FOUND, {"error": "media_dir_not_configured"})
                    return None
                return media_dir

            def _authorized(self) -> bool:
                token = str(config_snapshot(cfg, cfg_lock).get("admin_token") or "")
                if not token:
                    self._send_json(HTTPStatus.FORBIDDEN, {"error": "admin_disabled"})
                    return False
                supplied = self.headers.get("X-Admin-Token") or ""
                if not hmac.compare_digest(supplied.encode("utf-8"), token.encode("utf-8")):
                    self._send_json(HTTPStatus.UNAUTHORIZED, {"error": "unauthorized"})
                    return False
                return True

            def do_GET(self) -> None:  # noqa: N802
                path = urlparse(self.path).path
                if path in {"/", ""}:
                    self._send_index()
                elif path == "/api/status":
                    self._send_json(HTTPStatus.OK, status.snapshot())
                elif path == "/api/manifest":
                    media_dir = self._media_dir()
                    if media_dir is None:
                        return
                    with store_lock:
                        manifest = build_manifest(media_dir)
                    self._send_json(HTTPStatus.OK, manifest)
                elif path.startswith("/media/"):
                    self._send_media(unquote(path[len("/media/"):]))
                else:
                    self._send_json(HTTPStatus.NOT_FOUND, {"error": "not_found"})

            def do_POST(self) -> None:  # noqa: N802
                path = urlparse(self.path).path
                if path == "/api/advance":
                    loop.post(controller.advance)
                    self._send_json(HTTPStatus.ACCEPTED, {"ok": True})
                elif path == "/api/reload":
                    reload_event.set()
                    self._send_json(HTTPStatus.ACCEPTED, {"ok": True})
                elif path == "/api/admin/defaults":
                    self._save_defaults()
                elif path == "/api/admin/override":
                    self._save_override()
                else:
                    self._send_json(HTTPStatus.NOT_FOUND, {"error": "not_found"})

            def do_DELETE(self) -> None:  # noqa: N802
                path = urlparse(self.path).path
                prefix = "/api/admin/override/"
                if not path.startswith(prefix):
                    self._send_json(HTTPStatus.NOT_FOUND, {"error": "not_found"})
                    return
                if not self._authorized():
                    return
                media_dir = self._media_dir()
                if media_dir is None:
                    return
                src = unquote(path[len(prefix):])
                with store_lock:
                    removed = delete_override(media_dir, src)
                reload_event.set()
                self._send_json(HTTPStatus.OK, {"ok": True, "removed": removed})

            def _save_defaults(self) -> None:
                if not self._authorized():
                    return
                media_dir = self._media_dir()
                if media_dir is None:
                    return
                body = self._read_json()
                if not isinstance(body, dict):
                    self._send_json(HTTPStatus.BAD_REQUEST, {"error": "invalid_json"})
                    return
                with store_lock:
                    defaults = set_defaults(media_dir, body)
                reload_event.set()
                self._send_json(HTTPStatus.OK, {"ok": True, "defaults": defaults})

            def _save_override(self) -> None:
                if not self._authorized():
                    return
                media_dir = self._media_dir()
                if media_dir is None:
                    return
                body = self._read_json()
                if not isinstance(body, dict):
                    self._send_json(HTTPStatus.BAD_REQUEST, {"error": "invalid_json"})
                    return
                props = dict(body)
                src = props.pop("src", None)
                if not is_inventory_name(src):
                    self._send_json(HTTPStatus.BAD_REQUEST, {"error": "src_required"})
                    return
                with store_lock:
                    override = upsert_override(media_dir, src, props)
                reload_event.set()
                self._send_json(HTTPStatus.OK, {"ok": True, "override": override})

            def _send_media(self, name: str) -> None:
                media_dir = config_snapshot(cfg, cfg_lock).get("media_dir")
                if not media_dir or not is_inventory_name(name) or infer_media_type(name) is None:
                    self._send_json(HTTPStatus.NOT_FOUND, {"error": "not_found"})
                    return
                path = os.path.join(media_dir, name)
                if not os.path.isfile(path):
                    self._send_json(HTTPStatus.NOT_FOUND, {"error": "not_found"})
                    return
                content_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
                self.send_response(HTTPStatus.OK)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(os.path.getsize(path)))
                self.end_headers()
                with open(path, "rb") as fh:
                    shutil.copyfileobj(fh, self.wfile)

            def _send_index(self) -> None:
                snapshot = status.snapshot()
                current = snapshot.get("current_item") or {}
                current_src = current.get("src", "-") if isinstance(current, dict) else "-"
                html = f"""<!doctype html>
<html lang="en"><head>
<meta charset="utf-8">
<title>Mural</title>
<style>
body{{font-family:Arial,Helvetica,sans-serif;margin:24px;background:#111;color:#eee;}}
button{{font-size:16px;padding:8px 16px;margin-right:8px;border-radius:6px;border:1px solid #2b7a78;background:#2b7a78;color:#eee;cursor:pointer;}}
.small{{font-size:12px;color:#aaa;}}
</style></head><body>
<h2>Mural player</h2>
<p>State: {snapshot.get("rotation_phase")} &middot; playlist: {snapshot.get("playlist_size")} &middot; now: {current_src}</p>
<button onclick="fetch('/api/advance',{{method:'POST'}})">Next</button>
<button onclick="fetch('/api/reload',{{method:'POST'}})">Reload</button>
<p class="small">Last poll: {snapshot.get("last_poll_success") or "-"}</p>
</body></html>
"""
                payload = html.encode("utf-8")
                self.send_response(HTTPStatus.OK)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                self.wfile.write(payload)

        return Handler


# Workers


def sleep_until_stopped(stop_event: threading.Event, seconds: float) -> None:
    for _ in range(int(seconds * 5)):
        if stop_event.is_set():
            break
        time.sleep(0.2)


def poll_once(
    cfg_snapshot: Dict,
    loop: EventLoop,
    controller: RotationController,
    status: StatusState,
) -> Optional[Playlist]:
    try:
        manifest = fetch_manifest(cfg_snapshot)
    except Exception as exc:
        failures = int(status.snapshot().get("consecutive_failures") or 0) + 1
        logging.warning("Manifest fetch failed (%d in a row); keeping current playlist: %s", failures, exc)
        status.update(last_poll_error=f"{iso_now()} {exc}", consecutive_failures=failures)
        return None
    if cfg_snapshot.get("offline_fallback"):
        try:
            save_manifest_state(cfg_snapshot, manifest)
        except Exception as exc:
            logging.warning("Failed to save manifest state: %s", exc)
    playlist = resolve_manifest(manifest, datetime.now())
    loop.post(controller.load_playlist, playlist)
    status.update(
        last_poll_success=iso_now(),
        last_poll_error=None,
        consecutive_failures=0,
        playlist_size=len(playlist.items),
        playlist_signature=playlist.signature,
    )
    return playlist


def poller(
    cfg: Dict,
    cfg_lock: threading.Lock,
    reload_event: threading.Event,
    loop: EventLoop,
    controller: RotationController,
    status: StatusState,
    stop_event: threading.Event,
) -> None:
    def wait_poll_interval(cfg_snapshot: Dict) -> None:
        interval = float(cfg_snapshot.get("reload_interval_sec") or 0)
        for _ in range(int(interval * 5)):
            if stop_event.is_set():
                break
            if reload_event.is_set():
                break
            time.sleep(0.2)
        reload_event.clear()

    while not stop_event.is_set():
        cfg_snapshot = config_snapshot(cfg, cfg_lock)
        try:
            poll_once(cfg_snapshot, loop, controller, status)
        except Exception as exc:
            logging.warning("Manifest polling failed: %s", exc)
        wait_poll_interval(cfg_snapshot)


def watchdog(
    cfg: Dict,
    cfg_lock: threading.Lock,
    mpv: MPVController,
    loop: EventLoop,
    display: MpvDisplay,
    status: StatusState,
    stop_event: threading.Event,
) -> None:
    while not stop_event.is_set():
        try:
            generation = mpv.generation()
            mpv.ensure_running()
            if not mpv.ping():
                logging.warning("MPV IPC unresponsive, restarting")
                mpv.restart()
            if mpv.generation() != generation:
                loop.post(display.redraw)
            status.update(mpv_running=mpv.is_running(), mpv_last_ok=iso_now())
        except Exception as exc:
            logging.warning("Watchdog error: %s", exc)
        cfg_snapshot = config_snapshot(cfg, cfg_lock)
        sleep_until_stopped(stop_event, int(cfg_snapshot.get("watchdog_interval_sec") or 0))


def status_writer(cfg: Dict, cfg_lock: threading.Lock, status: StatusState, stop_event: threading.Event) -> None:
    cfg_snapshot = config_snapshot(cfg, cfg_lock)
    if not cfg_snapshot.get("status_file"):
        return
    status_path = cfg_snapshot["status_file"]
    interval = int(cfg_snapshot.get("status_interval_sec") or 0)
    if interval <= 0:
        return
    status_dir = os.path.dirname(status_path)
    if status_dir:
        os.makedirs(status_dir, exist_ok=True)
    while not stop_event.is_set():
        snapshot = status.snapshot()
        snapshot["uptime_sec"] = int(time.time() - status.start_time)
        tmp_path = f"{status_path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as fh:
                json.dump(snapshot, fh, ensure_ascii=True)
            os.replace(tmp_path, status_path)
        except Exception as exc:
            logging.warning("Status write failed: %s", exc)
        sleep_until_stopped(stop_event, interval)


def main() -> int:
    parser = argparse.ArgumentParser(description="Mural signage player")
    parser.add_argument("--config", default="config.json", help="Path to config.json")
    args = parser.parse_args()
    config_path = os.path.abspath(args.config)

    cfg = load_config(config_path)
    setup_logging(cfg)
    if not cfg.get("manifest_url") and not cfg.get("media_dir"):
        logging.error("manifest_url or media_dir must be configured.")
        return 2

    cfg_lock = threading.Lock()
    reload_event = threading.Event()
    stop_event = threading.Event()
    force_exit = threading.Event()

    status = StatusState()
    loop = EventLoop()
    controller = RotationController(
        loop,
        transition_ms=int(cfg.get("transition_ms") or 0),
        min_duration_ms=int(cfg.get("min_item_duration_ms") or 0),
        video_max_duration_ms=int(cfg.get("video_max_duration_ms") or 0),
        reset_on_reload=bool(cfg.get("reset_on_reload", True)),
    )
    mpv = MPVController(cfg)
    html_viewer = HtmlViewer(cfg)
    display = MpvDisplay(cfg, mpv, html_viewer, loop, controller, status)
    controller.on_change = display.render
    mpv.on_event = lambda event: loop.post(handle_mpv_event, event, controller, display, reload_event)

    if cfg.get("offline_fallback"):
        manifest, saved_at = load_manifest_state(cfg)
        if manifest is not None:
            playlist = resolve_manifest(manifest, datetime.now())
            loop.post(controller.load_playlist, playlist)
            status.update(playlist_size=len(playlist.items), playlist_signature=playlist.signature)
            logging.info("Loaded offline manifest saved at %s: %d items", saved_at, len(playlist.items))

    def _force_kill_after_delay() -> None:
        time.sleep(5)
        if not force_exit.is_set():
            return
        try:
            html_viewer.close(wait=True)
            mpv.stop()
        finally:
            os._exit(1)

    def _handle(sig, _frame):
        logging.info("Signal %s received, stopping...", sig)
        stop_event.set()
        force_exit.set()
        threading.Thread(target=_force_kill_after_delay, daemon=True).start()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)

    mpv.start()

    threads: List[threading.Thread] = [
        threading.Thread(
            target=poller,
            args=(cfg, cfg_lock, reload_event, loop, controller, status, stop_event),
            daemon=True,
        ),
        threading.Thread(
            target=watchdog,
            args=(cfg, cfg_lock, mpv, loop, display, status, stop_event),
            daemon=True,
        ),
        threading.Thread(
            target=status_writer,
            args=(cfg, cfg_lock, status, stop_event),
            daemon=True,
        ),
    ]
    for thread in threads:
        thread.start()

    control_server = ControlServer(cfg, cfg_lock, loop, controller, reload_event, status)
    control_server.start()

    try:
        loop.run(stop_event)
    finally:
        stop_event.set()
        controller.on_change = None
        controller.stop()
        control_server.stop()
        for thread in threads:
            thread.join(timeout=5)
        html_viewer.close(wait=True)
        mpv.stop()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
