import json
import tempfile
import unittest
from pathlib import Path
from typing import Dict, Optional
from unittest.mock import patch

import requests

import mural
from mural import (
    EventLoop,
    RotationController,
    StatusState,
    fetch_manifest,
    load_config,
    media_base_url,
    media_location,
    poll_once,
)


class FakeResponse:
    def __init__(self, payload: object = None, error: Optional[Exception] = None) -> None:
        self._payload = payload
        self._error = error

    def raise_for_status(self) -> None:
        if self._error is not None:
            raise self._error

    def json(self) -> object:
        return self._payload


class FakeRequests:
    def __init__(self, response: Optional[FakeResponse] = None, get_error: Optional[Exception] = None) -> None:
        self._response = response or FakeResponse({})
        self._get_error = get_error
        self.calls = []

    def get(self, url: str, params: Dict[str, object], timeout: int) -> FakeResponse:
        self.calls.append({"url": url, "params": params, "timeout": timeout})
        if self._get_error is not None:
            raise self._get_error
        return self._response


class ConfigTests(unittest.TestCase):
    def test_load_config_resolves_relative_paths_from_config_dir(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            cfg_path = root / "config.json"
            cfg_path.write_text(
                json.dumps(
                    {
                        "media_dir": "./media",
                        "state_dir": "./state",
                        "log_file": "./logs/player.log",
                        "status_file": "./logs/status.json",
                        "ipc_path": "./runtime/mpv.sock",
                    }
                ),
                encoding="utf-8",
            )

            cfg = load_config(str(cfg_path))

            self.assertEqual(cfg["media_dir"], str((root / "media").absolute()))
            self.assertEqual(cfg["state_dir"], str((root / "state").absolute()))
            self.assertEqual(cfg["log_file"], str((root / "logs" / "player.log").absolute()))
            self.assertEqual(cfg["status_file"], str((root / "logs" / "status.json").absolute()))
            self.assertEqual(cfg["ipc_path"], str((root / "runtime" / "mpv.sock").absolute()))

    def test_load_config_fills_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            cfg_path = Path(tmpdir) / "config.json"
            cfg_path.write_text(json.dumps({"transition_ms": 150}), encoding="utf-8")

            cfg = load_config(str(cfg_path))

            self.assertEqual(cfg["transition_ms"], 150)
            self.assertEqual(cfg["reload_interval_sec"], 60)
            self.assertEqual(cfg["min_item_duration_ms"], 500)
            self.assertTrue(cfg["reset_on_reload"])
            self.assertEqual(cfg["state_dir"], str((Path(tmpdir) / "state").absolute()))

    def test_load_config_missing_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(FileNotFoundError):
                load_config(str(Path(tmpdir) / "missing.json"))


class MediaLocationTests(unittest.TestCase):
    def test_local_file_is_preferred(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            (Path(tmpdir) / "a b.png").write_bytes(b"i")
            cfg = {"media_dir": tmpdir, "manifest_url": "http://host:3001/api/manifest"}

            self.assertEqual(media_location(cfg, "a b.png"), str(Path(tmpdir) / "a b.png"))
            self.assertEqual(media_location(cfg, "missing.png"), "http://host:3001/media/missing.png")

    def test_media_base_url_is_quoted(self) -> None:
        cfg = {"media_base_url": "https://cdn.example.com/wall", "manifest_url": ""}

        self.assertEqual(media_base_url(cfg), "https://cdn.example.com/wall/")
        self.assertEqual(media_location(cfg, "a b.png"), "https://cdn.example.com/wall/a%20b.png")


class FetchManifestTests(unittest.TestCase):
    def test_fetch_sends_cache_buster(self) -> None:
        fake = FakeRequests(FakeResponse({"files": ["a.png"]}))
        cfg = {"manifest_url": "http://host/api/manifest", "request_timeout_sec": 7}

        with patch.object(mural, "requests", fake):
            manifest = fetch_manifest(cfg)

        self.assertEqual(manifest, {"files": ["a.png"]})
        self.assertEqual(fake.calls[0]["url"], "http://host/api/manifest")
        self.assertIn("_", fake.calls[0]["params"])
        self.assertEqual(fake.calls[0]["timeout"], 7)

    def test_fetch_raises_http_errors(self) -> None:
        fake = FakeRequests(FakeResponse({}, error=requests.HTTPError("500")))
        cfg = {"manifest_url": "http://host/api/manifest", "request_timeout_sec": 7}

        with patch.object(mural, "requests", fake):
            with self.assertRaises(requests.HTTPError):
                fetch_manifest(cfg)

    def test_fetch_rejects_non_object(self) -> None:
        fake = FakeRequests(FakeResponse(["a.png"]))
        cfg = {"manifest_url": "http://host/api/manifest", "request_timeout_sec": 7}

        with patch.object(mural, "requests", fake):
            with self.assertRaises(ValueError):
                fetch_manifest(cfg)

    def test_fetch_builds_from_media_dir_without_url(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            (Path(tmpdir) / "a.png").write_bytes(b"i")

            manifest = fetch_manifest({"manifest_url": "", "media_dir": tmpdir})

        self.assertEqual(manifest["files"], ["a.png"])


class PollTests(unittest.TestCase):
    def test_failed_poll_keeps_current_playlist(self) -> None:
        loop = EventLoop()
        controller = RotationController(loop)
        status = StatusState()
        fake = FakeRequests(get_error=requests.ConnectionError("offline"))
        cfg = {"manifest_url": "http://host/api/manifest", "request_timeout_sec": 1, "offline_fallback": False}

        with patch.object(mural, "requests", fake):
            with self.assertLogs(level="WARNING"):
                self.assertIsNone(poll_once(cfg, loop, controller, status))
                poll_once(cfg, loop, controller, status)

        self.assertEqual(loop.run_pending(), 0)
        self.assertEqual(status.snapshot()["consecutive_failures"], 2)
        self.assertIn("offline", status.snapshot()["last_poll_error"])

    def test_successful_poll_saves_state_and_posts_playlist(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            loop = EventLoop()
            controller = RotationController(loop)
            status = StatusState()
            fake = FakeRequests(FakeResponse({"files": ["a.png", "b.mp4"]}))
            cfg = {
                "manifest_url": "http://host/api/manifest",
                "request_timeout_sec": 1,
                "offline_fallback": True,
                "state_dir": tmpdir,
            }

            with patch.object(mural, "requests", fake):
                playlist = poll_once(cfg, loop, controller, status)

            self.assertEqual(len(playlist), 2)
            self.assertTrue((Path(tmpdir) / "manifest_last.json").exists())
            loop.run_pending()
            self.assertEqual(controller.current_item.src, "a.png")
            self.assertEqual(status.snapshot()["playlist_size"], 2)
            self.assertEqual(status.snapshot()["consecutive_failures"], 0)


if __name__ == "__main__":
    unittest.main()
