import json
import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from mural import (
    build_manifest,
    delete_override,
    infer_media_type,
    load_media_config,
    resolve,
    resolve_manifest,
    set_defaults,
    upsert_override,
)

MONDAY_NOON = datetime(2026, 10, 19, 12, 0)


class ResolveTests(unittest.TestCase):
    def test_override_fields_take_precedence_over_defaults(self) -> None:
        playlist = resolve(
            ["a.png", "b.png"],
            [{"src": "a.png", "imageDurationMs": 3000, "fitMode": "crop"}],
            {"imageDurationMs": 8000, "bgColor": "#112233"},
            MONDAY_NOON,
        )

        first, second = playlist.items
        self.assertEqual(first.image_duration_ms, 3000)
        self.assertEqual(first.fit_mode, "crop")
        self.assertEqual(first.bg_color, "#112233")
        self.assertEqual(second.image_duration_ms, 8000)
        self.assertEqual(second.fit_mode, "fit")

    def test_overrides_accept_mapping_by_src(self) -> None:
        playlist = resolve(["a.png"], {"a.png": {"imageDurationMs": 1234}}, {}, MONDAY_NOON)

        self.assertEqual(playlist.items[0].image_duration_ms, 1234)

    def test_type_is_inferred_from_extension(self) -> None:
        playlist = resolve(["Clip.MP4", "page.htm", "photo.JPEG"], [], {}, MONDAY_NOON)

        types = {item.src: item.type for item in playlist.items}
        self.assertEqual(types, {"Clip.MP4": "video", "page.htm": "html", "photo.JPEG": "image"})

    def test_unknown_extension_is_excluded_even_with_override(self) -> None:
        playlist = resolve(["notes.txt", "a.png"], [{"src": "notes.txt", "type": "image"}], {}, MONDAY_NOON)

        self.assertEqual([item.src for item in playlist.items], ["a.png"])

    def test_reserved_and_hidden_files_are_skipped(self) -> None:
        playlist = resolve(["media.json", ".hidden.png", "sub/dir.png", "ok.png"], [], {}, MONDAY_NOON)

        self.assertEqual([item.src for item in playlist.items], ["ok.png"])

    def test_inventory_is_sorted_case_insensitively(self) -> None:
        playlist = resolve(["b.png", "C.png", "a.png", "B.png"], [], {}, MONDAY_NOON)

        self.assertEqual([item.src for item in playlist.items], ["a.png", "B.png", "b.png", "C.png"])

    def test_schedule_filters_items(self) -> None:
        playlist = resolve(
            ["day.png", "night.png"],
            [{"src": "night.png", "schedule": {"start": "22:00", "end": "06:00"}}],
            {},
            MONDAY_NOON,
        )

        self.assertEqual([item.src for item in playlist.items], ["day.png"])

    def test_defaults_schedule_applies_when_item_has_none(self) -> None:
        playlist = resolve(
            ["a.png", "b.png"],
            [{"src": "b.png", "schedule": {"days": ["mon"]}}],
            {"schedule": {"days": ["sat", "sun"]}},
            MONDAY_NOON,
        )

        self.assertEqual([item.src for item in playlist.items], ["b.png"])

    def test_invalid_values_fall_back_to_defaults(self) -> None:
        playlist = resolve(
            ["a.mp4"],
            [{"src": "a.mp4", "imageDurationMs": -5, "fitMode": "stretch", "volume": 7, "type": "audio"}],
            {"imageDurationMs": "oops", "volume": 0.4},
            MONDAY_NOON,
        )

        item = playlist.items[0]
        self.assertEqual(item.type, "video")
        self.assertEqual(item.image_duration_ms, 10000)
        self.assertEqual(item.fit_mode, "fit")
        self.assertEqual(item.volume, 1.0)

    def test_resolution_is_idempotent(self) -> None:
        args = (["b.mp4", "a.png"], [{"src": "a.png", "mute": False}], {"bgColor": "#fff"}, MONDAY_NOON)

        first = resolve(*args)
        second = resolve(*args)

        self.assertEqual(first, second)
        self.assertEqual(first.signature, second.signature)

    def test_failure_yields_empty_playlist(self) -> None:
        with self.assertLogs(level="ERROR"):
            playlist = resolve(42, [], {}, MONDAY_NOON)

        self.assertEqual(playlist.items, ())


class ResolveManifestTests(unittest.TestCase):
    def test_inventory_shape(self) -> None:
        manifest = {
            "defaults": {"mute": False},
            "overrides": [{"src": "a.mp4", "volume": 0.5}],
            "files": ["a.mp4", "b.png"],
        }

        playlist = resolve_manifest(manifest, MONDAY_NOON)

        self.assertEqual([item.src for item in playlist.items], ["a.mp4", "b.png"])
        self.assertFalse(playlist.items[0].mute)
        self.assertEqual(playlist.items[0].volume, 0.5)

    def test_legacy_items_keep_order_and_explicit_type(self) -> None:
        manifest = {
            "defaults": {},
            "items": [
                {"src": "z.png"},
                {"src": "stream", "type": "video"},
                {"src": "a.html"},
                {"src": "skip.txt"},
            ],
        }

        playlist = resolve_manifest(manifest, MONDAY_NOON)

        self.assertEqual([item.src for item in playlist.items], ["z.png", "stream", "a.html"])
        self.assertEqual([item.type for item in playlist.items], ["image", "video", "html"])

    def test_inventory_wins_over_legacy_items(self) -> None:
        manifest = {"files": ["a.png"], "items": [{"src": "b.png"}]}

        playlist = resolve_manifest(manifest, MONDAY_NOON)

        self.assertEqual([item.src for item in playlist.items], ["a.png"])

    def test_non_object_manifest_is_empty(self) -> None:
        with self.assertLogs(level="WARNING"):
            playlist = resolve_manifest(["a.png"], MONDAY_NOON)

        self.assertEqual(len(playlist), 0)

    def test_infer_media_type(self) -> None:
        self.assertEqual(infer_media_type("x.webm"), "video")
        self.assertEqual(infer_media_type("x.svg"), "image")
        self.assertIsNone(infer_media_type("x"))


class MediaStoreTests(unittest.TestCase):
    def test_build_manifest_lists_supported_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            media_dir = Path(tmpdir)
            (media_dir / "b.mp4").write_bytes(b"v")
            (media_dir / "A.png").write_bytes(b"i")
            (media_dir / "notes.txt").write_text("skip")
            (media_dir / ".secret.png").write_bytes(b"i")
            (media_dir / "nested").mkdir()
            (media_dir / "media.json").write_text(
                json.dumps({"defaults": {"mute": False}, "items": [{"src": "b.mp4", "volume": 0.2}]}),
                encoding="utf-8",
            )

            manifest = build_manifest(str(media_dir))

            self.assertEqual(manifest["files"], ["A.png", "b.mp4"])
            self.assertEqual(manifest["defaults"], {"mute": False})
            self.assertEqual(manifest["overrides"], [{"src": "b.mp4", "volume": 0.2}])

    def test_corrupt_media_config_reads_as_empty(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            (Path(tmpdir) / "media.json").write_text("{not json", encoding="utf-8")

            with self.assertLogs(level="WARNING"):
                media_cfg = load_media_config(tmpdir)

            self.assertEqual(media_cfg, {"defaults": {}, "items": []})

    def test_override_upsert_and_delete(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            upsert_override(tmpdir, "a.png", {"imageDurationMs": 2000})
            updated = upsert_override(tmpdir, "a.png", {"fitMode": "fill"})
            upsert_override(tmpdir, "b.png", {"mute": True})

            self.assertEqual(updated, {"src": "a.png", "imageDurationMs": 2000, "fitMode": "fill"})
            self.assertEqual(len(load_media_config(tmpdir)["items"]), 2)

            self.assertTrue(delete_override(tmpdir, "a.png"))
            self.assertFalse(delete_override(tmpdir, "a.png"))
            self.assertEqual(load_media_config(tmpdir)["items"], [{"src": "b.png", "mute": True}])

    def test_set_defaults_replaces_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            set_defaults(tmpdir, {"imageDurationMs": 5000})
            set_defaults(tmpdir, {"bgColor": "#ffffff"})

            self.assertEqual(load_media_config(tmpdir)["defaults"], {"bgColor": "#ffffff"})


if __name__ == "__main__":
    unittest.main()
