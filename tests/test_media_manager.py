from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from PIL import Image

import media_manager
from config_manager import LoadOptions
from media_errors import DecodeError, InvalidKeyError, NotFoundError
from media_manager import SizePreset, load_image, resolve_key, stat_source

KEY = "0123456789abcdef0123456789abcdef"


@pytest.mark.parametrize(
    "key, expected",
    [
        (KEY, Path("01") / KEY),
        (f"{KEY}.png", Path("01") / f"{KEY}.png"),
        ("ABCDEF0123456789ABCDEF0123456789.mp4", Path("AB") / "ABCDEF0123456789ABCDEF0123456789.mp4"),
        (f"{KEY}.JPEG2", Path("01") / f"{KEY}.JPEG2"),
    ],
)
def test_resolve_key_maps_into_shard_directory(tmp_path: Path, key: str, expected: Path) -> None:
    assert resolve_key(tmp_path, key) == tmp_path / expected


@pytest.mark.parametrize(
    "key",
    [
        "",
        KEY[:-1],
        KEY + "0",
        "g" + KEY[1:],
        f"{KEY}.",
        f"{KEY}.tar.gz",
        f"{KEY}.p-g",
        f"{KEY}./x",
        f"../{KEY}",
        f"{KEY}.pné",
        "../../../../etc/passwd",
    ],
)
def test_resolve_key_rejects_malformed_keys(tmp_path: Path, key: str) -> None:
    with pytest.raises(InvalidKeyError) as info:
        resolve_key(tmp_path, key)

    assert info.value.status == 404
    assert info.value.code == "invalid_key"


def test_size_preset_from_query() -> None:
    assert SizePreset.from_query("Small") is SizePreset.SMALL
    assert SizePreset.from_query("large") is SizePreset.LARGE
    assert SizePreset.from_query("medium") is SizePreset.MEDIUM
    assert SizePreset.from_query(None) is SizePreset.MEDIUM
    assert SizePreset.from_query("huge") is SizePreset.MEDIUM
    assert SizePreset.SMALL.dimensions == (120, 120)
    assert SizePreset.MEDIUM.dimensions == (300, 300)
    assert SizePreset.LARGE.dimensions == (600, 600)


def test_stat_source_reports_missing_files(tmp_path: Path) -> None:
    with pytest.raises(NotFoundError):
        stat_source(tmp_path / "nothing.png")


def test_stat_source_rejects_directories(tmp_path: Path) -> None:
    with pytest.raises(NotFoundError):
        stat_source(tmp_path)


def test_stat_source_returns_metadata(tmp_path: Path) -> None:
    path = tmp_path / "file.bin"
    path.write_bytes(b"12345")

    source = stat_source(path)

    assert source.size == 5
    assert source.mtime == path.stat().st_mtime


def test_loads_plain_image_fully(tmp_path: Path) -> None:
    path = tmp_path / f"{KEY}.png"
    Image.new("RGB", (40, 20), (10, 200, 30)).save(path)

    image = load_image(path, LoadOptions())

    assert image.size == (40, 20)
    assert image.getpixel((0, 0)) == (10, 200, 30)


def test_keeps_sixteen_bit_pixel_layout(tmp_path: Path) -> None:
    path = tmp_path / f"{KEY}.png"
    Image.fromarray(np.full((8, 8), 40000, dtype=np.uint16)).save(path)

    image = load_image(path, LoadOptions())

    assert image.mode in ("I", "I;16")
    assert int(np.asarray(image)[0, 0]) == 40000


def test_extensionless_key_is_decoded_by_content(tmp_path: Path) -> None:
    path = tmp_path / KEY
    Image.new("RGB", (5, 5), "white").save(path, format="PNG")

    assert load_image(path, LoadOptions()).size == (5, 5)


def test_garbage_bytes_raise_decode_error(tmp_path: Path) -> None:
    path = tmp_path / f"{KEY}.jpg"
    path.write_bytes(b"definitely not an image")

    with pytest.raises(DecodeError) as info:
        load_image(path, LoadOptions())

    assert info.value.status == 500
    assert info.value.code == "decode_failed"


def test_truncated_image_raises_decode_error(tmp_path: Path) -> None:
    path = tmp_path / f"{KEY}.png"
    Image.new("RGB", (64, 64), "red").save(path)
    path.write_bytes(path.read_bytes()[:60])

    with pytest.raises(DecodeError):
        load_image(path, LoadOptions())


class _FakePSD:
    def __init__(self, preview, width: int, height: int) -> None:
        self._preview = preview
        self.width = width
        self.height = height

    def topil(self):
        return self._preview


def _patch_psd(monkeypatch, psd) -> None:
    class _Opener:
        @staticmethod
        def open(path):
            return psd

    monkeypatch.setattr(media_manager, "PSDImage", _Opener)


def test_psd_uses_merged_preview_as_rgba(tmp_path: Path, monkeypatch) -> None:
    preview = Image.new("RGB", (30, 12), (1, 2, 3))
    _patch_psd(monkeypatch, _FakePSD(preview, 30, 12))

    image = load_image(tmp_path / f"{KEY}.psd", LoadOptions())

    assert image.mode == "RGBA"
    assert image.size == (30, 12)
    assert image.getpixel((0, 0)) == (1, 2, 3, 255)


def test_psd_without_preview_raises_decode_error(tmp_path: Path, monkeypatch) -> None:
    _patch_psd(monkeypatch, _FakePSD(None, 30, 12))

    with pytest.raises(DecodeError, match="no merged preview"):
        load_image(tmp_path / f"{KEY}.psd", LoadOptions())


def test_psd_preview_size_mismatch_raises_decode_error(tmp_path: Path, monkeypatch) -> None:
    _patch_psd(monkeypatch, _FakePSD(Image.new("RGB", (10, 10)), 30, 12))

    with pytest.raises(DecodeError, match="header says 30x12"):
        load_image(tmp_path / f"{KEY}.psd", LoadOptions())


def test_corrupt_psd_raises_decode_error(tmp_path: Path) -> None:
    path = tmp_path / f"{KEY}.psd"
    path.write_bytes(b"8BPS\x00\x01garbage")

    with pytest.raises(DecodeError):
        load_image(path, LoadOptions())


@pytest.mark.parametrize("name", [f"{KEY}.mp4", f"{KEY}.MP4", f"{KEY}.webm", f"{KEY}.mov"])
def test_video_extensions_use_keyframe_selection(tmp_path: Path, monkeypatch, name: str) -> None:
    calls = []
    sentinel = Image.new("RGB", (2, 2))

    def _fake_video_loader(path, options, *, ffmpeg_path=None, ffprobe_path=None):
        calls.append((path, options, ffmpeg_path, ffprobe_path))
        return sentinel

    monkeypatch.setattr(media_manager, "load_image_from_video", _fake_video_loader)
    options = LoadOptions(max_keyframes=3)

    result = load_image(tmp_path / name, options, ffmpeg_path="/usr/bin/ffmpeg")

    assert result is sentinel
    assert calls == [(tmp_path / name, options, "/usr/bin/ffmpeg", None)]


def test_other_extensions_do_not_touch_video_pipeline(tmp_path: Path, monkeypatch) -> None:
    def _fail(*args, **kwargs):
        raise AssertionError("video loader should not be used")

    monkeypatch.setattr(media_manager, "load_image_from_video", _fail)
    path = tmp_path / f"{KEY}.gif"
    Image.new("P", (4, 4)).save(path)

    assert load_image(path, LoadOptions()).size == (4, 4)
