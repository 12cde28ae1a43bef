"""Shared fixtures: a stay-open ExifTool stand-in and small test images."""

import json
import sys
from collections.abc import Callable
from pathlib import Path

import pytest
from PIL import Image

STUB_SOURCE = Path(__file__).with_name("stub_exiftool.py")


@pytest.fixture
def stub_exiftool(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Install the stub as an executable ``exiftool`` script and log its commands."""
    if sys.platform == "win32":
        pytest.skip("the stub relies on a shebang line")
    script = tmp_path / "bin" / "exiftool"
    script.parent.mkdir()
    script.write_text(f"#!{sys.executable}\n{STUB_SOURCE.read_text(encoding='utf-8')}")
    script.chmod(0o755)
    monkeypatch.setenv("STUB_LOG", str(tmp_path / "stub_commands.jsonl"))
    return script


@pytest.fixture
def stub_commands(tmp_path: Path) -> Callable[[], list[list[str]]]:
    """Return a reader for the commands the stub executed so far."""

    def read() -> list[list[str]]:
        log = tmp_path / "stub_commands.jsonl"
        if not log.exists():
            return []
        return [json.loads(line) for line in log.read_text(encoding="utf-8").splitlines()]

    return read


@pytest.fixture
def make_image(tmp_path: Path) -> Callable[..., Path]:
    """Create a small image file under ``tmp_path``."""

    def make(
        name: str = "sample.png",
        size: tuple[int, int] = (64, 48),
        mode: str = "RGB",
        color: tuple[int, ...] = (200, 80, 40),
    ) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        Image.new(mode, size, color).save(path)
        return path

    return make
