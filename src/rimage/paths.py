"""Input discovery and output path derivation."""

import glob
from collections.abc import Iterable
from itertools import chain
from pathlib import Path

from loguru import logger

from rimage.metadata.jobs import BACKUP_SUFFIX, Job

IMAGE_EXTENSIONS = {
    ".jpg",
    ".jpeg",
    ".png",
    ".webp",
    ".avif",
    ".bmp",
    ".gif",
    ".tif",
    ".tiff",
    ".ppm",
    ".pgm",
    ".pbm",
    ".qoi",
    ".dng",
}

_GLOB_CHARS = frozenset("*?[")


def _expand_pattern(value: Path) -> list[Path]:
    """Expand a glob pattern the shell left alone; keep the path when nothing matches."""
    text = str(value)
    if not _GLOB_CHARS.intersection(text):
        return [value]
    matches = sorted(glob.glob(text, recursive=True))  # noqa: PTH207
    return [Path(m) for m in matches] if matches else [value]


def _expand_directory(directory: Path, *, recursive: bool) -> list[Path]:
    candidates = directory.rglob("*") if recursive else directory.glob("*")
    return sorted(
        p
        for p in candidates
        if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS
    )


def collect_files(inputs: Iterable[Path], *, recursive: bool = False) -> list[Path]:
    """
    Resolve CLI inputs into a list of image files.

    - Glob patterns are expanded (``*.png`` when the shell did not do it)
    - Directories are expanded to the images they contain (honoring ``recursive``)
    - Backups left by an earlier ``--backup`` run are ignored
    - Order is preserved and duplicates removed
    """
    files: list[Path] = []
    seen: set[Path] = set()
    for path in chain.from_iterable(_expand_pattern(Path(p)) for p in inputs):
        expanded = _expand_directory(path, recursive=recursive) if path.is_dir() else [path]
        for candidate in expanded:
            if candidate.name.endswith(BACKUP_SUFFIX):
                logger.debug("skipping_backup_file", path=str(candidate))
                continue
            key = candidate.absolute()
            if key not in seen:
                seen.add(key)
                files.append(candidate)
    return files


def get_common_path(paths: list[Path]) -> Path | None:
    """
    Return the longest leading run of path components shared by every path.

    Examples:
        >>> get_common_path([Path("a/b/c.png"), Path("a/b/d/e.png")])
        PosixPath('a/b')

    """
    if not paths:
        return None

    common = paths[0].parts
    for path in paths[1:]:
        shared = 0
        for left, right in zip(common, path.parts, strict=False):
            if left != right:
                break
            shared += 1
        common = common[:shared]
    return Path(*common) if common else Path()


def get_paths(
    files: list[Path],
    out_dir: Path | None,
    suffix: str | None,
    extension: str,
    *,
    recursive: bool = False,
) -> list[tuple[Path, Path]]:
    """
    Pair every input with the path its optimized output is written to.

    Args:
        files: Input files
        out_dir: Output directory; outputs go next to their inputs when ``None``
        suffix: Appended to the file stem (``photo`` -> ``photo_min``)
        extension: Extension of the target codec, without the dot
        recursive: Mirror each input's folder, relative to the inputs' common path,
            under ``out_dir``

    Returns:
        ``(source, destination)`` pairs in input order.

    """
    common = get_common_path([p.parent for p in files]) if recursive else None
    pairs: list[tuple[Path, Path]] = []
    for path in files:
        stem = path.stem or "optimized_image"
        if out_dir is None:
            folder = path.parent
        elif common is not None:
            try:
                folder = out_dir / path.parent.relative_to(common)
            except ValueError:
                folder = out_dir
        else:
            folder = out_dir
        pairs.append((path, folder / f"{stem}{suffix or ''}.{extension}"))
    return pairs


def build_jobs(pairs: Iterable[tuple[Path, Path]], *, backup: bool) -> list[Job]:
    return [Job(source=src, destination=dst, backup=backup) for src, dst in pairs]
