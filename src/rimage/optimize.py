"""Decode, resize, quantize and encode images."""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from loguru import logger
from PIL import Image, UnidentifiedImageError

from rimage.config import Codec, EncoderConfig, QuantizationConfig, ResizeConfig
from rimage.metadata.jobs import BACKUP_SUFFIX

# Formats that cannot carry an alpha channel.
_OPAQUE_CODECS = {Codec.JPEG, Codec.MOZJPEG, Codec.PPM}


@dataclass(frozen=True)
class OptimizeResult:
    source: Path
    destination: Path
    ok: bool
    error: str | None = None
    bytes_in: int = 0
    bytes_out: int = 0


def decode_image(image_path: Path) -> Image.Image:
    """Fully load an image with Pillow and detach it from the file handle."""
    with Image.open(image_path) as img:
        img.load()
        logger.debug("image_opened", format=img.format, mode=img.mode, size=img.size)
        return img.copy()


def resize_image(img: Image.Image, resize: ResizeConfig) -> Image.Image:
    size = resize.target_size(img.size)
    if size == img.size:
        return img
    logger.debug("resizing_image", source=img.size, target=size, filter=resize.filter.value)
    return img.resize(size, resize.filter.resample)


def quantize_image(img: Image.Image, quantization: QuantizationConfig) -> Image.Image:
    """Reduce ``img`` to a palette; alpha is kept when present."""
    has_alpha = img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info)
    source = img.convert("RGBA" if has_alpha else "RGB")
    method = Image.Quantize.FASTOCTREE if has_alpha else Image.Quantize.MEDIANCUT
    logger.debug(
        "quantizing_image",
        colors=quantization.colors,
        dither=quantization.dither.name,
    )
    return source.quantize(colors=quantization.colors, method=method, dither=quantization.dither)


def _prepare_mode(img: Image.Image, codec: Codec) -> Image.Image:
    if codec in _OPAQUE_CODECS:
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            alpha = img.convert("RGBA")
            bg = Image.new("RGBA", alpha.size, (255, 255, 255, 255))
            return Image.alpha_composite(bg, alpha).convert("RGB")
        if img.mode not in ("RGB", "L"):
            return img.convert("RGB")
        return img
    if codec in (Codec.WEBP, Codec.AVIF) and img.mode not in ("RGB", "RGBA"):
        return img.convert("RGBA" if "A" in img.getbands() or "transparency" in img.info else "RGB")
    return img


def encode_image(img: Image.Image, config: EncoderConfig, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    prepared = _prepare_mode(img, config.codec)
    prepared.save(destination, format=config.codec.pil_format, **config.save_options())


def backup_source(path: Path) -> Path:
    """Rename ``path`` to ``path + .backup`` and return the new location."""
    backup = path.with_name(path.name + BACKUP_SUFFIX)
    path.rename(backup)
    logger.debug("source_backed_up", backup=str(backup))
    return backup


def optimize_file(
    source: Path,
    destination: Path,
    config: EncoderConfig,
    *,
    backup: bool = False,
) -> OptimizeResult:
    """
    Optimize one image.

    The source is decoded first, then renamed to ``<name>.backup`` when ``backup``
    is set, so that an output written over the input path never destroys the
    original.
    """
    with logger.contextualize(file=source.name):
        try:
            bytes_in = source.stat().st_size
            img = decode_image(source)
            if backup:
                backup_source(source)
            if config.resize is not None:
                img = resize_image(img, config.resize)
            if config.quantization is not None:
                img = quantize_image(img, config.quantization)
            encode_image(img, config, destination)
            bytes_out = destination.stat().st_size
        except (OSError, ValueError, KeyError, UnidentifiedImageError) as exc:
            # KeyError: Pillow was built without an encoder for the codec.
            logger.exception("optimize_failed", error=str(exc), destination=str(destination))
            return OptimizeResult(source, destination, ok=False, error=str(exc))

        logger.info(
            "image_optimized",
            destination=str(destination),
            bytes_in=bytes_in,
            bytes_out=bytes_out,
            ratio=round(bytes_out / bytes_in, 3) if bytes_in else None,
        )
        return OptimizeResult(source, destination, ok=True, bytes_in=bytes_in, bytes_out=bytes_out)


def optimize_files(
    pairs: list[tuple[Path, Path]],
    config: EncoderConfig,
    *,
    backup: bool = False,
    threads: int = 1,
) -> list[OptimizeResult]:
    """Optimize every ``(source, destination)`` pair; results keep the input order."""
    if threads <= 1 or len(pairs) <= 1:
        return [optimize_file(src, dst, config, backup=backup) for src, dst in pairs]

    with ThreadPoolExecutor(max_workers=threads, thread_name_prefix="optimize") as pool:
        futures = [pool.submit(optimize_file, src, dst, config, backup=backup) for src, dst in pairs]
        return [future.result() for future in futures]
