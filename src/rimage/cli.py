"""
rimage: convert, optimize and resize images, then carry their metadata over with ExifTool.

Requirements:
 - ExifTool installed and available in PATH (unless --no-copy-metadata is used).

Metadata is copied through a single ExifTool process kept open for the whole batch:
    exiftool -overwrite_original_in_place -tagsFromFile input.png output.jpg
"""
# ruff: noqa: PLR0913

from pathlib import Path
from typing import Annotated

from cyclopts import App, Parameter, validators
from loguru import logger
from pydantic import ValidationError

from rimage.config import Codec, EncoderConfig, QuantizationConfig, ResizeConfig, ResizeFilter
from rimage.logs import LogLevel, setup_logging
from rimage.metadata.errors import SpawnFault
from rimage.metadata.jobs import Ack
from rimage.metadata.supervisor import copy_metadata
from rimage.optimize import OptimizeResult, optimize_files
from rimage.paths import build_jobs, collect_files, get_paths
from rimage.settings import (
    DEFAULT_EXIFTOOL,
    DEFAULT_EXIFTOOL_TIMEOUT,
    DEFAULT_QUALITY,
    DEFAULT_THREADS,
)

__version__ = "0.1.0"
app = App(
    name="rimage",
    version=__version__,
)


def build_encoder_config(
    codec: Codec,
    quality: float,
    *,
    quantization: int | None = None,
    dithering: float | None = None,
    width: int | None = None,
    height: int | None = None,
    resize_filter: ResizeFilter = ResizeFilter.LANCZOS3,
) -> EncoderConfig:
    """
    Assemble an EncoderConfig from CLI values.

    Dithering is given in percent on the command line and stored as 0.0-1.0.
    Either quantization option enables quantization; either dimension enables resizing.

    Raises:
        pydantic.ValidationError: a value is out of range.

    """
    quant = None
    if quantization is not None or dithering is not None:
        quant = QuantizationConfig(
            quality=quantization if quantization is not None else 75,
            dithering=dithering / 100 if dithering is not None else None,
        )
    resize = None
    if width is not None or height is not None:
        resize = ResizeConfig(filter=resize_filter, width=width, height=height)
    return EncoderConfig(codec=codec, quality=quality, resize=resize, quantization=quant)


def select_metadata_jobs(
    results: list[OptimizeResult],
    *,
    backup: bool,
) -> list[tuple[Path, Path]]:
    """Pick the outputs whose source metadata can still be read."""
    pairs: list[tuple[Path, Path]] = []
    for result in results:
        if not result.ok:
            continue
        if not backup and result.source.absolute() == result.destination.absolute():
            logger.warning(
                "metadata_copy_skipped_source_overwritten",
                file=result.source.name,
                hint="Use --backup to keep the original next to the output",
            )
            continue
        pairs.append((result.source, result.destination))
    return pairs


def run_metadata_copy(
    pairs: list[tuple[Path, Path]],
    *,
    backup: bool,
    executable: str,
    timeout: float | None,
) -> list[Ack]:
    if not pairs:
        return []
    jobs = build_jobs(pairs, backup=backup)
    try:
        return copy_metadata(jobs, executable=executable, timeout=timeout)
    except SpawnFault as exc:
        logger.error("exiftool_unavailable", error=str(exc))
        raise SystemExit(1) from exc
    except ValueError as exc:
        logger.error("invalid_exiftool_options", error=str(exc))
        raise SystemExit(1) from exc


@app.default
def optimize(
    files: list[Path],
    /,
    *,
    quality: Annotated[
        float,
        Parameter(
            name=("--quality", "-q"),
            validator=validators.Number(gte=1, lte=100),
            help="Optimization image quality [range: 1 - 100]",
        ),
    ] = DEFAULT_QUALITY,
    codec: Annotated[
        Codec,
        Parameter(name=("--codec", "-f"), help="Image codec to use"),
    ] = Codec.MOZJPEG,
    output: Annotated[
        Path | None,
        Parameter(
            name=("--output", "-o"),
            help="Write output file(s) to this directory",
        ),
    ] = None,
    recursive: Annotated[
        bool,
        Parameter(
            name=("--recursive", "-r"),
            negative=(),
            help="Expand directories recursively and keep the folder structure under --output",
        ),
    ] = False,
    suffix: Annotated[
        str | None,
        Parameter(name=("--suffix", "-s"), help="Append a suffix to output file name(s)"),
    ] = None,
    backup: Annotated[
        bool,
        Parameter(
            name=("--backup", "-b"),
            negative=(),
            help='Rename input file(s) to "<name>.backup" before writing output',
        ),
    ] = False,
    threads: Annotated[
        int,
        Parameter(
            name=("--threads", "-t"),
            validator=validators.Number(gte=1, lte=16),
            help="Number of threads to use [range: 1 - 16]",
        ),
    ] = min(DEFAULT_THREADS, 16),
    quantization: Annotated[
        int | None,
        Parameter(
            name=("--quantization",),
            help="Enable quantization with this quality [range: 1 - 100]",
        ),
    ] = None,
    dithering: Annotated[
        float | None,
        Parameter(
            name=("--dithering",),
            help="Enable dithering with this level [range: 0 - 100]",
        ),
    ] = None,
    width: Annotated[
        int | None,
        Parameter(name=("--width",), help="Resize image to this width"),
    ] = None,
    height: Annotated[
        int | None,
        Parameter(name=("--height",), help="Resize image to this height"),
    ] = None,
    resize_filter: Annotated[
        ResizeFilter,
        Parameter(name=("--filter",), help="Filter used for image resizing"),
    ] = ResizeFilter.LANCZOS3,
    copy_metadata_: Annotated[
        bool,
        Parameter(
            name=("--copy-metadata",),
            negative="--no-copy-metadata",
            help="Copy metadata from each input to its output with ExifTool",
        ),
    ] = True,
    exiftool: Annotated[
        str,
        Parameter(name=("--exiftool",), help="ExifTool executable name or path"),
    ] = DEFAULT_EXIFTOOL,
    exiftool_timeout: Annotated[
        float,
        Parameter(
            name=("--exiftool-timeout",),
            validator=validators.Number(gte=0),
            help="Seconds to wait for ExifTool per file (0 waits forever)",
        ),
    ] = DEFAULT_EXIFTOOL_TIMEOUT,
    file_log_level: Annotated[
        LogLevel,
        Parameter(name="--file-log-level", help="Log level for file (use 'OFF' to disable)"),
    ] = "OFF",
    log_folder: Annotated[
        Path,
        Parameter(name=("--log-folder",), help="Folder where log files are stored"),
    ] = Path("logs"),
    console_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--console-log-level",
            help="Log level for console (use 'OFF' to disable)",
        ),
    ] = "INFO",
) -> None:
    """
    Convert, optimize and resize images, preserving their metadata.

    Exit status: returns 1 if no images are found, ExifTool cannot be started, or any
    file fails to optimize or to receive its metadata.

    Examples:
        rimage photo.png
        rimage ./photos -r -o ./optimized -f webp -q 80
        rimage *.jpg --width 1280 --suffix _small --backup

    """
    setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level,
        log_folder=log_folder,
    )
    logger.info(
        "starting_rimage",
        files=[str(p) for p in files],
        codec=codec.value,
        quality=quality,
        output=str(output) if output else None,
        recursive=recursive,
        backup=backup,
        threads=threads,
        copy_metadata=copy_metadata_,
    )

    try:
        config = build_encoder_config(
            codec,
            quality,
            quantization=quantization,
            dithering=dithering,
            width=width,
            height=height,
            resize_filter=resize_filter,
        )
    except ValidationError as exc:
        logger.error("invalid_options", error=str(exc))
        raise SystemExit(1) from exc

    image_files = collect_files(files, recursive=recursive)
    if not image_files:
        logger.error("no_image_files_found", inputs=[str(p) for p in files])
        raise SystemExit(1)
    logger.info("image_files_discovered", count=len(image_files))

    pairs = get_paths(image_files, output, suffix, codec.extension, recursive=recursive)
    results = optimize_files(pairs, config, backup=backup, threads=threads)
    optimize_failures = [r for r in results if not r.ok]

    acks: list[Ack] = []
    if copy_metadata_:
        acks = run_metadata_copy(
            select_metadata_jobs(results, backup=backup),
            backup=backup,
            executable=exiftool,
            timeout=exiftool_timeout or None,
        )
    metadata_failures = [a for a in acks if not a.ok]

    logger.info(
        "processing_summary",
        total_files=len(results),
        optimized=len(results) - len(optimize_failures),
        optimize_failed=len(optimize_failures),
        metadata_copied=len(acks) - len(metadata_failures),
        metadata_failed=len(metadata_failures),
        bytes_in=sum(r.bytes_in for r in results),
        bytes_out=sum(r.bytes_out for r in results),
    )
    if optimize_failures:
        logger.error("files_failed_to_optimize", files=[str(r.source) for r in optimize_failures])
    if metadata_failures:
        logger.error(
            "files_failed_metadata_copy",
            files=[str(a.job.source) for a in metadata_failures],
        )
    if optimize_failures or metadata_failures:
        raise SystemExit(1)


if __name__ == "__main__":
    app()
