"""Encoder, resize and quantization settings."""

from enum import Enum

from PIL import Image
from pydantic import BaseModel, ConfigDict, Field, model_validator

from rimage.settings import DEFAULT_QUALITY


class Codec(str, Enum):
    JPEG = "jpeg"
    MOZJPEG = "mozjpeg"
    PNG = "png"
    OXIPNG = "oxipng"
    WEBP = "webp"
    AVIF = "avif"
    PPM = "ppm"

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self]

    @property
    def pil_format(self) -> str:
        return _PIL_FORMATS[self]


_EXTENSIONS = {
    Codec.JPEG: "jpg",
    Codec.MOZJPEG: "jpg",
    Codec.PNG: "png",
    Codec.OXIPNG: "png",
    Codec.WEBP: "webp",
    Codec.AVIF: "avif",
    Codec.PPM: "ppm",
}

_PIL_FORMATS = {
    Codec.JPEG: "JPEG",
    Codec.MOZJPEG: "JPEG",
    Codec.PNG: "PNG",
    Codec.OXIPNG: "PNG",
    Codec.WEBP: "WEBP",
    Codec.AVIF: "AVIF",
    Codec.PPM: "PPM",
}


class ResizeFilter(str, Enum):
    POINT = "point"
    TRIANGLE = "triangle"
    CATROM = "catrom"
    MITCHELL = "mitchell"
    LANCZOS3 = "lanczos3"

    @property
    def resample(self) -> Image.Resampling:
        return _RESAMPLING[self]


# Pillow has no Mitchell filter; bicubic is the closest cubic kernel.
_RESAMPLING = {
    ResizeFilter.POINT: Image.Resampling.NEAREST,
    ResizeFilter.TRIANGLE: Image.Resampling.BILINEAR,
    ResizeFilter.CATROM: Image.Resampling.BICUBIC,
    ResizeFilter.MITCHELL: Image.Resampling.BICUBIC,
    ResizeFilter.LANCZOS3: Image.Resampling.LANCZOS,
}


class ResizeConfig(BaseModel):
    """Target size; a missing dimension follows the source aspect ratio."""

    model_config = ConfigDict(frozen=True)

    filter: ResizeFilter = ResizeFilter.LANCZOS3
    width: int | None = Field(default=None, ge=1)
    height: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _require_dimension(self) -> "ResizeConfig":
        if self.width is None and self.height is None:
            msg = "resize needs a width, a height, or both"
            raise ValueError(msg)
        return self

    def target_size(self, size: tuple[int, int]) -> tuple[int, int]:
        """
        Compute the output size for an image of ``size``.

        Examples:
            >>> ResizeConfig(width=100).target_size((400, 200))
            (100, 50)

        """
        src_w, src_h = size
        if self.width is not None and self.height is not None:
            return self.width, self.height
        if self.width is not None:
            return self.width, max(1, round(src_h * self.width / src_w))
        assert self.height is not None  # noqa: S101
        return max(1, round(src_w * self.height / src_h)), self.height


class QuantizationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    quality: int = Field(default=75, ge=1, le=100)
    dithering: float | None = Field(default=None, ge=0.0, le=1.0)

    @property
    def colors(self) -> int:
        """Palette size derived from quality (2..256)."""
        return 2 + round(254 * (self.quality - 1) / 99)

    @property
    def dither(self) -> Image.Dither:
        if self.dithering:
            return Image.Dither.FLOYDSTEINBERG
        return Image.Dither.NONE


class EncoderConfig(BaseModel):
    """Everything needed to turn one decoded image into an output file."""

    model_config = ConfigDict(frozen=True)

    codec: Codec = Codec.MOZJPEG
    quality: float = Field(default=DEFAULT_QUALITY, ge=1, le=100)
    resize: ResizeConfig | None = None
    quantization: QuantizationConfig | None = None

    def save_options(self) -> dict[str, object]:
        """Keyword arguments for ``Image.save`` for this codec."""
        quality = round(self.quality)
        match self.codec:
            case Codec.JPEG:
                return {"quality": quality}
            case Codec.MOZJPEG:
                return {"quality": quality, "optimize": True, "progressive": True}
            case Codec.PNG:
                return {}
            case Codec.OXIPNG:
                return {"optimize": True, "compress_level": 9}
            case Codec.WEBP:
                return {"quality": quality, "method": 6}
            case Codec.AVIF:
                return {"quality": quality}
            case _:
                return {}
