"""Image preprocessing pipeline.

Turns base64 image bytes from a camera or gallery picker into the
[1, H, W, 3] float32 tensor the classifier expects: decode to RGBA, drop
alpha, scale to [0, 1], bilinear-resize to the model resolution, and add the
batch axis.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from snapclassify.errors import AllocationError, DecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from snapclassify.ml.tensors import Tensor, TensorRegistry

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/jpeg"
DEFAULT_TARGET_SIZE: tuple[int, int] = (224, 224)

# MIME type -> Pillow decoder name
SUPPORTED_FORMATS: dict[str, str] = {
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/png": "PNG",
}

# Content types that say nothing about the encoding; treated as absent.
GENERIC_MIME_TYPES = frozenset({"application/octet-stream", "binary/octet-stream", "application/unknown"})


@dataclass(frozen=True)
class RawImage:
    """Decoded pixel grid: RGBA bytes, interleaved, row-major."""

    width: int
    height: int
    data: NDArray[np.uint8]


def split_data_url(image_b64: str) -> tuple[str, str | None]:
    """Split an optional ``data:<mime>;base64,`` prefix from base64 text.

    Returns:
        The bare base64 payload and the MIME type from the prefix, if any.
    """
    if not image_b64.startswith("data:"):
        return image_b64, None
    header, sep, payload = image_b64.partition(",")
    if not sep:
        raise DecodeError("Malformed data URL: missing ',' separator")
    mime = header[len("data:") :].split(";", 1)[0].strip() or None
    return payload, mime


def resize_bilinear(image: NDArray[np.float32], size: tuple[int, int]) -> NDArray[np.float32]:
    """Resize an HxWxC array to ``size`` (height, width) with bilinear sampling.

    Uses corner-anchored sampling (source = dest * in / out) without
    half-pixel centers, so a constant field stays constant.
    """
    in_h, in_w = image.shape[:2]
    out_h, out_w = size

    ys = np.arange(out_h, dtype=np.float32) * (in_h / out_h)
    xs = np.arange(out_w, dtype=np.float32) * (in_w / out_w)
    y0 = np.minimum(np.floor(ys).astype(np.intp), in_h - 1)
    x0 = np.minimum(np.floor(xs).astype(np.intp), in_w - 1)
    y1 = np.minimum(y0 + 1, in_h - 1)
    x1 = np.minimum(x0 + 1, in_w - 1)
    wy = (ys - y0)[:, None, None]
    wx = (xs - x0)[None, :, None]

    top = image[y0][:, x0] * (1 - wx) + image[y0][:, x1] * wx
    bottom = image[y1][:, x0] * (1 - wx) + image[y1][:, x1] * wx
    resized = top * (1 - wy) + bottom * wy
    return np.clip(resized, 0.0, 1.0).astype(np.float32, copy=False)


class ImagePreprocessor:
    """Decodes and normalizes images into tracked model-input tensors."""

    def __init__(
        self,
        registry: TensorRegistry,
        *,
        target_size: tuple[int, int] = DEFAULT_TARGET_SIZE,
        max_image_pixels: int | None = None,
    ) -> None:
        self._registry = registry
        self._target_size = target_size
        self._max_image_pixels = max_image_pixels

    @property
    def target_size(self) -> tuple[int, int]:
        return self._target_size

    def decode_and_normalize(self, image_b64: str, mime_type: str | None = None) -> Tensor:
        """Decode base64 image text into a [1, H, W, 3] float32 tensor in [0, 1].

        The returned tensor belongs to the caller, who must release it.

        Raises:
            DecodeError: If the bytes are not a valid image in a supported format.
            AllocationError: If an intermediate buffer cannot be allocated.
        """
        payload, prefix_mime = split_data_url(image_b64)
        try:
            # Producers often wrap base64 at 76 columns.
            image_bytes = base64.b64decode("".join(payload.split()), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError(f"Invalid base64 image data: {exc}") from exc

        raw = self.decode_image(image_bytes, mime_type or prefix_mime)
        return self.normalize(raw)

    def decode_image(self, image_bytes: bytes, mime_type: str | None = None) -> RawImage:
        """Decode compressed image bytes into an RGBA pixel grid.

        Raises:
            DecodeError: On empty, truncated, malformed, or unsupported input.
        """
        mime = (mime_type or "").split(";", 1)[0].strip().lower()
        if not mime or mime in GENERIC_MIME_TYPES:
            mime = DEFAULT_MIME_TYPE
        decoder = SUPPORTED_FORMATS.get(mime)
        if decoder is None:
            raise DecodeError(f"Unsupported image type: {mime}")
        if not image_bytes:
            raise DecodeError("Empty image data")

        try:
            with Image.open(io.BytesIO(image_bytes), formats=[decoder]) as img:
                width, height = img.size
                if self._max_image_pixels is not None and width * height > self._max_image_pixels:
                    raise DecodeError(
                        f"Image of {width}x{height} exceeds the limit of {self._max_image_pixels} pixels"
                    )
                img.load()
                rgba = img.convert("RGBA")
        except DecodeError:
            raise
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
            raise DecodeError(f"Cannot decode {decoder} image: {exc}") from exc
        except MemoryError as exc:
            raise AllocationError(f"Cannot allocate pixel buffer: {exc}") from exc

        data = np.asarray(rgba, dtype=np.uint8).reshape(-1)
        return RawImage(width=width, height=height, data=data)

    def normalize(self, raw: RawImage) -> Tensor:
        """Drop alpha, scale to [0, 1], resize, and add the batch axis."""
        pixels = raw.width * raw.height
        with self._registry.scope() as scope:
            flat = scope.allocate((pixels * 3,), dtype=np.float32)
            rgb = flat.data.reshape(pixels, 3)
            # 4-byte stride in, 3 floats out; alpha is read but never written
            np.divide(raw.data.reshape(pixels, 4)[:, :3], 255.0, out=rgb, dtype=np.float32)

            image = scope.track(flat.data.reshape(raw.height, raw.width, 3))
            try:
                resized = resize_bilinear(image.data, self._target_size)
            except MemoryError as exc:
                raise AllocationError(f"Cannot allocate resize buffer: {exc}") from exc

            batched = scope.track(resized[np.newaxis, ...])
            scope.keep(batched)

        logger.debug("Normalized %dx%d image to %s", raw.width, raw.height, batched.shape)
        return batched
