"""Image preprocessing pipeline.

Decodes raw bytes (any format Pillow understands), applies EXIF
orientation, converts to RGB and enforces size limits. ``prepare_input``
turns the decoded array into a model input tensor.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING, Literal

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from imageid.errors import InvalidImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

TensorLayout = Literal["nhwc", "nchw"]


class ImagePreprocessor:
    """Decodes uploaded or fetched image bytes into RGB arrays."""

    def __init__(self, max_image_pixels: int, max_file_size: int) -> None:
        self._max_image_pixels = max_image_pixels
        self._max_file_size = max_file_size

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 numpy array.

        Args:
            image_bytes: Raw file bytes (any supported format).

        Returns:
            HxWx3 RGB uint8 numpy array.

        Raises:
            InvalidImageError: If the image cannot be decoded or exceeds size limits.
        """
        if not image_bytes:
            raise InvalidImageError("Image is empty")
        if len(image_bytes) > self._max_file_size:
            raise InvalidImageError(f"Image exceeds {self._max_file_size} bytes")

        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                width, height = img.size
                if width * height > self._max_image_pixels:
                    raise InvalidImageError(f"Image is too large ({width}x{height} pixels)")
                oriented = ImageOps.exif_transpose(img)
                return np.asarray(oriented.convert("RGB"), dtype=np.uint8)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
            raise InvalidImageError(f"Could not decode image: {exc}") from exc


def prepare_input(image: NDArray[np.uint8], size: int, layout: TensorLayout = "nhwc") -> NDArray[np.float32]:
    """Centre-crop to a square, resize and scale pixels to [-1, 1].

    Args:
        image: HxWx3 RGB uint8 array.
        size: Side length of the square model input.
        layout: ``"nhwc"`` or ``"nchw"`` ordering of the returned tensor.

    Returns:
        Float32 tensor of shape (1, size, size, 3) or (1, 3, size, size).
    """
    fitted = ImageOps.fit(Image.fromarray(image), (size, size), method=Image.Resampling.BILINEAR)
    tensor = np.asarray(fitted, dtype=np.float32) / 127.5 - 1.0
    if layout == "nchw":
        tensor = tensor.transpose(2, 0, 1)
    return np.ascontiguousarray(tensor[np.newaxis, ...])
