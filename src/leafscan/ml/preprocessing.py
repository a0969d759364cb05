"""Image preprocessing: decoding and the crop/scale request policy.

Decoding turns whatever the caller hands over (encoded bytes, a Pillow image
or a numpy array) into an HxWx3 RGB uint8 array. ``apply_request`` then
resizes that array to the classifier's input size and produces an NCHW
float32 tensor.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, TypeAlias

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from leafscan.ml.errors import DecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from leafscan.ml.model_manager import ModelSpec

ImageInput: TypeAlias = "bytes | Image.Image | NDArray[np.uint8]"

IMAGENET_MEAN: tuple[float, float, float] = (0.485, 0.456, 0.406)
IMAGENET_STD: tuple[float, float, float] = (0.229, 0.224, 0.225)


class CropAndScale(StrEnum):
    """How an image is fitted to the model's input size."""

    CENTER_CROP = "center_crop"
    SCALE_FILL = "scale_fill"
    SCALE_FIT = "scale_fit"


@dataclass(frozen=True)
class ClassificationRequest:
    """Resize and normalization policy applied before a single inference."""

    input_size: tuple[int, int]
    crop_and_scale: CropAndScale = CropAndScale.CENTER_CROP
    mean: tuple[float, float, float] = IMAGENET_MEAN
    std: tuple[float, float, float] = IMAGENET_STD

    @classmethod
    def for_model(cls, spec: ModelSpec) -> ClassificationRequest:
        """Build the center-crop request for a registered model."""
        return cls(
            input_size=spec.input_size,
            crop_and_scale=CropAndScale.CENTER_CROP,
            mean=spec.mean,
            std=spec.std,
        )


def decode_image(image: ImageInput, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode an image into an RGB uint8 numpy array.

    Args:
        image: Encoded file bytes, a Pillow image, or an HxW / HxWx3 / HxWx4
            uint8 array.
        max_pixels: Reject images with more pixels than this.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        DecodeError: If the image cannot be decoded, is empty, or exceeds
            ``max_pixels``.
    """
    if isinstance(image, np.ndarray):
        array = _array_to_rgb(image)
    else:
        array = np.asarray(_to_pil(image, max_pixels))

    height, width = array.shape[:2]
    if height == 0 or width == 0:
        raise DecodeError("image is empty")
    _check_pixels(width, height, max_pixels)
    return array


def apply_request(image: NDArray[np.uint8], request: ClassificationRequest) -> NDArray[np.float32]:
    """Resize and normalize a decoded image according to ``request``.

    Returns:
        Float32 tensor of shape (1, 3, H, W).
    """
    width, height = request.input_size
    pil = Image.fromarray(np.ascontiguousarray(image))

    if request.crop_and_scale is CropAndScale.CENTER_CROP:
        resized = ImageOps.fit(pil, (width, height), method=Image.Resampling.BILINEAR, centering=(0.5, 0.5))
    elif request.crop_and_scale is CropAndScale.SCALE_FILL:
        resized = pil.resize((width, height), Image.Resampling.BILINEAR)
    else:
        resized = ImageOps.pad(pil, (width, height), method=Image.Resampling.BILINEAR, color=(0, 0, 0))

    pixels = np.asarray(resized, dtype=np.float32) / 255.0
    pixels = (pixels - np.asarray(request.mean, dtype=np.float32)) / np.asarray(request.std, dtype=np.float32)
    return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)


def _check_pixels(width: int, height: int, max_pixels: int | None) -> None:
    if max_pixels is not None and width * height > max_pixels:
        raise DecodeError(f"image has {width * height} pixels, limit is {max_pixels}")


def _to_pil(image: bytes | Image.Image, max_pixels: int | None) -> Image.Image:
    if isinstance(image, Image.Image):
        pil = image
    elif isinstance(image, (bytes, bytearray, memoryview)):
        if not image:
            raise DecodeError("no image data")
        try:
            pil = Image.open(io.BytesIO(bytes(image)))
        except UnidentifiedImageError as exc:
            raise DecodeError("unrecognized image format") from exc
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise DecodeError(str(exc)) from exc

        # Reject from the header size before decoding any pixel data.
        _check_pixels(pil.width, pil.height, max_pixels)
        try:
            pil.load()
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise DecodeError(str(exc)) from exc
    else:
        raise DecodeError(f"unsupported image type: {type(image).__name__}")

    try:
        pil = ImageOps.exif_transpose(pil)
        return pil.convert("RGB")
    except (OSError, ValueError) as exc:
        raise DecodeError(str(exc)) from exc


def _array_to_rgb(array: NDArray[np.generic]) -> NDArray[np.uint8]:
    if array.dtype != np.uint8:
        raise DecodeError(f"expected uint8 pixels, got {array.dtype}")
    if array.ndim == 2:
        return np.repeat(array[:, :, np.newaxis], 3, axis=2)
    if array.ndim == 3 and array.shape[2] == 3:
        return array
    if array.ndim == 3 and array.shape[2] == 4:
        return np.ascontiguousarray(array[:, :, :3])
    raise DecodeError(f"unsupported array shape {array.shape}")
