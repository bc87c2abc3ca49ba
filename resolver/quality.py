"""Image quality gate for label photographs."""

import io
import logging
import os
from dataclasses import dataclass

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from resolver import ImageBuffer, QualityMetrics, QualityReport

log = logging.getLogger(__name__)

QC_ERROR_MESSAGE = (
    'The image quality is not sufficient for an accurate scan. Please take the '
    'image again or type in the vintage, producer and wine name.'
)

DECODE_FAILED_REASON = 'Failed to analyze image - file may be corrupted or unsupported format'

# ITU-R 601 luma weights, same as Pillow's 'L' conversion
_LUMA = np.array([0.299, 0.587, 0.114])


@dataclass(frozen=True)
class QCConfig:
    """Thresholds for :func:`evaluate`. Defaults lean towards passing."""

    min_dimension: int = 400
    min_file_size: int = 30000
    min_laplacian_var: float = 50.0
    min_brightness: float = 20.0
    max_brightness: float = 240.0
    min_sharpness: float = 20.0

    @classmethod
    def from_env(cls) -> 'QCConfig':
        """Defaults overridden by IMAGE_QC_* environment variables."""
        return cls(
            min_dimension=int(os.getenv('IMAGE_QC_MIN_DIM', cls.min_dimension)),
            min_file_size=int(os.getenv('IMAGE_QC_MIN_BYTES', cls.min_file_size)),
            min_laplacian_var=float(
                os.getenv('IMAGE_QC_MIN_LAPLACIAN_VAR', cls.min_laplacian_var)
            ),
        )


def to_greyscale(pixels: np.ndarray) -> np.ndarray:
    """Convert a pixel grid to a float64 greyscale grid."""
    pixels = np.asarray(pixels)
    if pixels.ndim == 2:
        return pixels.astype(np.float64)
    if pixels.ndim == 3 and pixels.shape[2] == 1:
        return pixels[:, :, 0].astype(np.float64)
    if pixels.ndim == 3 and pixels.shape[2] >= 3:
        # Alpha, if any, is ignored
        return pixels[:, :, :3].astype(np.float64) @ _LUMA
    raise ValueError(f"Unsupported pixel grid shape {pixels.shape}")


def laplacian_variance(grey: np.ndarray) -> float:
    """Variance of the 4-neighbour Laplacian response over interior pixels.

    Higher values mean sharper edges, i.e. less blur.
    """
    if grey.shape[0] < 3 or grey.shape[1] < 3:
        return 0.0
    response = (
        4 * grey[1:-1, 1:-1]
        - grey[:-2, 1:-1]
        - grey[2:, 1:-1]
        - grey[1:-1, :-2]
        - grey[1:-1, 2:]
    )
    return float(response.var())


def brightness_stats(grey: np.ndarray) -> tuple[float, float]:
    """Mean and (population) standard deviation of intensity."""
    if grey.size == 0:
        return 0.0, 0.0
    return float(grey.mean()), float(grey.std())


def gradient_sharpness(grey: np.ndarray) -> float:
    """Mean gradient magnitude over interior pixels.

    Uses central neighbour differences ``gx = |p[x+1] - p[x-1]|`` and
    ``gy = |p[y+1] - p[y-1]|``.
    """
    if grey.shape[0] < 3 or grey.shape[1] < 3:
        return 0.0
    gx = np.abs(grey[1:-1, 2:] - grey[1:-1, :-2])
    gy = np.abs(grey[2:, 1:-1] - grey[:-2, 1:-1])
    return float(np.sqrt(gx * gx + gy * gy).mean())


def evaluate(buffer: ImageBuffer, config: QCConfig | None = None) -> QualityReport:
    """Run every quality check on a decoded image.

    All checks run, so the report lists every problem at once rather than
    only the first one.

    Args:
        buffer: Decoded image.
        config: Thresholds; defaults to ``QCConfig()``.

    Returns:
        QualityReport with itemized reasons and the measured metrics.
    """
    cfg = config or QCConfig()
    grey = to_greyscale(buffer.pixels)

    blur = laplacian_variance(grey)
    mean, std = brightness_stats(grey)
    sharpness = gradient_sharpness(grey)

    metrics = QualityMetrics(
        blur_variance=blur,
        brightness_mean=mean,
        brightness_std=std,
        sharpness=sharpness,
        width=buffer.width,
        height=buffer.height,
        byte_size=buffer.byte_size,
    )
    log.debug("QC metrics: %s", metrics)

    reasons: list[str] = []

    if buffer.width < cfg.min_dimension or buffer.height < cfg.min_dimension:
        reasons.append(
            f"Resolution too low ({buffer.width}x{buffer.height}) - try getting "
            "closer or using a higher quality camera"
        )

    if buffer.byte_size < cfg.min_file_size:
        reasons.append('File too small - image may be low quality')

    if blur < cfg.min_laplacian_var:
        reasons.append(
            'Image appears blurry - hold the camera steady and ensure the label is in focus'
        )

    if mean < cfg.min_brightness:
        reasons.append('Image too dark - try better lighting or avoid shadows on the label')
    elif mean > cfg.max_brightness:
        reasons.append('Image too bright or overexposed - avoid harsh direct light or glare')

    if sharpness < cfg.min_sharpness:
        reasons.append(
            'Image lacks sharpness - hold camera still for 1-2 seconds and ensure good focus'
        )

    if reasons:
        log.warning("QC failed: %s", '; '.join(reasons))
    return QualityReport(reasons=tuple(reasons), metrics=metrics)


def decode_image(data: bytes, mime_type: str | None = None, max_side: int = 800) -> ImageBuffer:
    """Decode an encoded image into an :class:`ImageBuffer`.

    The analysis copy is downscaled to fit inside ``max_side`` while the
    buffer keeps the original dimensions and byte size.

    Raises:
        ValueError: If the declared MIME type is not an image type or the
            bytes cannot be decoded.
    """
    if mime_type and not mime_type.lower().startswith('image/'):
        raise ValueError(f"Unsupported MIME type: {mime_type}")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            width, height = img.size
            img = img.convert('L')
            img.thumbnail((max_side, max_side))
            pixels = np.asarray(img, dtype=np.uint8)
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc

    return ImageBuffer(pixels=pixels, width=width, height=height, byte_size=len(data))


def check_image(
    data: bytes,
    mime_type: str | None = None,
    config: QCConfig | None = None,
) -> QualityReport:
    """Decode and evaluate raw image bytes; never raises on bad input."""
    try:
        buffer = decode_image(data, mime_type)
    except ValueError as exc:
        log.warning("QC could not decode image: %s", exc)
        return QualityReport(reasons=(DECODE_FAILED_REASON,), metrics=None)
    return evaluate(buffer, config)


def qc_tips(report: QualityReport) -> list[str]:
    """Retake advice matching the reasons of a failed report."""
    reasons = [r.lower() for r in report.reasons]
    tips: list[str] = []

    if any('blurry' in r or 'sharpness' in r for r in reasons):
        tips.append('Hold your phone steady against a surface if possible')
        tips.append('Wait 1-2 seconds after tapping the shutter button')
        tips.append('Ensure the label is in focus before taking the photo')

    if any('dark' in r for r in reasons):
        tips.append('Increase lighting or move to a brighter area')
        tips.append('Avoid shadows falling on the wine label')

    if any('bright' in r or 'glare' in r for r in reasons):
        tips.append('Avoid direct sunlight or harsh overhead lights')
        tips.append('Angle the bottle to reduce glare from the label')

    if any('resolution' in r or 'small' in r for r in reasons):
        tips.append('Move closer to the label to fill more of the frame')
        tips.append('Use a higher resolution camera setting if available')

    tips.append('Keep the camera perpendicular to the label (straight-on view)')
    tips.append('Clean your camera lens if it appears hazy')
    return tips
