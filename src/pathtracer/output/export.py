"""Image export: 8-bit PNG through Pillow and raw linear buffers as .npy.

Example:
    >>> from pathtracer.output.export import save_png
    >>> save_png("render.png", image, tone_map="reinhard")
"""

import logging
from pathlib import Path

import numpy as np
import numpy.typing as npt
from PIL import Image as PILImage

from pathtracer.output.tonemap import ToneMap, process_image_for_display

logger = logging.getLogger(__name__)


def image_to_uint8(
    image: npt.ArrayLike,
    tone_map: str | ToneMap = ToneMap.REINHARD,
    exposure_stops: float = 0.0,
) -> npt.NDArray[np.uint8]:
    """Tone map, sRGB-encode and quantize a linear (H, W, 3) buffer."""
    display = process_image_for_display(image, tone_map=tone_map, exposure_stops=exposure_stops)
    return np.round(display * 255.0).astype(np.uint8)


def save_png(
    path: str | Path,
    image: npt.ArrayLike,
    tone_map: str | ToneMap = ToneMap.REINHARD,
    exposure_stops: float = 0.0,
) -> Path:
    """Write a linear radiance buffer as an 8-bit sRGB PNG.

    Args:
        path: Output file; parent directories are created.
        image: (H, W, 3) linear radiance, row 0 at the top.
        tone_map: "none", "reinhard" or "exposure".
        exposure_stops: Exposure adjustment in stops.

    Returns:
        The path written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    PILImage.fromarray(image_to_uint8(image, tone_map, exposure_stops)).save(path)
    logger.info("Saved %s", path)
    return path


def save_npy(path: str | Path, image: npt.ArrayLike) -> Path:
    """Write the unmodified linear float32 buffer."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.save(path, np.asarray(image, dtype=np.float32))
    logger.info("Saved %s", path)
    return path


def compute_rmse(image: npt.ArrayLike, reference: npt.ArrayLike) -> float:
    """Root mean square error between two images of the same shape.

    Raises:
        ValueError: If the shapes differ.
    """
    a = np.asarray(image, dtype=np.float64)
    b = np.asarray(reference, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Image shapes differ: {a.shape} vs {b.shape}")
    return float(np.sqrt(np.mean((a - b) ** 2)))
