"""Tone mapping and color encoding for display.

The renderer produces unbounded linear radiance. These NumPy functions map
it to displayable [0, 1] values: an optional exposure scale, an optional
tone curve, then sRGB encoding.

Example:
    >>> import numpy as np
    >>> from pathtracer.output.tonemap import process_image_for_display
    >>> hdr = np.full((4, 4, 3), 3.0, dtype=np.float32)
    >>> ldr = process_image_for_display(hdr, tone_map="reinhard")
"""

from enum import Enum

import numpy as np
import numpy.typing as npt


class ToneMap(str, Enum):
    NONE = "none"
    REINHARD = "reinhard"
    EXPOSURE = "exposure"


def srgb_to_linear(values: npt.ArrayLike) -> npt.NDArray[np.float32]:
    """Decode sRGB-encoded values in [0, 1] to linear."""
    c = np.clip(np.asarray(values, dtype=np.float32), 0.0, 1.0)
    return np.where(c <= 0.04045, c / 12.92, ((c + 0.055) / 1.055) ** 2.4).astype(np.float32)


def linear_to_srgb(values: npt.ArrayLike) -> npt.NDArray[np.float32]:
    """Encode linear values in [0, 1] with the sRGB transfer curve."""
    c = np.clip(np.asarray(values, dtype=np.float32), 0.0, 1.0)
    return np.where(c <= 0.0031308, 12.92 * c, 1.055 * np.power(c, 1.0 / 2.4) - 0.055).astype(np.float32)


def reinhard(image: npt.ArrayLike) -> npt.NDArray[np.float32]:
    """Per-channel Reinhard operator x / (1 + x)."""
    x = np.maximum(np.asarray(image, dtype=np.float32), 0.0)
    return x / (1.0 + x)


def exposure(image: npt.ArrayLike, stops: float = 0.0) -> npt.NDArray[np.float32]:
    """Exponential exposure curve 1 - exp(-x * 2^stops)."""
    x = np.maximum(np.asarray(image, dtype=np.float32), 0.0)
    return (1.0 - np.exp(-x * (2.0**stops))).astype(np.float32)


def process_image_for_display(
    image: npt.ArrayLike,
    tone_map: str | ToneMap = ToneMap.REINHARD,
    exposure_stops: float = 0.0,
    srgb: bool = True,
) -> npt.NDArray[np.float32]:
    """Map a linear HDR buffer to display values in [0, 1].

    Args:
        image: (H, W, 3) linear radiance.
        tone_map: "none" (clip), "reinhard" or "exposure".
        exposure_stops: Exposure adjustment in stops, applied before the
            tone curve.
        srgb: Apply the sRGB transfer curve after tone mapping.

    Returns:
        (H, W, 3) float32 array in [0, 1].

    Raises:
        ValueError: If the tone map name is unknown.
    """
    mode = ToneMap(tone_map)
    x = np.nan_to_num(np.asarray(image, dtype=np.float32), nan=0.0, posinf=0.0, neginf=0.0)

    if mode is ToneMap.EXPOSURE:
        mapped = exposure(x, exposure_stops)
    else:
        x = x * (2.0**exposure_stops)
        mapped = reinhard(x) if mode is ToneMap.REINHARD else np.clip(x, 0.0, 1.0)

    if srgb:
        mapped = linear_to_srgb(mapped)
    return np.clip(mapped, 0.0, 1.0).astype(np.float32)
