"""Output module: tone mapping, sRGB encoding and image export."""

from .export import compute_rmse, image_to_uint8, save_npy, save_png
from .tonemap import ToneMap, linear_to_srgb, process_image_for_display, srgb_to_linear

__all__ = [
    "ToneMap",
    "process_image_for_display",
    "linear_to_srgb",
    "srgb_to_linear",
    "save_png",
    "save_npy",
    "image_to_uint8",
    "compute_rmse",
]
