"""Radiance RGBE (.hdr / .pic) reading and writing.

Supports the ``32-bit_rle_rgbe`` format with both new-style run-length
encoded scanlines and flat (uncompressed) scanlines, and the standard
``-Y H +X W`` orientation as well as flipped variants. Decoded pixels are
linear RGB float32 with row 0 at the top of the image.
"""

import io
import logging
from pathlib import Path

import numpy as np
import numpy.typing as npt

logger = logging.getLogger(__name__)

_MAGIC = ("#?RADIANCE", "#?RGBE")


class HDRFormatError(ValueError):
    """The file is not a readable Radiance RGBE image."""


def _parse_header(stream: io.BytesIO) -> tuple[int, int, bool, bool]:
    first = stream.readline().decode("ascii", errors="ignore").strip()
    if not first.startswith(_MAGIC):
        raise HDRFormatError(f"Missing Radiance signature, got {first[:16]!r}")

    has_format = False
    while True:
        line = stream.readline()
        if not line:
            raise HDRFormatError("Unexpected end of file in header")
        text = line.decode("ascii", errors="ignore").strip()
        if not text:
            break
        if text.upper().startswith("FORMAT="):
            if text != "FORMAT=32-bit_rle_rgbe":
                raise HDRFormatError(f"Unsupported pixel format: {text}")
            has_format = True
    if not has_format:
        logger.debug("HDR header has no FORMAT line, assuming 32-bit_rle_rgbe")

    tokens = stream.readline().decode("ascii", errors="ignore").split()
    if len(tokens) != 4 or not tokens[0].endswith("Y") or not tokens[2].endswith("X"):
        raise HDRFormatError(f"Unsupported resolution line: {' '.join(tokens)!r}")
    try:
        height = int(tokens[1])
        width = int(tokens[3])
    except ValueError as exc:
        raise HDRFormatError(f"Invalid resolution: {' '.join(tokens)!r}") from exc
    if width <= 0 or height <= 0:
        raise HDRFormatError(f"Invalid resolution {width}x{height}")
    # "-Y" stores the top row first; "+Y" stores the bottom row first
    flip_y = tokens[0].startswith("+")
    flip_x = tokens[2].startswith("-")
    return width, height, flip_y, flip_x


def _read_exact(stream: io.BytesIO, count: int) -> bytes:
    data = stream.read(count)
    if len(data) != count:
        raise HDRFormatError("Unexpected end of file in pixel data")
    return data


def _read_scanline(stream: io.BytesIO, width: int) -> np.ndarray:
    """One scanline as a (width, 4) uint8 RGBE array."""
    head = _read_exact(stream, 4)
    is_rle = 8 <= width < 0x8000 and head[0] == 2 and head[1] == 2 and ((head[2] << 8) | head[3]) == width
    if not is_rle:
        rest = _read_exact(stream, 4 * (width - 1))
        return np.frombuffer(head + rest, dtype=np.uint8).reshape(width, 4)

    scan = np.empty((width, 4), dtype=np.uint8)
    for channel in range(4):
        x = 0
        while x < width:
            count = _read_exact(stream, 1)[0]
            if count > 128:
                count -= 128
                if x + count > width:
                    raise HDRFormatError("Run exceeds scanline width")
                scan[x : x + count, channel] = _read_exact(stream, 1)[0]
            else:
                if count == 0 or x + count > width:
                    raise HDRFormatError("Invalid literal run length")
                scan[x : x + count, channel] = np.frombuffer(_read_exact(stream, count), dtype=np.uint8)
            x += count
    return scan


def rgbe_to_float(rgbe: npt.NDArray[np.uint8]) -> npt.NDArray[np.float32]:
    """Decode (..., 4) RGBE bytes to (..., 3) linear float32."""
    exponent = rgbe[..., 3].astype(np.int32)
    mantissa = rgbe[..., :3].astype(np.float32)
    scale = np.where(exponent > 0, np.ldexp(1.0, exponent - 136), 0.0).astype(np.float32)
    return mantissa * scale[..., None]


def float_to_rgbe(rgb: npt.ArrayLike) -> npt.NDArray[np.uint8]:
    """Encode (..., 3) non-negative floats as (..., 4) RGBE bytes."""
    c = np.maximum(np.asarray(rgb, dtype=np.float64), 0.0)
    peak = c.max(axis=-1)
    out = np.zeros(c.shape[:-1] + (4,), dtype=np.uint8)
    mask = peak > 1e-32
    mantissa, exponent = np.frexp(peak[mask])
    scale = mantissa * 256.0 / peak[mask]
    out[mask, :3] = np.clip(c[mask] * scale[:, None], 0, 255).astype(np.uint8)
    out[mask, 3] = np.clip(exponent + 128, 0, 255).astype(np.uint8)
    return out


def read_hdr(path: str | Path) -> npt.NDArray[np.float32]:
    """Read a Radiance .hdr file.

    Args:
        path: File to read.

    Returns:
        (H, W, 3) linear RGB float32, row 0 at the top.

    Raises:
        OSError: If the file cannot be opened.
        HDRFormatError: If the content is not a supported RGBE image.
    """
    raw = Path(path).read_bytes()
    stream = io.BytesIO(raw)
    width, height, flip_y, flip_x = _parse_header(stream)

    rgbe = np.empty((height, width, 4), dtype=np.uint8)
    for y in range(height):
        rgbe[y] = _read_scanline(stream, width)

    rgb = rgbe_to_float(rgbe)
    if flip_y:
        rgb = rgb[::-1]
    if flip_x:
        rgb = rgb[:, ::-1]
    logger.debug("Read HDR image %s (%dx%d)", path, width, height)
    return np.ascontiguousarray(rgb, dtype=np.float32)


def write_hdr(path: str | Path, image: npt.ArrayLike) -> None:
    """Write (H, W, 3) linear RGB as a flat (non run-length) RGBE file."""
    data = np.asarray(image, dtype=np.float32)
    if data.ndim != 3 or data.shape[2] != 3:
        raise ValueError(f"Expected an (H, W, 3) image, got shape {data.shape}")
    height, width = data.shape[:2]
    header = f"#?RADIANCE\nFORMAT=32-bit_rle_rgbe\n\n-Y {height} +X {width}\n".encode("ascii")
    Path(path).write_bytes(header + float_to_rgbe(data).tobytes())
