"""Render settings and quality presets.

Example:
    >>> from pathtracer.config import RenderSettings
    >>> settings = RenderSettings.from_preset("low", aspect_ratio=16.0 / 9.0)
    >>> settings.width, settings.height, settings.samples_per_pixel
    (600, 337, 100)
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import IntEnum


class SamplingStrategy(IntEnum):
    """Direct lighting estimator used by the integrator.

    MIS combines light and BSDF sampling with the power heuristic. The two
    single-strategy modes exist to validate the combined estimator.
    """

    MIS = 0
    LIGHT = 1
    BSDF = 2


@dataclass(frozen=True)
class QualityPreset:
    """A named resolution / sample count pair selected from the CLI.

    Attributes:
        name: Preset name as accepted by ``--quality``.
        width: Image width in pixels. Height follows the scene aspect ratio.
        samples_per_pixel: Samples traced per pixel.
        max_depth: Bounce ceiling for each path.
    """

    name: str
    width: int
    samples_per_pixel: int
    max_depth: int = 50


QUALITY_PRESETS: dict[str, QualityPreset] = {
    "low": QualityPreset("low", width=600, samples_per_pixel=100),
    "medium": QualityPreset("medium", width=1280, samples_per_pixel=500),
    "high": QualityPreset("high", width=1920, samples_per_pixel=4000),
}

DEFAULT_RR_START_DEPTH = 5
DEFAULT_BATCH_SIZE = 8


@dataclass
class RenderSettings:
    """Parameters of a single render invocation.

    Attributes:
        width: Image width in pixels.
        height: Image height in pixels.
        samples_per_pixel: Total samples per pixel.
        max_depth: Hard bounce ceiling. A path stops after this many
            scattering events.
        seed: Global seed mixed into every per-pixel random stream.
        batch_size: Samples per pixel traced per kernel launch. Cancellation
            and progress reporting happen between batches.
        rr_start_depth: Bounce index from which Russian roulette may
            terminate a path. Values >= max_depth disable roulette.
        strategy: Direct lighting estimator.
    """

    width: int
    height: int
    samples_per_pixel: int
    max_depth: int = 50
    seed: int = 0
    batch_size: int = DEFAULT_BATCH_SIZE
    rr_start_depth: int = DEFAULT_RR_START_DEPTH
    strategy: SamplingStrategy = SamplingStrategy.MIS

    def validate(self) -> None:
        """Check that every setting is in range.

        Raises:
            ValueError: If a dimension, count or depth is not positive, or
                the seed does not fit in 31 bits.
        """
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Image size must be positive, got {self.width}x{self.height}")
        if self.samples_per_pixel <= 0:
            raise ValueError(f"samples_per_pixel must be positive, got {self.samples_per_pixel}")
        if self.max_depth <= 0:
            raise ValueError(f"max_depth must be positive, got {self.max_depth}")
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.rr_start_depth < 0:
            raise ValueError(f"rr_start_depth must be non-negative, got {self.rr_start_depth}")
        if not 0 <= self.seed < 2**31:
            raise ValueError(f"seed must be in [0, 2^31), got {self.seed}")

    @classmethod
    def from_preset(cls, name: str, aspect_ratio: float = 16.0 / 9.0, **overrides) -> RenderSettings:
        """Build settings from a named quality preset.

        Args:
            name: Key of QUALITY_PRESETS.
            aspect_ratio: Width divided by height of the scene camera.
            **overrides: Fields replacing the preset values (e.g. ``seed``).

        Returns:
            A validated RenderSettings instance.

        Raises:
            ValueError: If the preset is unknown or an override is invalid.
        """
        try:
            preset = QUALITY_PRESETS[name]
        except KeyError:
            known = ", ".join(sorted(QUALITY_PRESETS))
            raise ValueError(f"Unknown quality preset '{name}' (expected one of: {known})") from None

        height = max(1, int(preset.width / aspect_ratio))
        settings = cls(
            width=preset.width,
            height=height,
            samples_per_pixel=preset.samples_per_pixel,
            max_depth=preset.max_depth,
        )
        settings = replace(settings, **overrides)
        settings.validate()
        return settings
