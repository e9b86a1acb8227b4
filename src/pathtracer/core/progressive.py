"""Progressive, batched rendering with cancellation.

The ProgressiveRenderer traces samples in batches of ``batch_size`` samples
per pixel. Between batches it reports progress, logs, and checks an
optional ``threading.Event``; once the event is set no further batch is
launched and the partially accumulated image stays valid.

``render()`` is the one-call contract used by the CLI and tests: it uploads
a scene, renders it and returns the linear radiance buffer.

Example:
    >>> import taichi as ti
    >>> ti.init(arch=ti.cpu)
    >>> from pathtracer.core.progressive import render
    >>> from pathtracer.scene.scenes import create_scene
    >>> scene = create_scene("cornell")
    >>> image = render(scene, 256, 256, samples_per_pixel=64, max_depth=16)
    >>> image.shape
    (256, 256, 3)
"""

import logging
import threading
import time
from collections.abc import Callable, Generator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from pathtracer.config import DEFAULT_BATCH_SIZE, DEFAULT_RR_START_DEPTH, RenderSettings, SamplingStrategy
from pathtracer.core.integrator import (
    clear_render_target,
    get_radiance_numpy,
    get_render_stats,
    get_total_samples,
    render_batch,
    setup_render_target,
)

if TYPE_CHECKING:
    from pathtracer.scene.manager import SceneManager

logger = logging.getLogger(__name__)

# Callback receives (current_samples, target_samples)
ProgressCallback = Callable[[int, int], None]


@dataclass
class RenderStats:
    """Summary of a finished (or cancelled) render.

    Attributes:
        samples_per_pixel: Samples actually accumulated per pixel.
        requested_samples: Samples per pixel that were asked for.
        elapsed_seconds: Wall-clock time spent tracing.
        cancelled: True if the render stopped early on the cancel event.
        terminations: Path counts per termination reason.
        discarded_samples: Samples replaced by zero because their radiance
            was NaN, infinite or negative.
    """

    samples_per_pixel: int
    requested_samples: int
    elapsed_seconds: float
    cancelled: bool = False
    terminations: dict[str, int] = field(default_factory=dict)
    discarded_samples: int = 0


class ProgressiveRenderer:
    """Accumulates samples for the current scene over successive batches.

    The renderer owns the render settings; the scene (geometry, materials,
    lights, camera) must already be uploaded, normally by
    ``SceneManager.build()``.

    Attributes:
        settings: Resolution, sample count and integrator parameters.
    """

    def __init__(self, settings: RenderSettings, cancel_event: threading.Event | None = None) -> None:
        """Validate the settings and allocate the render target.

        Raises:
            ValueError: If a setting is out of range.
            ResourceExhaustedError: If the image exceeds the preallocated
                buffer.
        """
        settings.validate()
        self.settings = settings
        self.cancel_event = cancel_event
        self._cancelled = False
        self._elapsed = 0.0
        setup_render_target(settings.width, settings.height)

    @property
    def width(self) -> int:
        return self.settings.width

    @property
    def height(self) -> int:
        return self.settings.height

    @property
    def sample_count(self) -> int:
        return get_total_samples()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def reset(self) -> None:
        """Clear the accumulator for a fresh render at the same size."""
        clear_render_target()
        self._cancelled = False
        self._elapsed = 0.0

    def _should_stop(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def render_progressive(self, num_samples: int | None = None) -> Generator[tuple[int, int], None, None]:
        """Render in batches, yielding progress after each one.

        Args:
            num_samples: Samples per pixel to add. Defaults to the settings'
                samples_per_pixel.

        Yields:
            Tuple of (current_samples, target_samples).
        """
        s = self.settings
        total = s.samples_per_pixel if num_samples is None else num_samples
        if total <= 0:
            return

        start = self.sample_count
        target = start + total
        while self.sample_count < target:
            if self._should_stop():
                self._cancelled = True
                logger.warning("Render cancelled at %d/%d samples per pixel", self.sample_count, target)
                return
            current = self.sample_count
            batch = min(s.batch_size, target - current)
            t0 = time.perf_counter()
            render_batch(
                start_sample=current,
                num_samples=batch,
                seed=s.seed,
                max_depth=s.max_depth,
                rr_start_depth=s.rr_start_depth,
                strategy=s.strategy,
            )
            self._elapsed += time.perf_counter() - t0
            logger.info("Rendered %d/%d samples per pixel (%.1fs)", self.sample_count, target, self._elapsed)
            yield (self.sample_count, target)

    def render(self, num_samples: int | None = None, callback: ProgressCallback | None = None) -> RenderStats:
        """Render until the target sample count is reached or cancelled.

        Args:
            num_samples: Samples per pixel to add. Defaults to the settings'
                samples_per_pixel.
            callback: Called after each batch with (current, target).

        Returns:
            Statistics of the accumulated image.
        """
        requested = self.sample_count + (self.settings.samples_per_pixel if num_samples is None else num_samples)
        for current, target in self.render_progressive(num_samples):
            if callback is not None:
                callback(current, target)
        return self.stats(requested)

    def stats(self, requested_samples: int | None = None) -> RenderStats:
        counts = get_render_stats()
        discarded = counts.pop("discarded")
        return RenderStats(
            samples_per_pixel=self.sample_count,
            requested_samples=self.settings.samples_per_pixel if requested_samples is None else requested_samples,
            elapsed_seconds=self._elapsed,
            cancelled=self._cancelled,
            terminations=counts,
            discarded_samples=discarded,
        )

    def get_image_numpy(self) -> npt.NDArray[np.float32]:
        """Linear radiance, shape (height, width, 3), row 0 at the top."""
        return get_radiance_numpy()

    def __repr__(self) -> str:
        return (
            f"ProgressiveRenderer(width={self.width}, height={self.height}, "
            f"samples={self.sample_count}/{self.settings.samples_per_pixel})"
        )


# =============================================================================
# Render Contract
# =============================================================================


def render_with_stats(
    scene: "SceneManager",
    width: int,
    height: int,
    samples_per_pixel: int,
    max_depth: int = 50,
    *,
    seed: int = 0,
    batch_size: int = DEFAULT_BATCH_SIZE,
    rr_start_depth: int = DEFAULT_RR_START_DEPTH,
    strategy: SamplingStrategy = SamplingStrategy.MIS,
    cancel_event: threading.Event | None = None,
    callback: ProgressCallback | None = None,
) -> tuple[npt.NDArray[np.float32], RenderStats]:
    """Render a scene and return the image together with its statistics.

    Args:
        scene: Scene to render; it is built (uploaded) if it is not yet.
        width: Image width in pixels.
        height: Image height in pixels.
        samples_per_pixel: Samples per pixel.
        max_depth: Bounce ceiling.
        seed: Render seed; identical inputs give identical images.
        batch_size: Samples per pixel per kernel launch.
        rr_start_depth: Depth from which Russian roulette applies.
        strategy: Direct lighting estimator.
        cancel_event: Stops the render between batches when set.
        callback: Progress callback receiving (current, target).

    Returns:
        A tuple (image, stats) where image is (height, width, 3) linear RGB.

    Raises:
        MalformedSceneError: If the scene is invalid.
        ResourceExhaustedError: If the scene or image exceeds capacity.
        ValueError: If a render setting is out of range.
    """
    settings = RenderSettings(
        width=width,
        height=height,
        samples_per_pixel=samples_per_pixel,
        max_depth=max_depth,
        seed=seed,
        batch_size=batch_size,
        rr_start_depth=rr_start_depth,
        strategy=strategy,
    )
    settings.validate()
    scene.build(aspect_ratio=width / height)

    renderer = ProgressiveRenderer(settings, cancel_event=cancel_event)
    logger.info(
        "Rendering %dx%d at %d spp (depth %d, seed %d)",
        width,
        height,
        samples_per_pixel,
        max_depth,
        seed,
    )
    stats = renderer.render(callback=callback)
    if stats.discarded_samples:
        logger.warning("Discarded %d non-finite or negative samples", stats.discarded_samples)
    return renderer.get_image_numpy(), stats


def render(
    scene: "SceneManager",
    width: int,
    height: int,
    samples_per_pixel: int,
    max_depth: int = 50,
    *,
    seed: int = 0,
    batch_size: int = DEFAULT_BATCH_SIZE,
    cancel_event: threading.Event | None = None,
    callback: ProgressCallback | None = None,
) -> npt.NDArray[np.float32]:
    """Render a scene to a (height, width, 3) linear RGB array, row 0 on top."""
    image, _stats = render_with_stats(
        scene,
        width,
        height,
        samples_per_pixel,
        max_depth,
        seed=seed,
        batch_size=batch_size,
        cancel_event=cancel_event,
        callback=callback,
    )
    return image
