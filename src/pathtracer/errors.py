"""Exception types raised by the renderer.

Structural problems are reported before any rendering starts:

- MalformedSceneError: the scene description references something that does
  not exist, or a parameter is out of range.
- ResourceExhaustedError: a preallocated table is full, or the BVH cannot be
  built from the given geometry.

Numeric problems inside a single path (zero pdfs, NaN radiance) are not
exceptions. The integrator discards the offending sample and counts it.
"""


class PathTracerError(Exception):
    """Base class for all renderer errors."""


class MalformedSceneError(PathTracerError, ValueError):
    """The scene description is invalid or references unknown entities."""


class ResourceExhaustedError(PathTracerError, RuntimeError):
    """A fixed-capacity table overflowed or construction could not finish."""


class BVHBuildError(ResourceExhaustedError):
    """The BVH could not be built from the given primitive bounds."""
