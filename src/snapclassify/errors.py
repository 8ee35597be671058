"""Error taxonomy for the preprocessing pipeline and model lifecycle."""

from __future__ import annotations


class SnapClassifyError(Exception):
    """Base class for all SnapClassify errors."""


class DecodeError(SnapClassifyError):
    """Image bytes are malformed, truncated, or in an unsupported format."""


class AllocationError(SnapClassifyError):
    """A numeric buffer could not be allocated."""


class ModelLoadError(SnapClassifyError):
    """Model assets are missing or corrupt, or the session could not be built."""


class InferenceError(SnapClassifyError):
    """The forward pass failed: invalid handle, shape mismatch, or backend error."""


class ModelNotReadyError(InferenceError):
    """Inference was requested before the initialization sequence reached ready."""


class PlatformInitError(SnapClassifyError):
    """The numeric backend could not be set up."""
