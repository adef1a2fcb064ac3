"""Streaming filters used by the stabilizer."""

from .filtering import (
    ConstantVelocityKalman,
    DoubleExponentialSmoother,
    JitterSuppressor,
    LowPassFilter,
    OneEuroFilter,
    smoothing_factor,
)

__all__ = [
    "ConstantVelocityKalman",
    "DoubleExponentialSmoother",
    "JitterSuppressor",
    "LowPassFilter",
    "OneEuroFilter",
    "smoothing_factor",
]
