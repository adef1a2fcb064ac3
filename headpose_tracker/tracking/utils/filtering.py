"""Streaming filters for stabilizing per-frame pose channels.

Every filter works on a vector of independent scalar channels (x, y, z or
Euler components) and keeps its own state between calls. Time is passed
in seconds so behavior does not depend on frame rate.
"""

from __future__ import annotations

import math
from collections import deque
from typing import Deque, Optional

import numpy as np


def smoothing_factor(elapsed: float, cutoff: np.ndarray | float) -> np.ndarray:
    """Exponential smoothing alpha for a first-order low-pass at ``cutoff`` Hz."""
    tau = 1.0 / (2.0 * math.pi * np.asarray(cutoff, dtype=float))
    return 1.0 / (1.0 + tau / float(elapsed))


class LowPassFilter:
    def __init__(self) -> None:
        self._value: Optional[np.ndarray] = None

    @property
    def value(self) -> Optional[np.ndarray]:
        return None if self._value is None else self._value.copy()

    def filter(self, value: np.ndarray, alpha: np.ndarray | float) -> np.ndarray:
        value = np.asarray(value, dtype=float)
        if self._value is None:
            self._value = value.copy()
        else:
            self._value = alpha * value + (1.0 - alpha) * self._value
        return self._value.copy()

    def reset(self, value: Optional[np.ndarray] = None) -> None:
        self._value = None if value is None else np.asarray(value, dtype=float).copy()


class OneEuroFilter:
    """Adaptive low-pass whose cutoff rises with the filtered signal speed.

    Slow signals get a low cutoff (strong jitter removal); fast signals get a
    higher cutoff (less lag). ``min_cutoff`` may be per channel.
    """

    def __init__(
        self,
        *,
        min_cutoff: float | np.ndarray = 1.0,
        beta: float = 0.007,
        derivative_cutoff: float = 1.0,
        min_elapsed: float = 1e-3,
    ) -> None:
        self.min_cutoff = np.asarray(min_cutoff, dtype=float)
        self.beta = float(beta)
        self.derivative_cutoff = float(derivative_cutoff)
        self.min_elapsed = float(min_elapsed)
        self._value = LowPassFilter()
        self._derivative = LowPassFilter()
        self._last_time: Optional[float] = None

    def filter(self, value: np.ndarray, timestamp: float, *, cutoff_scale: float = 1.0) -> np.ndarray:
        value = np.asarray(value, dtype=float)
        previous = self._value.value
        if previous is None or self._last_time is None:
            self._last_time = float(timestamp)
            self._derivative.reset(np.zeros_like(value))
            return self._value.filter(value, 1.0)

        elapsed = max(float(timestamp) - self._last_time, self.min_elapsed)
        self._last_time = float(timestamp)
        speed = self._derivative.filter((value - previous) / elapsed, smoothing_factor(elapsed, self.derivative_cutoff))
        cutoff = self.min_cutoff * float(cutoff_scale) + self.beta * np.abs(speed)
        return self._value.filter(value, smoothing_factor(elapsed, cutoff))

    def reset(self) -> None:
        self._value.reset()
        self._derivative.reset()
        self._last_time = None


class JitterSuppressor:
    """Replace a channel by its window mean while the window variance is high."""

    def __init__(self, *, window: int = 5, threshold: float | np.ndarray = 0.005, min_samples: int = 3) -> None:
        self.window = int(window)
        self.threshold = np.asarray(threshold, dtype=float)
        self.min_samples = int(min_samples)
        self._history: Deque[np.ndarray] = deque(maxlen=self.window)

    def filter(self, value: np.ndarray) -> np.ndarray:
        value = np.asarray(value, dtype=float)
        self._history.append(value.copy())
        if len(self._history) < self.min_samples:
            return value
        stacked = np.vstack(self._history)
        variance = stacked.var(axis=0)
        return np.where(variance > self.threshold, stacked.mean(axis=0), value)

    def jitter_level(self) -> float:
        """Mean per-channel standard deviation over the current window."""
        if len(self._history) < 2:
            return 0.0
        return float(np.mean(np.vstack(self._history).std(axis=0)))

    def reset(self) -> None:
        self._history.clear()


class ConstantVelocityKalman:
    """Per-channel constant-velocity Kalman filter with a diagonal gain.

    Each channel keeps (position, velocity) and its own 2x2 covariance; the
    measurement noise grows as confidence drops.
    """

    def __init__(self, *, process_noise: float = 1.0, measurement_noise: float = 1.0) -> None:
        self.process_noise = float(process_noise)
        self.measurement_noise = float(measurement_noise)
        self._state: Optional[np.ndarray] = None
        self._velocity: Optional[np.ndarray] = None
        self._p00: Optional[np.ndarray] = None
        self._p01: Optional[np.ndarray] = None
        self._p11: Optional[np.ndarray] = None
        self._last_time: Optional[float] = None

    @property
    def velocity(self) -> Optional[np.ndarray]:
        return None if self._velocity is None else self._velocity.copy()

    def filter(self, value: np.ndarray, timestamp: float, *, confidence: float = 1.0) -> np.ndarray:
        value = np.asarray(value, dtype=float)
        if self._state is None or self._last_time is None:
            self._state = value.copy()
            self._velocity = np.zeros_like(value)
            self._p00 = np.ones_like(value)
            self._p01 = np.zeros_like(value)
            self._p11 = np.ones_like(value)
            self._last_time = float(timestamp)
            return self._state.copy()

        dt = max(float(timestamp) - self._last_time, 1e-3)
        self._last_time = float(timestamp)
        q = self.process_noise

        # Predict.
        self._state = self._state + self._velocity * dt
        p00 = self._p00 + dt * (2.0 * self._p01 + dt * self._p11) + q * dt**3 / 3.0
        p01 = self._p01 + dt * self._p11 + q * dt**2 / 2.0
        p11 = self._p11 + q * dt

        # Correct.
        r = self.measurement_noise / max(float(confidence), 0.05)
        innovation = value - self._state
        s = p00 + r
        k0 = p00 / s
        k1 = p01 / s
        self._state = self._state + k0 * innovation
        self._velocity = self._velocity + k1 * innovation
        self._p00 = (1.0 - k0) * p00
        self._p01 = (1.0 - k0) * p01
        self._p11 = p11 - k1 * p01
        return self._state.copy()

    def reset(self) -> None:
        self._state = None
        self._velocity = None
        self._p00 = self._p01 = self._p11 = None
        self._last_time = None


class DoubleExponentialSmoother:
    """Holt level + trend smoothing with linear extrapolation."""

    def __init__(self, *, alpha: float = 0.3, gamma: float = 0.1) -> None:
        self.alpha = float(alpha)
        self.gamma = float(gamma)
        self._level: Optional[np.ndarray] = None
        self._trend: Optional[np.ndarray] = None

    @property
    def trend(self) -> np.ndarray:
        return np.zeros(3) if self._trend is None else self._trend.copy()

    def update(self, value: np.ndarray) -> np.ndarray:
        value = np.asarray(value, dtype=float)
        if self._level is None or self._trend is None:
            self._level = value.copy()
            self._trend = np.zeros_like(value)
            return self._level.copy()
        level = self.alpha * value + (1.0 - self.alpha) * (self._level + self._trend)
        self._trend = self.gamma * (level - self._level) + (1.0 - self.gamma) * self._trend
        self._level = level
        return self._level.copy()

    def predict(self, steps: float) -> np.ndarray:
        """Level extrapolated ``steps`` update intervals ahead."""
        if self._level is None or self._trend is None:
            raise ValueError("predict() called before any update().")
        return self._level + float(steps) * self._trend

    def reset(self) -> None:
        self._level = None
        self._trend = None
