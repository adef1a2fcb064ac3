"""Tracking quality scoring, state machine and recovery recommendations.

Six metrics in [0, 1] (higher is better) are combined by weight into one
overall quality that selects the tracking state. Each metric keeps a short
history whose regression slope feeds loss prediction. Recovery attempts are
gated by dwell time in LOST, an attempt budget and a cooldown; the caller
reports the outcome through :meth:`QualityMonitor.recovery_complete`.
"""

from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional

import numpy as np

from headpose_tracker.tracking.config import DEFAULT_CONFIG, TRACKING_LOGGER as logger, QualitySettings

METRIC_NAMES = (
    "landmark_confidence",
    "pose_stability",
    "reprojection_error",
    "face_visibility",
    "motion_consistency",
    "occlusion_level",
)


class TrackingState(str, Enum):
    INITIALIZING = "initializing"
    TRACKING_EXCELLENT = "tracking_excellent"
    TRACKING_GOOD = "tracking_good"
    TRACKING_ACCEPTABLE = "tracking_acceptable"
    TRACKING_POOR = "tracking_poor"
    RECOVERING = "recovering"
    LOST = "lost"
    ERROR = "error"


class RecoveryStrategy(str, Enum):
    NONE = "none"
    REINITIALIZE = "reinitialize"
    RESET_FILTERS = "reset_filters"
    ADJUST_THRESHOLDS = "adjust_thresholds"
    REDUCE_QUALITY = "reduce_quality"
    FULL_RESET = "full_reset"


@dataclass(frozen=True)
class TrackingObservation:
    """Raw per-frame signals; the monitor normalizes them into metric scores.

    ``reprojection_error`` is in pixels (None when no pose was solved) and
    ``occlusion_level`` is the occluded fraction of mapped landmarks.
    """

    landmark_confidence: float
    pose_stability: float
    reprojection_error: Optional[float]
    face_visibility: float
    occlusion_level: float


@dataclass(frozen=True)
class QualityAssessment:
    overall_quality: float
    metric_scores: Mapping[str, float]
    tracking_state: TrackingState
    predicted_loss: bool
    recommended_strategy: RecoveryStrategy
    previous_state: Optional[TrackingState] = None
    recovery_attempts: int = 0
    loss_duration: float = 0.0
    frame_count: int = 0

    @property
    def is_tracking(self) -> bool:
        return self.tracking_state not in (TrackingState.LOST, TrackingState.ERROR)


class QualityListener:
    """Observer for quality events. Override the hooks you need; all default to no-ops."""

    def on_state_change(self, previous: TrackingState, current: TrackingState) -> None:
        pass

    def on_quality_change(self, quality: float) -> None:
        pass

    def on_recovery_attempt(self, strategy: RecoveryStrategy, attempt: int) -> None:
        pass

    def on_tracking_lost(self) -> None:
        pass

    def on_tracking_recovered(self) -> None:
        pass


class QualityMetric:
    """One scored signal with a bounded history, running average and trend slope."""

    def __init__(self, name: str, *, weight: float, threshold: float, history_size: int = 30, trend_min_samples: int = 5) -> None:
        self.name = name
        self.weight = float(weight)
        self.threshold = float(threshold)
        self.trend_min_samples = int(trend_min_samples)
        self.history: Deque[float] = deque(maxlen=int(history_size))
        self.current = 0.0
        self.average = 0.0
        self.trend = 0.0

    def update(self, value: float) -> None:
        self.current = float(value)
        self.history.append(self.current)
        values = np.fromiter(self.history, dtype=float)
        self.average = float(values.mean())
        if values.size >= self.trend_min_samples:
            self.trend = float(np.polyfit(np.arange(values.size, dtype=float), values, 1)[0])

    def is_below_threshold(self) -> bool:
        return self.current < self.threshold

    def summary(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "average": self.average,
            "trend": self.trend,
            "below_threshold": self.is_below_threshold(),
        }

    def reset(self) -> None:
        self.history.clear()
        self.current = 0.0
        self.average = 0.0
        self.trend = 0.0


def classify_quality(quality: float, settings: QualitySettings | None = None) -> TrackingState:
    """Map an overall quality onto a tracking state; boundaries belong to the higher state."""
    settings = settings or DEFAULT_CONFIG.quality
    if not math.isfinite(quality):
        return TrackingState.ERROR
    if quality >= settings.excellent_threshold:
        return TrackingState.TRACKING_EXCELLENT
    if quality >= settings.good_threshold:
        return TrackingState.TRACKING_GOOD
    if quality >= settings.acceptable_threshold:
        return TrackingState.TRACKING_ACCEPTABLE
    if quality >= settings.poor_threshold:
        return TrackingState.TRACKING_POOR
    if quality >= settings.critical_threshold:
        return TrackingState.RECOVERING
    return TrackingState.LOST


class QualityMonitor:
    """Supervises tracking quality for one subject and proposes recovery."""

    def __init__(
        self,
        settings: QualitySettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        listeners: Iterable[QualityListener] = (),
    ) -> None:
        self.settings = settings or DEFAULT_CONFIG.quality
        self._clock = clock
        self._listeners: List[QualityListener] = list(listeners)
        self.metrics: Dict[str, QualityMetric] = {
            name: QualityMetric(
                name,
                weight=self.settings.metric_weights.get(name, 0.0),
                threshold=self.settings.metric_thresholds.get(name, 0.5),
                history_size=self.settings.history_size,
                trend_min_samples=self.settings.trend_min_samples,
            )
            for name in METRIC_NAMES
        }
        self._init_state()

    def _init_state(self) -> None:
        self.state = TrackingState.INITIALIZING
        self.previous_state: Optional[TrackingState] = None
        self.overall_quality = 0.0
        self.predicted_loss = False
        self.quality_history: Deque[float] = deque(maxlen=int(self.settings.quality_history_size))
        self.recovery_attempts = 0
        self.recovery_in_progress = False
        self.last_recovery_strategy: Optional[RecoveryStrategy] = None
        self._last_recovery_time = -math.inf
        self._loss_start: Optional[float] = None
        self.loss_duration = 0.0
        self.frame_count = 0
        self.fps = 0.0
        self._last_frame_time: Optional[float] = None
        self._error_reason: Optional[str] = None

    # Listener management -------------------------------------------------

    def add_listener(self, listener: QualityListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: QualityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, hook: str, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, hook)(*args)
            except Exception as exc:  # listeners must never break the frame loop
                logger.warning("Quality listener %s.%s failed: %s", type(listener).__name__, hook, exc)

    # Per-frame update ----------------------------------------------------

    def update(self, observation: TrackingObservation | None, *, timestamp: float | None = None) -> QualityAssessment:
        """Score one frame (None means no subject/pose) and advance the state machine."""
        now = self._clock() if timestamp is None else float(timestamp)
        self.frame_count += 1
        if self._last_frame_time is not None and now > self._last_frame_time:
            self.fps = 1.0 / (now - self._last_frame_time)
        self._last_frame_time = now

        if self.state is TrackingState.ERROR:
            return self._assessment()

        scores = self._score(observation)
        if scores is None or not all(math.isfinite(v) for v in scores.values()):
            self.report_error("non-finite tracking signal")
            return self._assessment()
        for name, value in scores.items():
            self.metrics[name].update(value)

        total_weight = sum(metric.weight for metric in self.metrics.values())
        weighted = sum(metric.current * metric.weight for metric in self.metrics.values())
        self.overall_quality = weighted / total_weight if total_weight > 0 else 0.0
        if not math.isfinite(self.overall_quality):
            self.report_error("non-finite overall quality")
            return self._assessment()

        self._transition(classify_quality(self.overall_quality, self.settings), now)
        self._predict_loss()
        if self.state is TrackingState.LOST:
            self._attempt_recovery(now)
        self.quality_history.append(self.overall_quality)
        self._notify("on_quality_change", self.overall_quality)
        return self._assessment()

    def _score(self, observation: TrackingObservation | None) -> Optional[Dict[str, float]]:
        if observation is None:
            return {name: 0.0 for name in METRIC_NAMES}
        try:
            error = observation.reprojection_error
            reprojection = (
                0.0 if error is None else max(0.0, 1.0 - float(error) / self.settings.reprojection_zero_error_px)
            )
            return {
                "landmark_confidence": float(np.clip(observation.landmark_confidence, 0.0, 1.0)),
                "pose_stability": float(np.clip(observation.pose_stability, 0.0, 1.0)),
                "reprojection_error": reprojection,
                "face_visibility": float(np.clip(observation.face_visibility, 0.0, 1.0)),
                "motion_consistency": self._motion_consistency(),
                "occlusion_level": 1.0 - float(np.clip(observation.occlusion_level, 0.0, 1.0)),
            }
        except (TypeError, ValueError):
            return None

    def _motion_consistency(self) -> float:
        if len(self.quality_history) < 3:
            return 1.0
        recent = np.fromiter(self.quality_history, dtype=float)[-self.settings.consistency_window:]
        return max(0.0, 1.0 - float(recent.var()) * 5.0)

    def _transition(self, new_state: TrackingState, now: float) -> None:
        previous = self.state
        if previous is TrackingState.LOST and self._loss_start is not None:
            self.loss_duration = now - self._loss_start
        if new_state is previous:
            return
        self.previous_state = previous
        self.state = new_state
        logger.info("Tracking state %s -> %s (quality %.2f)", previous.value, new_state.value, self.overall_quality)
        if new_state is TrackingState.LOST:
            self._loss_start = now
            self.loss_duration = 0.0
        elif previous is TrackingState.LOST:
            self._loss_start = None
            self.loss_duration = 0.0
            self.recovery_attempts = 0
            self.recovery_in_progress = False
        self._notify("on_state_change", previous, new_state)
        if new_state is TrackingState.LOST:
            self._notify("on_tracking_lost")
        elif previous is TrackingState.LOST:
            self._notify("on_tracking_recovered")

    def _predict_loss(self) -> None:
        declining = sum(1 for metric in self.metrics.values() if metric.trend < self.settings.declining_slope)
        self.predicted_loss = (
            declining >= self.settings.declining_metric_count and self.overall_quality < self.settings.good_threshold
        )

    def _attempt_recovery(self, now: float) -> None:
        if self._loss_start is None or (now - self._loss_start) < self.settings.recovery_delay_s:
            return
        if self.recovery_in_progress:
            return
        if self.recovery_attempts >= self.settings.max_recovery_attempts:
            return
        if (now - self._last_recovery_time) < self.settings.recovery_cooldown_s:
            return
        strategy = self.recommended_strategy()
        if strategy is RecoveryStrategy.NONE:
            return
        self.recovery_in_progress = True
        self.recovery_attempts += 1
        self.last_recovery_strategy = strategy
        self._last_recovery_time = now
        logger.info("Recovery attempt %d: %s", self.recovery_attempts, strategy.value)
        self._notify("on_recovery_attempt", strategy, self.recovery_attempts)

    # Caller-facing API -----------------------------------------------------

    def recommended_strategy(self) -> RecoveryStrategy:
        """Strategy for the metrics currently below threshold."""
        if self.state is TrackingState.ERROR:
            return RecoveryStrategy.FULL_RESET
        if self.recovery_attempts >= self.settings.full_reset_after_attempts:
            return RecoveryStrategy.FULL_RESET
        failing = {name for name, metric in self.metrics.items() if metric.is_below_threshold()}
        if {"landmark_confidence", "face_visibility"} <= failing:
            return RecoveryStrategy.REDUCE_QUALITY
        if "pose_stability" in failing:
            return RecoveryStrategy.RESET_FILTERS
        if "reprojection_error" in failing:
            return RecoveryStrategy.ADJUST_THRESHOLDS
        return RecoveryStrategy.REINITIALIZE

    def recommended_action(self) -> str:
        if self.state in (TrackingState.LOST, TrackingState.ERROR):
            return self.recommended_strategy().value
        if self.predicted_loss:
            return "stabilize"
        if self.state is TrackingState.TRACKING_POOR:
            return "improve_conditions"
        return "continue"

    def recovery_complete(self, success: bool) -> None:
        """Caller reports the outcome of the last recovery attempt."""
        self.recovery_in_progress = False
        if success:
            self.recovery_attempts = 0
            self._loss_start = None
            self.loss_duration = 0.0

    def report_error(self, reason: str) -> None:
        """Enter ERROR; it persists until :meth:`reset`."""
        if self.state is TrackingState.ERROR:
            return
        self._error_reason = reason
        previous = self.state
        self.previous_state = previous
        self.state = TrackingState.ERROR
        logger.warning("Tracking entered ERROR state: %s", reason)
        self._notify("on_state_change", previous, TrackingState.ERROR)

    @property
    def error_reason(self) -> Optional[str]:
        return self._error_reason

    def is_tracking_good(self) -> bool:
        return self.overall_quality >= self.settings.good_threshold

    def is_tracking_acceptable(self) -> bool:
        return self.overall_quality >= self.settings.acceptable_threshold

    def metrics_summary(self) -> Dict[str, Dict[str, Any]]:
        return {name: metric.summary() for name, metric in self.metrics.items()}

    def recent_quality(self, count: int = 30) -> List[float]:
        return list(self.quality_history)[-count:]

    def _assessment(self) -> QualityAssessment:
        lost_or_error = self.state in (TrackingState.LOST, TrackingState.ERROR)
        return QualityAssessment(
            overall_quality=self.overall_quality,
            metric_scores={name: metric.current for name, metric in self.metrics.items()},
            tracking_state=self.state,
            predicted_loss=self.predicted_loss,
            recommended_strategy=self.recommended_strategy() if lost_or_error else RecoveryStrategy.NONE,
            previous_state=self.previous_state,
            recovery_attempts=self.recovery_attempts,
            loss_duration=self.loss_duration,
            frame_count=self.frame_count,
        )

    def reset(self) -> None:
        """Discard all histories and return to INITIALIZING."""
        for metric in self.metrics.values():
            metric.reset()
        self._init_state()
