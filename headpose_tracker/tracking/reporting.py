"""Tabular export, summary statistics and plots for tracked sequences."""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd

from headpose_tracker.tracking.pipeline import FrameResult

FRAME_COLUMNS = [
    "frame",
    "timestamp",
    "solved",
    "correspondences",
    "focal_length",
    "reprojection_error",
    "confidence",
    "inlier_ratio",
    "raw_x",
    "raw_y",
    "raw_z",
    "raw_pitch",
    "raw_yaw",
    "raw_roll",
    "x",
    "y",
    "z",
    "pitch",
    "yaw",
    "roll",
    "quality",
    "state",
    "predicted_loss",
    "strategy",
]


def frame_results_dataframe(results: Sequence[FrameResult]) -> pd.DataFrame:
    """One row per processed frame, columns as in ``FRAME_COLUMNS``."""
    records = [result.to_record() for result in results]
    if not records:
        return pd.DataFrame(columns=FRAME_COLUMNS)
    df = pd.DataFrame.from_records(records)
    return df[FRAME_COLUMNS]


def _jitter(values: pd.Series) -> float:
    """Mean absolute second difference; zero for a constant-velocity signal."""
    clean = values.dropna().to_numpy(dtype=float)
    if clean.size < 3:
        return float("nan")
    return float(np.mean(np.abs(np.diff(clean, n=2))))


def summarize(df: pd.DataFrame) -> Dict[str, Any]:
    if df.empty:
        return {"frames": 0, "solved_ratio": 0.0}
    solved = df[df["solved"]]
    states = df["state"].value_counts().to_dict()
    summary: Dict[str, Any] = {
        "frames": int(len(df)),
        "solved_ratio": float(len(solved) / len(df)),
        "duration_s": float(df["timestamp"].iloc[-1] - df["timestamp"].iloc[0]),
        "mean_reprojection_error": float(solved["reprojection_error"].mean()) if not solved.empty else None,
        "mean_confidence": float(solved["confidence"].mean()) if not solved.empty else None,
        "mean_quality": float(df["quality"].mean()),
        "final_state": str(df["state"].iloc[-1]),
        "final_focal_length": float(df["focal_length"].iloc[-1]),
        "state_counts": {str(k): int(v) for k, v in states.items()},
    }
    for axis in ("x", "y", "z"):
        summary[f"raw_jitter_{axis}"] = _jitter(solved[f"raw_{axis}"]) if not solved.empty else None
        summary[f"stabilized_jitter_{axis}"] = _jitter(solved[axis]) if not solved.empty else None
    return summary


def plot_stabilization_overlay(
    df: pd.DataFrame,
    *,
    channels: Sequence[str] = ("x", "y", "z", "yaw"),
    title: str = "Raw vs stabilized pose",
) -> Optional[Any]:
    """Raw measurement vs stabilized output per channel, one subplot each."""
    import matplotlib

    try:
        matplotlib.use("Agg", force=False)
    except Exception:
        pass
    import matplotlib.pyplot as plt

    if df.empty:
        return None

    fig, axes = plt.subplots(len(channels), 1, figsize=(10, 2.5 * len(channels)), sharex=True, squeeze=False)
    for ax, channel in zip(axes[:, 0], channels):
        ax.plot(df["timestamp"], df[f"raw_{channel}"], ".", alpha=0.4, markersize=3, label="raw")
        ax.plot(df["timestamp"], df[channel], "-", alpha=0.9, linewidth=1.2, label="stabilized")
        unit = "deg" if channel in ("pitch", "yaw", "roll") else "mm"
        ax.set_ylabel(f"{channel} ({unit})")
        ax.grid(True, alpha=0.25)
    axes[0, 0].set_title(title)
    axes[0, 0].legend(loc="upper right", fontsize=8)
    axes[-1, 0].set_xlabel("Time (s)")
    return fig


__all__ = ["FRAME_COLUMNS", "frame_results_dataframe", "summarize", "plot_stabilization_overlay"]
