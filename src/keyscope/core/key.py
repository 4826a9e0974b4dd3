"""
Key estimation by Krumhansl-Kessler template correlation.

The track chroma is correlated (dot product, both sides L1-normalized)
against the major and minor profiles rotated to all 12 tonics.  The best of
the 24 templates names the key; the margin over the runner-up gives the
confidence.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np

from keyscope.core.chroma import ChromaStrategy, HPCPChroma

logger = logging.getLogger(__name__)

PITCH_CLASSES = ("C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B")
MODES = ("Major", "Minor")

# Krumhansl-Kessler key profiles (major / minor), tonic first
MAJOR_PROFILE = np.array(
    [6.35, 2.23, 3.48, 2.33, 4.38, 4.09, 2.52, 5.19, 2.39, 3.66, 2.29, 2.88]
)
MINOR_PROFILE = np.array(
    [6.33, 2.68, 3.52, 5.38, 2.60, 3.53, 2.54, 4.75, 3.98, 2.69, 3.34, 3.17]
)
MAJOR_PROFILE.setflags(write=False)
MINOR_PROFILE.setflags(write=False)


def _build_templates() -> np.ndarray:
    """(24, 12) templates: rows 0-11 major on C..B, rows 12-23 minor on C..B."""
    major = MAJOR_PROFILE / MAJOR_PROFILE.sum()
    minor = MINOR_PROFILE / MINOR_PROFILE.sum()
    rows = [np.roll(major, i) for i in range(12)]
    rows += [np.roll(minor, i) for i in range(12)]
    templates = np.vstack(rows)
    templates.setflags(write=False)
    return templates


KEY_TEMPLATES = _build_templates()


@dataclass
class KeyEstimate:
    """Key estimation result."""

    key: Optional[str]              # e.g. "F# Minor"
    confidence: float = 0.0         # [0,1]
    debug: dict[str, Any] = field(default_factory=dict)
    root_index: Optional[int] = None   # 0-11 (C, C# ... B)
    mode: Optional[str] = None         # "Major" | "Minor"

    @property
    def reason(self) -> Optional[str]:
        """Why no key was found, if it wasn't."""
        return self.debug.get("reason")


def format_key(root_index: int, mode: str) -> str:
    """Canonical label, e.g. ``format_key(6, "Minor") == "F# Minor"``."""
    if mode not in MODES:
        raise ValueError(f"mode must be one of {MODES}, got {mode!r}")
    return f"{PITCH_CLASSES[root_index % 12]} {mode}"


def parse_key_label(label: str) -> tuple[int, str]:
    """
    Split a canonical key label into (root_index, mode).

    Raises:
        ValueError: If the label is not one of the 24 canonical keys.
    """
    parts = label.split()
    if len(parts) != 2 or parts[0] not in PITCH_CLASSES or parts[1] not in MODES:
        raise ValueError(f"not a key label: {label!r}")
    return PITCH_CLASSES.index(parts[0]), parts[1]


def relative_key(label: str) -> str:
    """Relative minor of a major key, or relative major of a minor key."""
    root, mode = parse_key_label(label)
    if mode == "Major":
        return format_key(root + 9, "Minor")
    return format_key(root + 3, "Major")


def correlate_key(chroma: np.ndarray) -> KeyEstimate:
    """
    Pick the best of the 24 major/minor templates for a chroma vector.

    Args:
        chroma: C-indexed 12-bin chroma, any non-negative scale.

    Returns:
        KeyEstimate; ``key`` is None when the chroma carries no usable signal.
    """
    chroma = np.asarray(chroma, dtype=np.float64)
    if chroma.shape != (12,):
        return KeyEstimate(None, 0.0, {"reason": "invalid chroma"})

    total = float(chroma.sum())
    if not np.isfinite(total) or total <= 0:
        return KeyEstimate(None, 0.0, {"reason": "no strong key correlation"})

    scores = KEY_TEMPLATES @ (chroma / total)
    order = np.argsort(-scores, kind="stable")
    best_index, second_index = int(order[0]), int(order[1])
    best, second = float(scores[best_index]), float(scores[second_index])

    if not np.isfinite(best) or best <= 0:
        return KeyEstimate(None, 0.0, {"reason": "no strong key correlation"})

    root, mode = best_index % 12, MODES[best_index // 12]
    label = format_key(root, mode)
    confidence = float(np.clip((best - second) / best, 0.0, 1.0))

    return KeyEstimate(
        key=label,
        confidence=confidence,
        debug={
            "best_score": best,
            "second_score": second,
            "second_key": format_key(second_index % 12, MODES[second_index // 12]),
        },
        root_index=root,
        mode=mode,
    )


def estimate_key(
    y: np.ndarray,
    sr: int,
    strategy: Optional[ChromaStrategy] = None,
) -> KeyEstimate:
    """
    Estimate the key of a mono signal.

    Never raises for signal conditions; silent or too-short input yields
    ``key=None`` with ``debug["reason"]`` set.

    Args:
        y: Mono signal.
        sr: Sample rate.
        strategy: Chroma strategy; defaults to the numpy HPCP pipeline.

    Returns:
        KeyEstimate.

    Raises:
        EngineUnavailableError: If an engine-backed strategy fails.
    """
    strategy = strategy or HPCPChroma()
    profile = strategy.extract(y, sr)
    summary = profile.summary()

    if profile.is_empty:
        return KeyEstimate(None, 0.0, {**summary, "reason": "no loud/valid frames"})

    estimate = correlate_key(profile.vector)
    estimate.debug = {**summary, **estimate.debug}
    logger.debug(
        "key %s (confidence %.3f) from %d/%d frames",
        estimate.key, estimate.confidence,
        profile.frames_used, profile.frames_total,
    )
    return estimate
