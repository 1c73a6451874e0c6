"""Linear gain applied to PCM samples."""

from __future__ import annotations

import numpy as np

from .audio import PCMSamples, to_int16

MIN_VOLUME = 0.0
MAX_VOLUME = 2.0


def clamp_volume(level: float) -> float:
    """Clamp a volume level into [0.0, 2.0]."""
    return max(MIN_VOLUME, min(MAX_VOLUME, float(level)))


def apply_volume(samples: PCMSamples, level: float) -> PCMSamples:
    """
    Return samples scaled by level.

    At level 1.0 the input object itself is returned. Otherwise every sample
    becomes round(sample * level) clamped to the 16-bit signed range; the
    input is never modified.
    """
    if level == 1.0:
        return samples
    return to_int16(samples.astype(np.float64) * level)
