"""Linear-interpolation resampling of mono float audio."""

import numpy as np

# Whisper expects 16 kHz input
WHISPER_SAMPLE_RATE = 16000


def resample(samples: np.ndarray, from_rate_hz: float, to_rate_hz: float) -> np.ndarray:
    """Resample a mono buffer from one rate to another.

    Output sample ``i`` interpolates linearly between source samples
    ``floor(i * ratio)`` and the one after it, where ``ratio = from / to``.
    At the trailing edge the last valid sample is repeated instead of
    extrapolating. Rates within 1 Hz of each other return the input as-is.

    Args:
        samples: Mono float samples.
        from_rate_hz: Rate the samples were captured at. Must be positive.
        to_rate_hz: Target rate. Must be positive.

    Returns:
        Resampled float32 array of length ``floor(len(samples) / ratio)``.
    """
    if abs(from_rate_hz - to_rate_hz) < 1.0:
        return samples

    samples = np.asarray(samples, dtype=np.float32)
    ratio = from_rate_hz / to_rate_hz
    new_len = int(len(samples) / ratio)
    if new_len <= 0 or len(samples) == 0:
        return np.zeros(0, dtype=np.float32)

    positions = np.arange(new_len, dtype=np.float64) * ratio
    last = len(samples) - 1
    idx = np.minimum(positions.astype(np.int64), last)
    nxt = np.minimum(idx + 1, last)
    frac = (positions - idx).astype(np.float32)

    return samples[idx] * (1.0 - frac) + samples[nxt] * frac
