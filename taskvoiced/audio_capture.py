"""Audio capture module."""

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Union

import numpy as np
import sounddevice as sd

from .errors import NoDeviceError, StreamStartError, UnsupportedFormatError

logger = logging.getLogger(__name__)

AUDIO_DTYPE = np.float32

# Level meter: RMS is scaled up so normal speech reaches the top of the range
LEVEL_GAIN = 4.0
LEVEL_DECAY = 0.9

DeviceSelector = Optional[Union[int, str]]


@dataclass
class AudioBuffer:
    """Mono float samples captured from one recording."""

    samples: np.ndarray
    sample_rate: int

    @property
    def duration_s(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return len(self.samples) / self.sample_rate

    @property
    def peak(self) -> float:
        if len(self.samples) == 0:
            return 0.0
        return float(np.max(np.abs(self.samples)))

    @property
    def rms(self) -> float:
        if len(self.samples) == 0:
            return 0.0
        return float(np.sqrt(np.mean(np.square(self.samples))))


@dataclass
class CaptureHandle:
    """Identifies one running capture session."""

    device: int
    device_name: str
    sample_rate: int
    channels: int


def smooth_level(current: float, new: float) -> float:
    """Rise immediately, fall off gradually."""
    if new > current:
        return new
    return current * LEVEL_DECAY + new * (1.0 - LEVEL_DECAY)


class AudioCapture:
    """Captures microphone audio through a sounddevice InputStream."""

    def __init__(self):
        self._lock = threading.Lock()
        self._stream: Optional[sd.InputStream] = None
        self._handle: Optional[CaptureHandle] = None
        self._chunks: List[np.ndarray] = []
        self._level = 0.0
        self._accepting = False

    @property
    def is_running(self) -> bool:
        return self._stream is not None

    def _resolve_device(self, selector: DeviceSelector) -> int:
        """Turn a device selector into a device index with input channels."""
        try:
            if selector is None:
                index = sd.default.device[0]
                if index is None or index < 0:
                    raise NoDeviceError("No default input device")
            elif isinstance(selector, int):
                index = selector
            else:
                index = None
                needle = selector.lower()
                for i, dev in enumerate(sd.query_devices()):
                    if needle in dev["name"].lower() and dev["max_input_channels"] > 0:
                        index = i
                        break
                if index is None:
                    raise NoDeviceError(f"No input device matching '{selector}'")

            info = sd.query_devices(index)
        except NoDeviceError:
            raise
        except (ValueError, sd.PortAudioError) as e:
            raise NoDeviceError(f"No audio device found: {e}") from e

        if info["max_input_channels"] <= 0:
            raise NoDeviceError(f"Device '{info['name']}' has no input channels")
        return index

    def _audio_callback(self, indata, frames, time_info, status):
        """Realtime callback (runs on the PortAudio thread)."""
        if status:
            logger.debug(f"Input stream status: {status}")

        if indata.ndim > 1 and indata.shape[1] > 1:
            mono = indata.mean(axis=1).astype(AUDIO_DTYPE)
        else:
            mono = indata.reshape(-1).astype(AUDIO_DTYPE)

        if len(mono) == 0:
            return

        rms = float(np.sqrt(np.mean(np.square(mono))))
        new_level = min(rms * LEVEL_GAIN, 1.0)

        with self._lock:
            if not self._accepting:
                return
            self._chunks.append(mono)
            self._level = smooth_level(self._level, new_level)

    def start(self, device: DeviceSelector = None) -> CaptureHandle:
        """Open the input device and start capturing.

        Args:
            device: Device index, name substring, or None for the default.

        Returns:
            Handle for the running session.

        Raises:
            NoDeviceError: No matching input device.
            UnsupportedFormatError: The device rejected float32 input.
            StreamStartError: The stream could not be started.
        """
        if self._stream is not None:
            raise StreamStartError("Audio capture is already running")

        index = self._resolve_device(device)
        info = sd.query_devices(index)
        sample_rate = int(info["default_samplerate"])
        channels = max(1, min(int(info["max_input_channels"]), 2))

        try:
            sd.check_input_settings(
                device=index,
                channels=channels,
                samplerate=sample_rate,
                dtype="float32",
            )
        except (ValueError, sd.PortAudioError) as e:
            raise UnsupportedFormatError(f"Unsupported audio format: {e}") from e

        with self._lock:
            self._chunks = []
            self._level = 0.0
            self._accepting = True

        stream = None
        try:
            stream = sd.InputStream(
                device=index,
                channels=channels,
                samplerate=sample_rate,
                dtype="float32",
                callback=self._audio_callback,
            )
            stream.start()
        except Exception as e:
            with self._lock:
                self._accepting = False
                self._chunks = []
            if stream is not None:
                try:
                    stream.close()
                except Exception:
                    logger.debug("Ignoring error while closing failed stream", exc_info=True)
            raise StreamStartError(f"Failed to start recording: {e}") from e

        self._stream = stream
        self._handle = CaptureHandle(
            device=index,
            device_name=info["name"],
            sample_rate=sample_rate,
            channels=channels,
        )
        logger.info(
            f"Recording from '{info['name']}' at {sample_rate} Hz, {channels} channel(s)"
        )
        return self._handle

    def level(self) -> float:
        """Current smoothed input level in [0, 1]."""
        return self._level

    def stop(self, handle: CaptureHandle) -> AudioBuffer:
        """Stop capturing and hand over the recorded samples.

        No sample is appended once this returns.
        """
        if handle is not self._handle or self._stream is None:
            raise ValueError("Capture handle is not the active session")

        stream = self._stream
        self._stream = None
        self._handle = None
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning(f"Error closing input stream: {e}")

        with self._lock:
            self._accepting = False
            chunks = self._chunks
            self._chunks = []
            self._level = 0.0

        if chunks:
            samples = np.concatenate(chunks)
        else:
            samples = np.zeros(0, dtype=AUDIO_DTYPE)

        logger.info(
            f"Stopped recording: {len(samples)} samples "
            f"({len(samples) / handle.sample_rate:.2f}s)"
        )
        return AudioBuffer(samples=samples, sample_rate=handle.sample_rate)
