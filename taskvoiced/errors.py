"""Exception hierarchy for the voice-to-task pipeline."""


class TaskVoiceError(Exception):
    """Base class for all taskvoiced errors."""


class DeviceError(TaskVoiceError):
    """Audio capture could not be set up."""


class NoDeviceError(DeviceError):
    """No usable input device matched the selector."""


class UnsupportedFormatError(DeviceError):
    """The device rejected the requested stream format."""


class StreamStartError(DeviceError):
    """The input stream could not be opened or started."""


class ModelFileMissingError(TaskVoiceError):
    """The requested Whisper model has not been downloaded yet."""

    def __init__(self, size, path):
        self.size = size
        self.path = path
        super().__init__(
            f"Model {path.name} not found. Please download the '{size.value}' model first."
        )


class ModelLoadError(TaskVoiceError):
    """The model files exist but could not be loaded."""


class EngineFailure(TaskVoiceError):
    """Inference failed for a single call."""


class SmartParserUnavailable(TaskVoiceError):
    """The remote smart parser could not be reached or returned garbage."""


class PersistenceError(TaskVoiceError):
    """A task store operation failed."""


class DownloadError(TaskVoiceError):
    """A model download failed."""
