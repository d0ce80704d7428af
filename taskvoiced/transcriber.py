"""Audio transcription module using faster-whisper."""

import logging
from typing import Optional

import numpy as np

from .config import WhisperConfig
from .errors import EngineFailure

logger = logging.getLogger(__name__)


class TranscriptionResult:
    """Result of a transcription with metadata."""

    def __init__(
        self,
        text: str,
        language: Optional[str] = None,
        language_probability: Optional[float] = None,
        duration: Optional[float] = None,
    ):
        self.text = text
        self.language = language
        self.language_probability = language_probability
        self.duration = duration

    def __str__(self) -> str:
        return self.text


class TranscriptionEngine:
    """Runs a shared, already-loaded Whisper model over one utterance."""

    def __init__(self, model, whisper_config: WhisperConfig):
        """Initialize the engine.

        Args:
            model: Loaded faster-whisper model, shared read-only.
            whisper_config: Decoding settings.
        """
        self.model = model
        self.whisper_config = whisper_config

    def transcribe_detailed(
        self, samples: np.ndarray, language: Optional[str] = None
    ) -> TranscriptionResult:
        """Transcribe 16 kHz mono samples, keeping language metadata.

        Raises:
            EngineFailure: If inference fails.
        """
        try:
            # Each call gets its own segment generator and decoding state
            segments_generator, info = self.model.transcribe(
                np.asarray(samples, dtype=np.float32),
                language=language or self.whisper_config.language,
                beam_size=self.whisper_config.beam_size,
                vad_filter=self.whisper_config.vad_filter,
            )
            segments = list(segments_generator)
        except Exception as e:
            logger.exception("Error during transcription")
            raise EngineFailure(f"Transcription failed: {e}") from e

        full_text = " ".join(seg.text.strip() for seg in segments).strip()
        return TranscriptionResult(
            text=full_text,
            language=getattr(info, "language", None),
            language_probability=getattr(info, "language_probability", None),
            duration=getattr(info, "duration", None),
        )

    def transcribe(self, samples: np.ndarray, language: Optional[str] = None) -> str:
        """Transcribe samples to text. An empty string means no speech."""
        result = self.transcribe_detailed(samples, language)
        if result.text:
            logger.info(
                f"Transcribed [{result.language or 'unknown'}]: {result.text[:100]}"
            )
            if result.language_probability is not None:
                logger.debug(f"Language probability: {result.language_probability:.2f}")
        else:
            logger.debug("No transcription result")
        return result.text
