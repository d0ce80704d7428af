"""Tests for the transcription engine."""

from unittest.mock import Mock

import numpy as np
import pytest

from taskvoiced.config import WhisperConfig
from taskvoiced.errors import EngineFailure
from taskvoiced.transcriber import TranscriptionEngine


def make_segment(text):
    segment = Mock()
    segment.text = text
    return segment


@pytest.fixture
def model():
    model = Mock()
    info = Mock(language="en", language_probability=0.98, duration=1.5)
    model.transcribe.return_value = (
        iter([make_segment(" Buy milk, "), make_segment(" call mom. ")]),
        info,
    )
    return model


def test_transcribe_joins_segments(model):
    engine = TranscriptionEngine(model, WhisperConfig(beam_size=3, vad_filter=False))
    samples = np.zeros(16000, dtype=np.float64)

    text = engine.transcribe(samples)

    assert text == "Buy milk, call mom."
    args, kwargs = model.transcribe.call_args
    assert args[0].dtype == np.float32
    assert kwargs == {"language": "en", "beam_size": 3, "vad_filter": False}


def test_language_override(model):
    engine = TranscriptionEngine(model, WhisperConfig())
    engine.transcribe(np.zeros(10, dtype=np.float32), language="ru")
    assert model.transcribe.call_args.kwargs["language"] == "ru"


def test_detailed_result_metadata(model):
    engine = TranscriptionEngine(model, WhisperConfig())
    result = engine.transcribe_detailed(np.zeros(10, dtype=np.float32))
    assert result.language == "en"
    assert result.duration == 1.5
    assert str(result) == "Buy milk, call mom."


def test_no_speech_is_empty_string():
    model = Mock()
    model.transcribe.return_value = (iter([]), Mock())
    engine = TranscriptionEngine(model, WhisperConfig())
    assert engine.transcribe(np.zeros(10, dtype=np.float32)) == ""


def test_inference_error_is_engine_failure():
    model = Mock()
    model.transcribe.side_effect = RuntimeError("CUDA out of memory")
    engine = TranscriptionEngine(model, WhisperConfig())

    with pytest.raises(EngineFailure, match="CUDA out of memory"):
        engine.transcribe(np.zeros(10, dtype=np.float32))


def test_failure_while_decoding_segments():
    def segments():
        yield make_segment("Buy")
        raise RuntimeError("decoder crashed")

    model = Mock()
    model.transcribe.return_value = (segments(), Mock())
    engine = TranscriptionEngine(model, WhisperConfig())

    with pytest.raises(EngineFailure):
        engine.transcribe(np.zeros(10, dtype=np.float32))
