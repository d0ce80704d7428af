"""Coordinates capture, transcription, extraction and reconciliation."""

import dataclasses
import logging
import queue
import threading
from typing import Callable, List, Optional

from .actions import TaskAction
from .audio_capture import AudioBuffer, AudioCapture, CaptureHandle
from .config import AppConfig
from .errors import (
    DeviceError,
    EngineFailure,
    ModelFileMissingError,
    ModelLoadError,
    SmartParserUnavailable,
)
from .extractor import extract_actions
from .model_cache import ModelCache
from .models import ModelSize
from .pipelines import (
    Failed,
    FailureKind,
    Finished,
    PipelineEvent,
    TasksResolved,
    TranscriptReady,
)
from .reconciler import Reconciler
from .resampler import WHISPER_SAMPLE_RATE, resample
from .smart_parser import OllamaSmartParser
from .state import DaemonStateEnum, DaemonStateManager
from .transcriber import TranscriptionEngine

logger = logging.getLogger(__name__)

NO_SPEECH_MESSAGE = "No speech detected. Try speaking louder or closer to the mic."

Extractor = Callable[[str], List[TaskAction]]


class PipelineOrchestrator:
    """Runs one utterance at a time from microphone to task list.

    Recording is driven by ``start_recording``/``stop_recording``; the heavy
    work runs on a background thread per utterance which reports
    ``PipelineEvent``s through a queue. The caller drains them with the
    non-blocking ``poll_events``, which is also where extracted actions are
    applied to the store, so no task is touched before ``TasksResolved`` is
    observed.
    """

    def __init__(
        self,
        config: AppConfig,
        capture: AudioCapture,
        model_cache: ModelCache,
        reconciler: Reconciler,
        state_manager: Optional[DaemonStateManager] = None,
        smart_parser: Optional[OllamaSmartParser] = None,
        extractor: Extractor = extract_actions,
    ):
        self.config = config
        self.capture = capture
        self.model_cache = model_cache
        self.reconciler = reconciler
        self.state_manager = state_manager or DaemonStateManager()
        self.smart_parser = smart_parser
        self.extractor = extractor
        self.model_size: ModelSize = config.whisper.model

        self._events: "queue.Queue[PipelineEvent]" = queue.Queue()
        self._handle: Optional[CaptureHandle] = None
        self._worker: Optional[threading.Thread] = None
        self._processing = False
        # The event pump and IPC handlers poll from different threads
        self._poll_lock = threading.Lock()

    @property
    def is_recording(self) -> bool:
        return self._handle is not None

    @property
    def is_processing(self) -> bool:
        return self._processing

    def level(self) -> float:
        """Live input level, 0 when not recording."""
        if self._handle is None:
            return 0.0
        return self.capture.level()

    def select_model(self, size: ModelSize) -> None:
        """Use a different model size for subsequent utterances."""
        if size != self.model_size:
            logger.info(f"Selected Whisper model '{size.value}'")
            self.model_size = size

    def preload_model(self) -> bool:
        """Warm the model cache; returns False if the model isn't available."""
        try:
            self.model_cache.get_or_load(self.model_size)
            return True
        except ModelFileMissingError as e:
            logger.info(f"Not preloading: {e}")
        except ModelLoadError as e:
            logger.error(f"Preloading failed: {e}")
        return False

    def delete_model(self, size: ModelSize) -> None:
        """Delete a model from disk, making sure it isn't used from memory afterwards."""
        self.model_cache.evict()
        self.model_cache.store.delete(size)

    def _fail_fast(self, kind: FailureKind, message: str) -> None:
        self._processing = True
        self.state_manager.set_state(DaemonStateEnum.PROCESSING)
        self._events.put(Failed(kind, message))
        self._events.put(Finished())

    def start_recording(self) -> bool:
        """Start capturing an utterance.

        Returns:
            True if recording started. Device errors are reported as a
            ``Failed`` event and leave nothing running.
        """
        if self._handle is not None:
            logger.warning("Already recording")
            return False
        if self._processing:
            logger.warning("Still processing the previous utterance")
            return False

        try:
            self._handle = self.capture.start(self.config.audio.device)
        except DeviceError as e:
            logger.error(f"Could not start recording: {e}")
            self._fail_fast(FailureKind.DEVICE_ERROR, str(e))
            return False

        self.state_manager.set_state(DaemonStateEnum.RECORDING)
        return True

    def _quality_failure(self, buffer: AudioBuffer) -> Optional[Failed]:
        """Reject recordings that aren't worth sending to the engine."""
        logger.info(
            f"Captured {len(buffer.samples)} samples, {buffer.duration_s:.2f}s, "
            f"peak {buffer.peak:.4f}, RMS {buffer.rms:.4f}"
        )
        if len(buffer.samples) == 0:
            return Failed(FailureKind.TOO_SHORT, "No audio recorded")
        if buffer.duration_s < self.config.audio.min_duration_s:
            return Failed(
                FailureKind.TOO_SHORT,
                f"Recording too short ({buffer.duration_s:.1f}s). Hold longer.",
            )
        if buffer.peak < self.config.audio.min_peak:
            return Failed(
                FailureKind.TOO_QUIET,
                f"Audio too quiet (peak: {buffer.peak:.4f}). Check mic volume.",
            )
        return None

    def stop_recording(self) -> bool:
        """Stop capturing and hand the utterance to a background worker.

        Returns:
            True if a worker was started, False if there was nothing to do
            or the recording was rejected by the quality gate.
        """
        if self._handle is None:
            logger.warning("Not recording")
            return False

        handle = self._handle
        self._handle = None
        buffer = self.capture.stop(handle)

        failure = self._quality_failure(buffer)
        if failure is not None:
            logger.warning(failure.message)
            self._fail_fast(failure.kind, failure.message)
            return False

        self._processing = True
        self.state_manager.set_state(DaemonStateEnum.PROCESSING)
        self._worker = threading.Thread(
            target=self._process_utterance,
            args=(buffer, self.model_size),
            name="utterance-worker",
            daemon=True,
        )
        self._worker.start()
        return True

    def _extract(self, transcript: str) -> List[TaskAction]:
        if self.smart_parser is not None and self.config.smart_parser.enabled:
            try:
                return self.smart_parser.classify(transcript)
            except SmartParserUnavailable as e:
                logger.warning(f"Smart parser unavailable: {e}. Using simple parser.")
        return self.extractor(transcript)

    def _process_utterance(self, buffer: AudioBuffer, size: ModelSize) -> None:
        """Worker thread body. Always ends with a Finished event."""
        try:
            samples = resample(buffer.samples, buffer.sample_rate, WHISPER_SAMPLE_RATE)
            logger.debug(
                f"Resampled {len(buffer.samples)} samples at {buffer.sample_rate} Hz "
                f"to {len(samples)} at {WHISPER_SAMPLE_RATE} Hz"
            )

            model = self.model_cache.get_or_load(size)
            engine = TranscriptionEngine(model, self.config.whisper)
            transcript = engine.transcribe(samples, self.config.whisper.language)

            if not transcript.strip():
                self._events.put(Failed(FailureKind.EMPTY_TRANSCRIPT, NO_SPEECH_MESSAGE))
                return

            self._events.put(TranscriptReady(transcript))
            actions = self._extract(transcript)
            logger.info(f"Found {len(actions)} action(s)")
            self._events.put(TasksResolved(tuple(actions)))

        except ModelFileMissingError as e:
            self._events.put(Failed(FailureKind.MODEL_FILE_MISSING, str(e)))
        except (ModelLoadError, EngineFailure) as e:
            self._events.put(Failed(FailureKind.ENGINE_FAILURE, f"Transcription error: {e}"))
        except Exception as e:
            logger.exception("Unexpected error while processing utterance")
            self._events.put(Failed(FailureKind.ENGINE_FAILURE, f"Processing error: {e}"))
        finally:
            self._events.put(Finished())

    def poll_events(self) -> List[PipelineEvent]:
        """Drain pending events without blocking.

        ``TasksResolved`` events come back with their reconcile results, and
        the state returns to IDLE on ``Finished``.
        """
        events: List[PipelineEvent] = []
        with self._poll_lock:
            while True:
                try:
                    event = self._events.get_nowait()
                except queue.Empty:
                    break

                if isinstance(event, TasksResolved):
                    results = self.reconciler.apply_all(event.actions)
                    event = dataclasses.replace(event, results=tuple(results))
                elif isinstance(event, Failed):
                    if event.is_error:
                        logger.error(event.message)
                    else:
                        logger.info(event.message)
                    self.state_manager.report_error(event.message)
                elif isinstance(event, Finished):
                    self._processing = False
                    self._worker = None
                    self.state_manager.set_state(DaemonStateEnum.IDLE)

                events.append(event)
        return events

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the current worker thread, if any."""
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
