"""Events reported by the voice-to-task pipeline."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Tuple, Union

from .actions import TaskAction
from .reconciler import ReconcileResult


class FailureKind(str, Enum):
    """Why an utterance produced no actions."""

    DEVICE_ERROR = "device_error"
    TOO_SHORT = "too_short"
    TOO_QUIET = "too_quiet"
    MODEL_FILE_MISSING = "model_file_missing"
    ENGINE_FAILURE = "engine_failure"
    EMPTY_TRANSCRIPT = "empty_transcript"


@dataclass(frozen=True)
class TranscriptReady:
    text: str


@dataclass(frozen=True)
class TasksResolved:
    """Actions extracted from the transcript.

    ``results`` is filled in once the actions have been applied to the store.
    """

    actions: Tuple[TaskAction, ...]
    results: Tuple[ReconcileResult, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Failed:
    kind: FailureKind
    message: str

    @property
    def is_error(self) -> bool:
        # Silence is reported through the same channel but isn't a fault
        return self.kind != FailureKind.EMPTY_TRANSCRIPT


@dataclass(frozen=True)
class Finished:
    pass


PipelineEvent = Union[TranscriptReady, TasksResolved, Failed, Finished]
