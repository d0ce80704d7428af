"""Task actions extracted from an utterance."""

from dataclasses import dataclass
from enum import Enum


class ActionKind(str, Enum):
    """What an action does to the task list."""

    ADD = "add"
    COMPLETE = "complete"
    REMOVE = "remove"


@dataclass(frozen=True)
class TaskAction:
    """A single add/complete/remove operation with its task text."""

    kind: ActionKind
    text: str

    @classmethod
    def add(cls, text: str) -> "TaskAction":
        return cls(ActionKind.ADD, text)

    @classmethod
    def complete(cls, text: str) -> "TaskAction":
        return cls(ActionKind.COMPLETE, text)

    @classmethod
    def remove(cls, text: str) -> "TaskAction":
        return cls(ActionKind.REMOVE, text)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.text}"
