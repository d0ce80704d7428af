"""Applies extracted task actions to the task store."""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .actions import ActionKind, TaskAction
from .errors import PersistenceError
from .task_store import TaskRecord, TaskStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of applying one action.

    ``record`` is the inserted, completed or deleted task; it is None for a
    removal that matched nothing or when ``error`` is set.
    """

    action: TaskAction
    record: Optional[TaskRecord] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def normalize_task_text(text: str) -> str:
    text = text.strip()
    if text:
        text = text[0].upper() + text[1:]
    return text


class Reconciler:
    """Matches actions against existing tasks and persists the result."""

    def __init__(self, store: TaskStore):
        self.store = store

    def apply_add(self, text: str) -> TaskRecord:
        record = self.store.insert(normalize_task_text(text))
        logger.info(f"Added task #{record.id}: {record.text}")
        return record

    def apply_complete(self, text: str) -> TaskRecord:
        """Complete the first open task containing the text, or log a new completed one."""
        existing = self.store.find_by_fuzzy_text(text, prefer_exact=False)
        if existing is not None:
            record = self.store.set_completed(existing.id, True)
            logger.info(f"Completed task #{record.id}: {record.text}")
            return record

        created = self.store.insert(normalize_task_text(text))
        record = self.store.set_completed(created.id, True)
        logger.info(f"No open task matched '{text}', recorded #{record.id} as done")
        return record

    def apply_remove(self, text: str) -> Optional[TaskRecord]:
        """Delete the best match for the text. Returns None if nothing matched."""
        match = self.store.find_by_fuzzy_text(text, prefer_exact=True)
        if match is None:
            logger.info(f"No task matched '{text}' for removal")
            return None
        self.store.delete(match.id)
        logger.info(f"Deleted task #{match.id}: {match.text}")
        return match

    def apply(self, action: TaskAction) -> Optional[TaskRecord]:
        if action.kind == ActionKind.ADD:
            return self.apply_add(action.text)
        elif action.kind == ActionKind.COMPLETE:
            return self.apply_complete(action.text)
        else:
            return self.apply_remove(action.text)

    def apply_all(self, actions: Iterable[TaskAction]) -> List[ReconcileResult]:
        """Apply actions in order; a store failure only affects its own action."""
        results = []
        for action in actions:
            try:
                results.append(ReconcileResult(action=action, record=self.apply(action)))
            except PersistenceError as e:
                logger.error(f"Failed to apply '{action}': {e}")
                results.append(ReconcileResult(action=action, error=str(e)))
        return results
