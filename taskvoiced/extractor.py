"""Keyword-based extraction of task actions from transcribed speech.

The extractor is deliberately simple: it looks for action keywords, falls
back to treating the utterance as a dictated list of new tasks, and filters
out the filler and hallucinated phrases Whisper tends to produce on silence.

Decision order:

1. An utterance ending in a completion suffix ("the report is done") with no
   other action keyword completes the task named before the suffix.
2. An utterance with no action keyword is split on punctuation and "and";
   every meaningful part becomes a new task.
3. Otherwise the text after the first action keyword becomes the task text of
   a single action, chosen by priority remove > complete > add.
"""

import logging
import re
from typing import List, Optional, Pattern, Set, Tuple

from .actions import ActionKind, TaskAction

logger = logging.getLogger(__name__)

# (keyword, kind) decision table; matching is case-insensitive on word boundaries
KEYWORD_TABLE: Tuple[Tuple[str, ActionKind], ...] = (
    ("done with", ActionKind.COMPLETE),
    ("finished with", ActionKind.COMPLETE),
    ("completed", ActionKind.COMPLETE),
    ("finished", ActionKind.COMPLETE),
    ("done", ActionKind.COMPLETE),
    ("mark as done", ActionKind.COMPLETE),
    ("mark done", ActionKind.COMPLETE),
    ("check off", ActionKind.COMPLETE),
    ("crossed off", ActionKind.COMPLETE),
    ("i did", ActionKind.COMPLETE),
    ("i've done", ActionKind.COMPLETE),
    ("just did", ActionKind.COMPLETE),
    ("already did", ActionKind.COMPLETE),
    ("took care of", ActionKind.COMPLETE),
    ("handled", ActionKind.COMPLETE),
    ("sorted", ActionKind.COMPLETE),
    ("wrapped up", ActionKind.COMPLETE),
    ("delete", ActionKind.REMOVE),
    ("remove", ActionKind.REMOVE),
    ("cancel", ActionKind.REMOVE),
    ("get rid of", ActionKind.REMOVE),
    ("drop", ActionKind.REMOVE),
    ("forget about", ActionKind.REMOVE),
    ("never mind", ActionKind.REMOVE),
    ("scratch", ActionKind.REMOVE),
    ("erase", ActionKind.REMOVE),
    ("add task", ActionKind.ADD),
    ("new task", ActionKind.ADD),
    ("create task", ActionKind.ADD),
    ("add", ActionKind.ADD),
    ("need to", ActionKind.ADD),
    ("should", ActionKind.ADD),
    ("must", ActionKind.ADD),
    ("have to", ActionKind.ADD),
    ("gotta", ActionKind.ADD),
    ("got to", ActionKind.ADD),
    ("want to", ActionKind.ADD),
    ("going to", ActionKind.ADD),
    ("reminder to", ActionKind.ADD),
    ("remind me to", ActionKind.ADD),
    ("don't forget to", ActionKind.ADD),
)

# Highest priority first
KIND_PRIORITY = (ActionKind.REMOVE, ActionKind.COMPLETE, ActionKind.ADD)

# Longest first so " is done" wins over " done"
TRAILING_COMPLETION_SUFFIXES = (
    " is completed",
    " are completed",
    " is finished",
    " are finished",
    " is done",
    " are done",
    " completed",
    " finished",
    " done",
)

LEADING_WORDS = ("the", "a", "an", "to", "that", "which")
TRAILING_LEADING_ARTICLES = ("the", "that")
ARTICLES = ("the", "a", "an")
TRAILING_PUNCTUATION = ".!?,"

# Filler and common Whisper hallucinations on silence
NOISE_PHRASES = frozenset(
    {
        "thank you",
        "thanks for watching",
        "thanks for listening",
        "subscribe",
        "like and subscribe",
        "please subscribe",
        "see you next time",
        "bye",
        "goodbye",
        "hello",
        "hi there",
        "um",
        "uh",
        "ah",
        "oh",
        "hmm",
        "you",
        "okay",
        "ok",
        "music",
        "applause",
        "laughter",
        "silence",
        "музыка",
        "[музыка]",
        "[music]",
        "[applause]",
        "[laughter]",
        "[silence]",
        "[inaudible]",
        "[blank_audio]",
    }
)

MIN_TASK_LENGTH = 3

_SPLIT_PATTERN = re.compile(r"[,.;]|(?<!\w)(?:and|и)(?!\w)", re.IGNORECASE)
_ARTICLE_AFTER_FIRST_WORD = re.compile(
    r"^(\S+)\s+(?:%s)\s+" % "|".join(ARTICLES), re.IGNORECASE
)


def _keyword_pattern(keyword: str) -> Pattern[str]:
    return re.compile(r"(?<!\w)%s(?!\w)" % re.escape(keyword), re.IGNORECASE)


_COMPILED_KEYWORDS: Tuple[Tuple[str, ActionKind, Pattern[str]], ...] = tuple(
    (keyword, kind, _keyword_pattern(keyword)) for keyword, kind in KEYWORD_TABLE
)


def matched_kinds(text: str) -> Set[ActionKind]:
    """Return the keyword families present anywhere in the text."""
    return {kind for _, kind, pattern in _COMPILED_KEYWORDS if pattern.search(text)}


def _strip_leading_word(text: str, words: Tuple[str, ...]) -> str:
    lowered = text.lower()
    for word in words:
        if lowered.startswith(word + " "):
            return text[len(word) + 1 :].lstrip()
    return text


def clean_task_text(text: str, drop_inner_article: bool = False) -> str:
    """Normalize a fragment into task text.

    Trims, drops one leading determiner or preposition, strips trailing
    punctuation and capitalizes. With ``drop_inner_article`` an article right
    after the first word goes too ("finish the report" -> "Finish report").
    Text that has to match a stored task keeps its inner articles.
    """
    result = _strip_leading_word(text.strip(), LEADING_WORDS)
    if drop_inner_article:
        result = _ARTICLE_AFTER_FIRST_WORD.sub(r"\1 ", result)
    result = result.rstrip().rstrip(TRAILING_PUNCTUATION).strip()
    if result:
        result = result[0].upper() + result[1:]
    return result


def is_noise(text: str) -> bool:
    """Whether a cleaned fragment is filler rather than a task."""
    lowered = text.strip().lower()
    if len(lowered) < MIN_TASK_LENGTH:
        return True
    if lowered.startswith("[") and lowered.endswith("]"):
        return True
    if lowered in NOISE_PHRASES:
        return True
    return all(not ch.isalnum() for ch in lowered)


def split_trailing_completion(text: str) -> Optional[str]:
    """Return the text before a trailing completion suffix, or None."""
    body = text.strip().rstrip(TRAILING_PUNCTUATION).rstrip()
    lowered = body.lower()
    if lowered == "done":
        return ""
    for suffix in TRAILING_COMPLETION_SUFFIXES:
        if lowered.endswith(suffix):
            return body[: len(body) - len(suffix)]
    return None


def _split_into_tasks(text: str) -> List[TaskAction]:
    actions = []
    for part in _SPLIT_PATTERN.split(text):
        task_text = clean_task_text(part, drop_inner_article=True)
        if not task_text or is_noise(task_text):
            continue
        logger.debug(f"Creating task: {task_text}")
        actions.append(TaskAction.add(task_text))
    return actions


def _text_after_first_keyword(text: str, kinds: Set[ActionKind]) -> str:
    best = None
    for keyword, kind, pattern in _COMPILED_KEYWORDS:
        if kind not in kinds:
            continue
        match = pattern.search(text)
        if match is None:
            continue
        key = (match.start(), -len(keyword))
        if best is None or key < best[0]:
            best = (key, match.end())
    if best is None:
        return ""
    return text[best[1] :]


def extract_actions(text: str) -> List[TaskAction]:
    """Classify an utterance into an ordered list of task actions."""
    if not text or not text.strip():
        return []

    kinds = matched_kinds(text)

    remainder = split_trailing_completion(text)
    if remainder is not None and not matched_kinds(remainder):
        task_text = clean_task_text(
            _strip_leading_word(remainder.strip(), TRAILING_LEADING_ARTICLES)
        )
        if not task_text:
            return []
        logger.debug(f"Completing task (trailing pattern): {task_text}")
        return [TaskAction.complete(task_text)]

    if not kinds:
        return _split_into_tasks(text)

    task_text = clean_task_text(_text_after_first_keyword(text, kinds))
    if not task_text:
        return []

    kind = next(k for k in KIND_PRIORITY if k in kinds)
    return [TaskAction(kind, task_text)]
