"""Voice-to-task daemon: speak a sentence, get your task list updated."""

__version__ = "0.1.0"
