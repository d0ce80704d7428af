"""Whisper model catalogue and on-disk model storage."""

import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Tuple

logger = logging.getLogger(__name__)

HF_BASE_URL = "https://huggingface.co"

# The file whose presence marks a complete download; always fetched last.
MODEL_WEIGHTS_FILE = "model.bin"

_STANDARD_FILES = ("config.json", "tokenizer.json", "vocabulary.txt", MODEL_WEIGHTS_FILE)
_LARGE_V3_FILES = (
    "config.json",
    "preprocessor_config.json",
    "tokenizer.json",
    "vocabulary.json",
    MODEL_WEIGHTS_FILE,
)


class ModelSize(str, Enum):
    """Available faster-whisper model sizes."""

    TINY = "tiny"
    BASE = "base"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"

    @property
    def directory(self) -> str:
        return _MODEL_TABLE[self][0]

    @property
    def repo_url(self) -> str:
        return f"{HF_BASE_URL}/Systran/{self.directory}"

    @property
    def files(self) -> Tuple[str, ...]:
        return _MODEL_TABLE[self][1]

    @property
    def size_mb(self) -> int:
        return _MODEL_TABLE[self][2]

    def file_url(self, filename: str) -> str:
        return f"{self.repo_url}/resolve/main/{filename}"

    @classmethod
    def parse(cls, name: str) -> "ModelSize":
        """Look up a size by case-insensitive name.

        Raises:
            ValueError: If the name is not a known model size.
        """
        try:
            return cls(name.strip().lower())
        except ValueError:
            allowed = ", ".join(size.value for size in cls)
            raise ValueError(f"Invalid model name: {name!r} (choose from {allowed})")


# directory, files, approximate size in MB
_MODEL_TABLE = {
    ModelSize.TINY: ("faster-whisper-tiny", _STANDARD_FILES, 75),
    ModelSize.BASE: ("faster-whisper-base", _STANDARD_FILES, 142),
    ModelSize.SMALL: ("faster-whisper-small", _STANDARD_FILES, 466),
    ModelSize.MEDIUM: ("faster-whisper-medium", _STANDARD_FILES, 1400),
    ModelSize.LARGE: ("faster-whisper-large-v3", _LARGE_V3_FILES, 2900),
}


@dataclass(frozen=True)
class ModelInfo:
    """Catalogue entry with install status."""

    name: str
    directory: str
    size_mb: int
    installed: bool


class ModelStore:
    """Maps model sizes to canonical paths under a models directory."""

    def __init__(self, models_dir: Path):
        self.models_dir = Path(models_dir)

    def path_for(self, size: ModelSize) -> Path:
        """Canonical model directory for a size."""
        return self.models_dir / size.directory

    def weights_path(self, size: ModelSize) -> Path:
        return self.path_for(size) / MODEL_WEIGHTS_FILE

    def exists(self, size: ModelSize) -> bool:
        """A model counts as present once its weights file is in place."""
        return self.weights_path(size).is_file()

    def delete(self, size: ModelSize) -> None:
        """Remove a model from disk. Deleting a missing model is a no-op."""
        path = self.path_for(size)
        if not path.exists():
            return
        logger.info(f"Deleting model '{size.value}' at {path}")
        shutil.rmtree(path)

    def list_models(self) -> List[ModelInfo]:
        return [
            ModelInfo(
                name=size.value,
                directory=size.directory,
                size_mb=size.size_mb,
                installed=self.exists(size),
            )
            for size in ModelSize
        ]
