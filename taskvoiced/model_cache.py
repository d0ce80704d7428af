"""Single-slot cache for the loaded Whisper model."""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Tuple

from faster_whisper import WhisperModel

from .config import WhisperConfig
from .errors import ModelFileMissingError, ModelLoadError
from .models import ModelSize, ModelStore

logger = logging.getLogger(__name__)

ModelLoader = Callable[[ModelSize], Any]


class RecoveringSlot:
    """Lock-guarded slot that resets itself after an interrupted mutation.

    Mutations happen inside ``mutating()``, which marks the slot dirty until
    the block exits normally. If the block raised, the mark stays, and the
    next ``hold()`` empties the slot before handing it out, so callers never
    see half-written contents.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._value: Optional[Tuple[ModelSize, Any]] = None
        self._dirty = False

    @contextmanager
    def hold(self) -> Iterator["RecoveringSlot"]:
        with self._lock:
            if self._dirty:
                logger.warning("Recovering model cache from interrupted update, clearing it")
                self._value = None
                self._dirty = False
            yield self

    @contextmanager
    def mutating(self) -> Iterator[None]:
        """Must be entered while holding the slot."""
        self._dirty = True
        yield
        self._dirty = False

    @property
    def value(self) -> Optional[Tuple[ModelSize, Any]]:
        return self._value

    @value.setter
    def value(self, new_value: Optional[Tuple[ModelSize, Any]]) -> None:
        self._value = new_value


class ModelCache:
    """Keeps at most one Whisper model resident and reuses it across calls."""

    def __init__(
        self,
        store: ModelStore,
        whisper_config: WhisperConfig,
        loader: Optional[ModelLoader] = None,
    ):
        """Initialize the cache.

        Args:
            store: Where model files live on disk.
            whisper_config: Device/compute settings for loading.
            loader: Optional override that builds a model for a size.
        """
        self.store = store
        self.whisper_config = whisper_config
        self._loader = loader or self._load_whisper_model
        self._slot = RecoveringSlot()

    def _load_whisper_model(self, size: ModelSize) -> WhisperModel:
        path = self.store.path_for(size)
        return WhisperModel(
            str(path),
            device=self.whisper_config.device,
            compute_type=self.whisper_config.compute_type,
            cpu_threads=self.whisper_config.cpu_threads,
        )

    @property
    def loaded_size(self) -> Optional[ModelSize]:
        with self._slot.hold() as slot:
            return slot.value[0] if slot.value else None

    def get_or_load(self, size: ModelSize) -> Any:
        """Return the model for a size, loading it if it isn't resident.

        The lock is held while loading, so concurrent callers asking for the
        same size wait for the first load instead of starting their own.

        Raises:
            ModelFileMissingError: The model has not been downloaded.
            ModelLoadError: The files exist but loading failed.
        """
        with self._slot.hold() as slot:
            if slot.value is not None and slot.value[0] == size:
                logger.debug(f"Using cached Whisper model '{size.value}'")
                return slot.value[1]

            if not self.store.exists(size):
                raise ModelFileMissingError(size, self.store.path_for(size))

            with slot.mutating():
                if slot.value is not None:
                    logger.info(f"Evicting Whisper model '{slot.value[0].value}'")
                    slot.value = None

                logger.info(
                    f"Loading Whisper model '{size.value}' "
                    f"(Device: {self.whisper_config.device}, "
                    f"Compute: {self.whisper_config.compute_type}, "
                    f"CPU threads: {self.whisper_config.cpu_threads})"
                )
                try:
                    model = self._loader(size)
                except Exception as e:
                    raise ModelLoadError(f"Failed to load Whisper model: {e}") from e

                slot.value = (size, model)

            logger.info("Whisper model loaded successfully")
            return model

    def evict(self) -> None:
        """Drop whatever model is resident."""
        with self._slot.hold() as slot:
            with slot.mutating():
                slot.value = None
        logger.info("Whisper cache cleared")
