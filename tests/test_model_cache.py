"""Tests for the single-slot Whisper model cache."""

import threading
import time
from unittest.mock import Mock, patch

import pytest

from taskvoiced.config import WhisperConfig
from taskvoiced.errors import ModelFileMissingError, ModelLoadError
from taskvoiced.model_cache import ModelCache, RecoveringSlot
from taskvoiced.models import MODEL_WEIGHTS_FILE, ModelSize, ModelStore


def install(store: ModelStore, size: ModelSize) -> None:
    path = store.path_for(size)
    path.mkdir(parents=True, exist_ok=True)
    (path / MODEL_WEIGHTS_FILE).write_bytes(b"weights")


@pytest.fixture
def store(tmp_path):
    model_store = ModelStore(tmp_path / "models")
    install(model_store, ModelSize.BASE)
    install(model_store, ModelSize.SMALL)
    return model_store


def test_concurrent_callers_share_one_load(store):
    loads = []

    def slow_loader(size):
        loads.append(size)
        time.sleep(0.05)
        return object()

    cache = ModelCache(store, WhisperConfig(), loader=slow_loader)
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(cache.get_or_load(ModelSize.BASE))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert loads == [ModelSize.BASE]
    assert len(results) == 8
    assert all(r is results[0] for r in results)


def test_switching_size_evicts_previous_model(store):
    cache = ModelCache(store, WhisperConfig(), loader=lambda size: Mock(name=size.value))
    base = cache.get_or_load(ModelSize.BASE)
    small = cache.get_or_load(ModelSize.SMALL)

    assert small is not base
    assert cache.loaded_size == ModelSize.SMALL


def test_missing_model_file(store):
    loader = Mock()
    cache = ModelCache(store, WhisperConfig(), loader=loader)

    with pytest.raises(ModelFileMissingError) as exc_info:
        cache.get_or_load(ModelSize.LARGE)

    assert "large" in str(exc_info.value)
    loader.assert_not_called()


def test_missing_model_keeps_cached_model(store):
    cache = ModelCache(store, WhisperConfig(), loader=lambda size: object())
    base = cache.get_or_load(ModelSize.BASE)

    with pytest.raises(ModelFileMissingError):
        cache.get_or_load(ModelSize.TINY)

    assert cache.get_or_load(ModelSize.BASE) is base


def test_load_failure_leaves_cache_empty_and_usable(store):
    loader = Mock(side_effect=[RuntimeError("corrupt"), "model"])
    cache = ModelCache(store, WhisperConfig(), loader=loader)

    with pytest.raises(ModelLoadError):
        cache.get_or_load(ModelSize.BASE)
    assert cache.loaded_size is None

    assert cache.get_or_load(ModelSize.BASE) == "model"


def test_evict(store):
    cache = ModelCache(store, WhisperConfig(), loader=lambda size: object())
    cache.get_or_load(ModelSize.BASE)
    cache.evict()
    assert cache.loaded_size is None


def test_default_loader_uses_whisper_model(store):
    config = WhisperConfig(device="cpu", compute_type="int8", cpu_threads=2)
    with patch("taskvoiced.model_cache.WhisperModel") as mock_model:
        cache = ModelCache(store, config)
        model = cache.get_or_load(ModelSize.BASE)

    mock_model.assert_called_once_with(
        str(store.path_for(ModelSize.BASE)),
        device="cpu",
        compute_type="int8",
        cpu_threads=2,
    )
    assert model is mock_model.return_value


def test_slot_recovers_after_interrupted_mutation():
    slot = RecoveringSlot()
    with slot.hold():
        slot.value = (ModelSize.BASE, "model")

    with pytest.raises(RuntimeError):
        with slot.hold():
            with slot.mutating():
                slot.value = (ModelSize.SMALL, "half-built")
                raise RuntimeError("boom")

    with slot.hold() as recovered:
        assert recovered.value is None
