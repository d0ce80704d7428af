"""Model download as a stream of progress events."""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Union

import requests

from .errors import DownloadError
from .models import MODEL_WEIGHTS_FILE, ModelSize, ModelStore

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
CONNECT_TIMEOUT_S = 10.0
READ_TIMEOUT_S = 60.0
PARTIAL_SUFFIX = ".part"


@dataclass(frozen=True)
class DownloadProgress:
    """Bytes received so far; total is 0 while unknown."""

    downloaded: int
    total: int

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(self.downloaded / self.total, 1.0)


@dataclass(frozen=True)
class DownloadComplete:
    path: Path


@dataclass(frozen=True)
class DownloadFailed:
    reason: str


DownloadEvent = Union[DownloadProgress, DownloadComplete, DownloadFailed]


def _ordered_files(size: ModelSize) -> List[str]:
    # The weights file marks a complete model, so it must land last
    files = [f for f in size.files if f != MODEL_WEIGHTS_FILE]
    return files + [MODEL_WEIGHTS_FILE]


def _expected_total(size: ModelSize) -> int:
    return size.size_mb * 1_000_000


def _cleanup(model_dir: Path, created_dir: bool) -> None:
    """Remove everything a failed download left behind."""
    if created_dir:
        shutil.rmtree(model_dir, ignore_errors=True)
        return
    for path in model_dir.glob(f"*{PARTIAL_SUFFIX}"):
        path.unlink(missing_ok=True)
    (model_dir / MODEL_WEIGHTS_FILE).unlink(missing_ok=True)


def stream_download(
    size: ModelSize,
    store: ModelStore,
    session: Optional[requests.Session] = None,
) -> Iterator[DownloadEvent]:
    """Download a model, yielding progress and then exactly one terminal event.

    Each file is written to a ``.part`` file and renamed once complete. If
    anything fails, every file written by this download is removed so no
    truncated model is left at the canonical path.
    """
    model_dir = store.path_for(size)
    if store.exists(size):
        logger.info(f"Model '{size.value}' already present at {model_dir}")
        yield DownloadComplete(model_dir)
        return

    session = session or requests.Session()
    created_dir = not model_dir.exists()
    downloaded = 0
    total = _expected_total(size)

    try:
        model_dir.mkdir(parents=True, exist_ok=True)
        yield DownloadProgress(downloaded, total)

        for filename in _ordered_files(size):
            url = size.file_url(filename)
            target = model_dir / filename
            partial = model_dir / (filename + PARTIAL_SUFFIX)
            logger.info(f"Downloading {url}")

            with session.get(
                url, stream=True, timeout=(CONNECT_TIMEOUT_S, READ_TIMEOUT_S)
            ) as response:
                if response.status_code != 200:
                    raise DownloadError(
                        f"Failed to download {filename}: HTTP {response.status_code}"
                    )

                if filename == MODEL_WEIGHTS_FILE:
                    length = int(response.headers.get("content-length") or 0)
                    if length:
                        total = downloaded + length

                with open(partial, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:
                            continue
                        f.write(chunk)
                        downloaded += len(chunk)
                        yield DownloadProgress(downloaded, max(total, downloaded))

            partial.replace(target)

    except Exception as e:
        logger.error(f"Download of model '{size.value}' failed: {e}")
        _cleanup(model_dir, created_dir)
        yield DownloadFailed(f"Download error: {e}")
        return
    except GeneratorExit:
        # Consumer stopped iterating mid-download
        _cleanup(model_dir, created_dir)
        raise

    logger.info(f"Model '{size.value}' downloaded to {model_dir}")
    yield DownloadComplete(model_dir)


def download(
    size: ModelSize,
    store: ModelStore,
    on_progress: Optional[Callable[[int, int], None]] = None,
    session: Optional[requests.Session] = None,
) -> Path:
    """Download a model, reporting progress through a callback.

    Raises:
        DownloadError: If the download failed.
    """
    for event in stream_download(size, store, session=session):
        if isinstance(event, DownloadProgress):
            if on_progress is not None:
                on_progress(event.downloaded, event.total)
        elif isinstance(event, DownloadComplete):
            return event.path
        else:
            raise DownloadError(event.reason)
    raise DownloadError("Download ended without a result")
