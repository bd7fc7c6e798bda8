"""Speech model acquisition.

Models are whisper.cpp ``ggml-<model>.bin`` files kept in the models
directory and downloaded on first use.
"""

import logging
import threading
import uuid
from pathlib import Path
from typing import Callable, Dict, Optional

import requests

from subforge.errors import ModelUnavailableError, NetworkError
from subforge.utils.async_io import run_blocking

logger = logging.getLogger(__name__)

MODEL_SOURCES = {
    "huggingface": "https://huggingface.co/ggerganov/whisper.cpp/resolve/main",
    "hf-mirror": "https://hf-mirror.com/ggerganov/whisper.cpp/resolve/main",
}

CHUNK_SIZE = 1024 * 1024
DOWNLOAD_TIMEOUT = 30

# 4xx statuses worth retrying (request timeout, rate limited)
TRANSIENT_STATUS = frozenset({408, 429})


class ModelStore:
    """Resolves model files and downloads missing ones.

    Args:
        models_dir: Directory holding model files
        source: Download mirror ('huggingface' or 'hf-mirror')
        session: requests session (created lazily)
        timeout: Connect/read timeout in seconds
    """

    def __init__(
        self,
        models_dir: Path,
        source: str = "huggingface",
        session: Optional[requests.Session] = None,
        timeout: float = DOWNLOAD_TIMEOUT,
    ):
        if source not in MODEL_SOURCES:
            raise ValueError(f"Unknown model source '{source}'. Valid sources: {list(MODEL_SOURCES)}")
        self.models_dir = Path(models_dir)
        self.source = source
        self.timeout = timeout
        self._session = session
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({"User-Agent": "subforge"})
        return self._session

    def model_path(self, model_id: str) -> Path:
        return self.models_dir / f"ggml-{model_id}.bin"

    def url_for(self, model_id: str) -> str:
        return f"{MODEL_SOURCES[self.source]}/ggml-{model_id}.bin"

    def is_available(self, model_id: str) -> bool:
        path = self.model_path(model_id)
        return path.is_file() and path.stat().st_size > 0

    def remove(self, model_id: str) -> bool:
        """Delete a local model file. Returns True if one was removed."""
        path = self.model_path(model_id)
        if path.exists():
            path.unlink()
            logger.info(f"Removed model file {path}")
            return True
        return False

    def _model_lock(self, model_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(model_id, threading.Lock())

    def download(
        self,
        model_id: str,
        progress: Optional[Callable[[float], None]] = None,
        force: bool = False,
    ) -> Path:
        """Return the local model path, downloading it if needed (blocking).

        Concurrent calls for the same model are serialized; a caller that
        waited for another download reuses its file.

        Args:
            model_id: Model name, e.g. 'base.en' or 'large-v3-q5_0'
            progress: Called with the download percentage (0-100)
            force: Download again even if a local copy exists

        Raises:
            ModelUnavailableError: The source rejected the request (4xx)
            NetworkError: The download was interrupted or failed transiently
        """
        path = self.model_path(model_id)
        if not force and self.is_available(model_id):
            return path

        with self._model_lock(model_id):
            if not force and self.is_available(model_id):
                logger.debug(f"Model {model_id} was downloaded by another request")
                return path
            return self._fetch(model_id, path, progress)

    def _fetch(
        self,
        model_id: str,
        path: Path,
        progress: Optional[Callable[[float], None]],
    ) -> Path:
        url = self.url_for(model_id)
        # Unique per download; the final rename is atomic.
        partial = path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}.part")
        self.models_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Downloading model {model_id} from {url}")

        try:
            with self._get_session().get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                total = int(response.headers.get("Content-Length") or 0)
                written = 0
                with open(partial, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:
                            continue
                        f.write(chunk)
                        written += len(chunk)
                        if progress and total:
                            progress(min(100.0, written * 100.0 / total))
        except requests.exceptions.HTTPError as e:
            partial.unlink(missing_ok=True)
            status = e.response.status_code if e.response is not None else None
            if status is not None and 400 <= status < 500 and status not in TRANSIENT_STATUS:
                raise ModelUnavailableError(
                    f"Model {model_id} is not available from {self.source} (HTTP {status})",
                    model_id=model_id,
                    status_code=status,
                ) from e
            raise NetworkError(f"Model download failed for {model_id}: {e}") from e
        except requests.exceptions.RequestException as e:
            partial.unlink(missing_ok=True)
            raise NetworkError(f"Model download failed for {model_id}: {e}") from e

        if total and written != total:
            partial.unlink(missing_ok=True)
            raise NetworkError(
                f"Model download for {model_id} ended early ({written} of {total} bytes)"
            )

        partial.replace(path)
        if progress:
            progress(100.0)
        logger.info(f"Model {model_id} saved to {path} ({written / (1024 * 1024):.1f}MB)")
        return path

    async def acquire(
        self,
        model_id: str,
        progress: Optional[Callable[[float], None]] = None,
        force: bool = False,
    ) -> Path:
        """Awaitable :meth:`download`, run in the shared thread pool."""
        return await run_blocking(self.download, model_id, progress, force)
