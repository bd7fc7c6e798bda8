"""Hardware detection for subforge.

Enumerates compute devices across vendor families:
- NVIDIA GPUs (CUDA)
- Intel GPUs, discrete Arc and integrated (OpenVINO)
- AMD GPUs (reported, no accelerated runtime)
- Apple Silicon neural accelerator (CoreML)
- CPU (always)

Vendor families are probed concurrently and the results cached in a
single slot. Concurrent callers share one in-flight detection pass.
"""

import asyncio
import logging
import time
from typing import Dict, FrozenSet, List, Optional

from subforge.errors import DetectionError
from subforge.hardware.classification import SameVendorTieBreak, rank_devices
from subforge.hardware.device import ComputeDevice
from subforge.hardware.probes import DEFAULT_PROBES, ProbeFn
from subforge.utils.async_io import run_blocking

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 300.0


class HardwareDetector:
    """Detects compute devices and caches the last detection pass.

    Args:
        probes: Mapping of probe name to blocking probe function
        cache_ttl: Seconds a detection pass stays valid (0 disables caching)
        tie_break: Same-vendor ordering used by :meth:`ranked`
    """

    def __init__(
        self,
        probes: Optional[Dict[str, ProbeFn]] = None,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        tie_break: SameVendorTieBreak = SameVendorTieBreak.PLATFORM_PRIORITY,
    ):
        self.probes = dict(probes if probes is not None else DEFAULT_PROBES)
        self.cache_ttl = cache_ttl
        self.tie_break = tie_break

        self._cache: Optional[FrozenSet[ComputeDevice]] = None
        self._cached_at = 0.0
        # asyncio.Lock binds to the loop that first contends for it
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None
        self.detection_count = 0

    def _loop_lock(self) -> asyncio.Lock:
        """Lock for the running event loop, recreated when the loop changes."""
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    def _cache_valid(self) -> bool:
        if self._cache is None or self.cache_ttl <= 0:
            return False
        return (time.monotonic() - self._cached_at) < self.cache_ttl

    async def detect(self, force_refresh: bool = False) -> FrozenSet[ComputeDevice]:
        """Enumerate compute devices.

        Args:
            force_refresh: Ignore the cached pass

        Returns:
            Frozen set of detected devices (may be empty)

        Raises:
            DetectionError: A platform query failed. The error carries the
                devices the remaining probes found.
        """
        if not force_refresh and self._cache_valid():
            return self._cache

        async with self._loop_lock():
            # Another caller may have finished a pass while we waited.
            if not force_refresh and self._cache_valid():
                return self._cache
            return await self._detect_locked()

    async def _detect_locked(self) -> FrozenSet[ComputeDevice]:
        start = time.monotonic()
        names = list(self.probes)
        results = await asyncio.gather(
            *(run_blocking(self.probes[name]) for name in names),
            return_exceptions=True,
        )

        devices: List[ComputeDevice] = []
        failures: Dict[str, BaseException] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                failures[name] = result
                logger.warning(f"Hardware probe '{name}' failed: {result}")
                continue
            for device in result:
                logger.debug(f"Found {device.family.value} '{device.name}' via {name}")
            devices.extend(result)

        found = frozenset(devices)
        self.detection_count += 1
        logger.info(
            f"Detected {len(found)} compute device(s) in "
            f"{time.monotonic() - start:.2f}s"
        )

        if failures:
            detail = "; ".join(f"{n}: {e}" for n, e in failures.items())
            raise DetectionError(
                f"Hardware query failed ({detail})",
                partial_devices=found,
                failed_probes=list(failures),
            )

        self._cache = found
        self._cached_at = time.monotonic()
        return found

    async def ranked(self, force_refresh: bool = False) -> List[ComputeDevice]:
        """Detected devices ordered best first under the tie-break policy."""
        return rank_devices(await self.detect(force_refresh), self.tie_break)

    def clear_cache(self) -> None:
        """Forget the cached detection pass."""
        self._cache = None
        self._cached_at = 0.0

    @property
    def cached(self) -> Optional[FrozenSet[ComputeDevice]]:
        return self._cache if self._cache_valid() else None


# Process-wide detector shared by concurrent requests
_detector: Optional[HardwareDetector] = None


def get_detector(
    cache_ttl: Optional[float] = None,
    tie_break: Optional[SameVendorTieBreak] = None,
) -> HardwareDetector:
    """Get the process-wide hardware detector.

    Args:
        cache_ttl: Applied to the shared detector when given
        tie_break: Applied to the shared detector when given
    """
    global _detector
    if _detector is None:
        _detector = HardwareDetector()
    if cache_ttl is not None:
        _detector.cache_ttl = cache_ttl
    if tie_break is not None:
        _detector.tie_break = tie_break
    return _detector


def reset_detector() -> None:
    """Drop the process-wide detector (used by tests and settings reloads)."""
    global _detector
    _detector = None
