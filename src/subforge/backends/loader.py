"""Native inference module loading and validation.

A native module is any importable module (compiled extension or plain
Python) exposing a callable ``whisper(params)`` entry point. Modules are
looked up in the addons directory first, then on the import path.
"""

import asyncio
import importlib
import importlib.machinery
import importlib.util
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from subforge.backends.catalog import BackendDescriptor
from subforge.errors import LoadError
from subforge.hardware.device import BackendKind
from subforge.utils.async_io import run_blocking, run_detached

logger = logging.getLogger(__name__)

REQUIRED_ENTRY_POINTS = ("whisper",)

DEFAULT_VALIDATION_TIMEOUT = 5.0
VALIDATION_TIMEOUTS = {BackendKind.OPENVINO: 10.0}

# A validation call has no model; complaints about it prove the module works.
TOLERATED_VALIDATION_ERRORS = ("model", "file")


@dataclass
class LoadedAddon:
    """Handle to a loaded native module."""
    module: Any
    module_name: str
    kind: BackendKind
    path: Optional[Path] = None

    def whisper(self, params: Dict[str, Any]) -> Any:
        """Invoke the native entry point (blocking)."""
        return self.module.whisper(params)


class AddonLoader:
    """Loads the native module named by a backend descriptor.

    The loader tries the descriptor's module names in order and returns the
    first one that imports and passes validation. It never retries a
    module; retry decisions belong to the recovery coordinator.

    Args:
        addons_dir: Directory searched before the import path
        entry_points: Attributes every module must expose as callables
        validate: Run the functional validation call after import
    """

    def __init__(
        self,
        addons_dir: Optional[Path] = None,
        entry_points: Sequence[str] = REQUIRED_ENTRY_POINTS,
        validate: bool = True,
    ):
        self.addons_dir = Path(addons_dir) if addons_dir else None
        self.entry_points = tuple(entry_points)
        self.validate = validate

    async def load(self, descriptor: BackendDescriptor) -> LoadedAddon:
        """Load the first usable module for a descriptor.

        Raises:
            LoadError: No module could be imported and validated. The
                message lists why each candidate module was rejected.
        """
        rejected: List[str] = []

        for name in descriptor.module_names:
            try:
                module, path = await run_blocking(self._import, name)
            except Exception as e:
                logger.debug(f"Module {name} failed to import: {e}")
                rejected.append(f"{name}: {e}")
                continue

            missing = self.missing_entry_points(module)
            if missing:
                logger.warning(f"Module {name} is missing entry points: {', '.join(missing)}")
                rejected.append(f"{name}: missing entry points {', '.join(missing)}")
                continue

            addon = LoadedAddon(module=module, module_name=name, kind=descriptor.kind, path=path)
            if self.validate:
                try:
                    await self._validate(addon)
                except LoadError as e:
                    rejected.append(str(e))
                    continue

            logger.info(f"Loaded {descriptor.name} module {name}")
            return addon

        raise LoadError(
            f"No usable {descriptor.name} module ({'; '.join(rejected) or 'none configured'})",
            backend=descriptor.kind.value,
            module_names=descriptor.module_names,
        )

    def missing_entry_points(self, module: Any) -> List[str]:
        """Required entry points the module does not expose as callables."""
        return [ep for ep in self.entry_points if not callable(getattr(module, ep, None))]

    def _import(self, name: str) -> Tuple[Any, Optional[Path]]:
        path = self.find_module_file(name)
        if path is None:
            return importlib.import_module(name), None

        spec = importlib.util.spec_from_file_location(name, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot create a module spec for {path}")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module, path

    def find_module_file(self, name: str) -> Optional[Path]:
        """Locate ``name`` in the addons directory, extensions first."""
        if not self.addons_dir:
            return None
        for suffix in list(importlib.machinery.EXTENSION_SUFFIXES) + [".py"]:
            candidate = self.addons_dir / f"{name}{suffix}"
            if candidate.is_file():
                return candidate
        return None

    async def _validate(self, addon: LoadedAddon) -> None:
        """Call the entry point in validate-only mode."""
        timeout = VALIDATION_TIMEOUTS.get(addon.kind, DEFAULT_VALIDATION_TIMEOUT)
        try:
            await asyncio.wait_for(
                run_detached(addon.whisper, {"model": "", "validate_only": True}),
                timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"{addon.module_name}: validation call still running after {timeout:.0f}s, "
                f"leaving its thread behind"
            )
            raise LoadError(
                f"{addon.module_name}: no validation response within {timeout:.0f}s",
                backend=addon.kind.value,
                module_names=(addon.module_name,),
            )
        except Exception as e:
            message = str(e).lower()
            if any(word in message for word in TOLERATED_VALIDATION_ERRORS):
                logger.debug(f"{addon.module_name}: tolerated validation error: {e}")
                return
            raise LoadError(
                f"{addon.module_name}: validation failed: {e}",
                backend=addon.kind.value,
                module_names=(addon.module_name,),
            ) from e
