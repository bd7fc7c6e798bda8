"""Tests for native module loading and validation."""
import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from unittest.mock import patch

import pytest

from subforge.backends.catalog import DEFAULT_DESCRIPTORS
from subforge.backends.loader import AddonLoader, LoadedAddon
from subforge.errors import LoadError
from subforge.hardware.device import BackendKind
from subforge.utils import async_io

CPU = DEFAULT_DESCRIPTORS[BackendKind.CPU]
CUDA = DEFAULT_DESCRIPTORS[BackendKind.CUDA]

BROKEN_VALIDATION = '''
def whisper(params):
    raise RuntimeError("illegal instruction")
'''

SLOW_VALIDATION = '''
import time


def whisper(params):
    time.sleep(1.0)
'''


class TestAddonLoader:
    """Tests for AddonLoader.load."""

    async def test_loads_module_from_addons_dir(self, addons):
        """Test loading a module and tolerating the model-less validation error."""
        path = addons.write("whisper_cpu")
        addon = await AddonLoader(addons.root).load(CPU)

        assert isinstance(addon, LoadedAddon)
        assert addon.module_name == "whisper_cpu"
        assert addon.kind == BackendKind.CPU
        assert addon.path == path
        # Validation is not a real call
        assert addons.calls() == []

    async def test_missing_module(self, addons):
        """Test that a missing module raises LoadError naming it."""
        with pytest.raises(LoadError) as excinfo:
            await AddonLoader(addons.root).load(CPU)

        assert "whisper_cpu" in str(excinfo.value)
        assert excinfo.value.backend == "cpu"
        assert excinfo.value.module_names == ("whisper_cpu",)
        assert excinfo.value.technical_kind == "load-failed"

    async def test_missing_entry_point(self, addons):
        """Test that modules without a callable whisper are rejected."""
        addons.write("whisper_cpu", source="whisper = None\n")
        with pytest.raises(LoadError, match="missing entry points whisper"):
            await AddonLoader(addons.root).load(CPU)

    async def test_validation_failure(self, addons):
        """Test that unexpected validation errors reject the module."""
        addons.write("whisper_cpu", source=BROKEN_VALIDATION)
        with pytest.raises(LoadError, match="illegal instruction"):
            await AddonLoader(addons.root).load(CPU)

    async def test_validation_can_be_disabled(self, addons):
        """Test validate=False skips the functional check."""
        addons.write("whisper_cpu", source=BROKEN_VALIDATION)
        addon = await AddonLoader(addons.root, validate=False).load(CPU)
        assert addon.module_name == "whisper_cpu"

    async def test_validation_timeout(self, addons):
        """Test that a hung validation call rejects the module."""
        addons.write("whisper_cpu", source=SLOW_VALIDATION)
        with patch("subforge.backends.loader.DEFAULT_VALIDATION_TIMEOUT", 0.05):
            with pytest.raises(LoadError, match="no validation response"):
                await AddonLoader(addons.root).load(CPU)

    async def test_validation_timeout_keeps_pool_free(self, addons):
        """Test that a hung validation call does not occupy a shared pool worker."""
        addons.write("whisper_cpu", source=SLOW_VALIDATION)
        pool = ThreadPoolExecutor(max_workers=1)
        try:
            with patch.object(async_io, "_io_executor", pool), \
                 patch("subforge.backends.loader.DEFAULT_VALIDATION_TIMEOUT", 0.05):
                with pytest.raises(LoadError, match="no validation response"):
                    await AddonLoader(addons.root).load(CPU)
                assert await asyncio.wait_for(async_io.run_blocking(lambda: 42), 0.5) == 42
        finally:
            pool.shutdown(wait=False)

    async def test_versioned_names_fall_through(self, addons):
        """Test that missing versioned builds fall through to the generic one."""
        addons.write("whisper_cuda")
        descriptor = replace(CUDA, module_names=("whisper_cuda_124", "whisper_cuda_122", "whisper_cuda"))
        addon = await AddonLoader(addons.root).load(descriptor)
        assert addon.module_name == "whisper_cuda"

    async def test_first_usable_module_wins(self, addons):
        """Test that the newest available build is chosen."""
        addons.write("whisper_cuda_122")
        addons.write("whisper_cuda")
        descriptor = replace(CUDA, module_names=("whisper_cuda_124", "whisper_cuda_122", "whisper_cuda"))
        addon = await AddonLoader(addons.root).load(descriptor)
        assert addon.module_name == "whisper_cuda_122"

    async def test_import_error_in_module(self, addons):
        """Test that a module raising on import is rejected."""
        addons.write("whisper_cpu", source="raise ImportError('libcudart.so.12 not found')\n")
        with pytest.raises(LoadError, match="libcudart"):
            await AddonLoader(addons.root).load(CPU)

    async def test_no_module_names(self):
        """Test a descriptor without modules."""
        with pytest.raises(LoadError, match="none configured"):
            await AddonLoader().load(replace(CPU, module_names=()))

    def test_find_module_file(self, addons):
        """Test module file lookup."""
        path = addons.write("whisper_openvino")
        loader = AddonLoader(addons.root)
        assert loader.find_module_file("whisper_openvino") == path
        assert loader.find_module_file("whisper_coreml") is None
        assert AddonLoader().find_module_file("whisper_openvino") is None

    async def test_loaded_addon_invokes_entry_point(self, addons):
        """Test that LoadedAddon.whisper calls the module."""
        addons.write("whisper_cpu")
        addon = await AddonLoader(addons.root).load(CPU)
        segments = addon.whisper({"model": "m.bin"})
        assert segments[0]["text"] == "hello from whisper_cpu"
        assert addons.calls() == ["whisper_cpu"]
