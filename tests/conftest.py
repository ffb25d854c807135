"""Shared fixtures and test utilities for LZX compression tests."""

import os
import sys
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

import pytest

# Add parent directory to path to import the module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import lzx_auto
from lzx_auto import CommandResult, CompressionSession


class FakeCompressor:
    """Stand-in for CompactCompressor that records calls instead of running compact."""

    def __init__(
        self,
        delay: float = 0.0,
        returncode: int = 0,
        fail_paths: Iterable[str] = (),
        on_compress: Optional[Callable[[str], None]] = None
    ):
        self.delay = delay
        self.returncode = returncode
        self.fail_paths = set(fail_paths)
        self.on_compress = on_compress
        self.calls = []
        self.directory_calls = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def compress(self, path, force=False):
        with self._lock:
            self.calls.append((path, force))
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if path in self.fail_paths:
                raise OSError(f"compact could not open {path}")
            if self.on_compress is not None:
                self.on_compress(path)
            return CommandResult(f"Compressing {path} [OK]", self.returncode)
        finally:
            with self._lock:
                self.active -= 1

    def remove_directory_flag(self, path):
        with self._lock:
            self.directory_calls.append(path)
        return CommandResult(f"Uncompressing {path} [OK]", 0)

    @property
    def compressed_paths(self):
        with self._lock:
            return [path for path, _ in self.calls]


class FakeDisk:
    """
    Stand-in for LocalDisk: physical size equals logical size unless overridden,
    and attributes are taken from explicit path sets.
    """

    def __init__(self):
        self.system_paths = set()
        self.compressed_paths = set()
        self.physical_overrides: Dict[str, int] = {}
        self.cleared = []

    def physical_size(self, path, st=None):
        if path in self.physical_overrides:
            return self.physical_overrides[path]
        return (st or os.stat(path)).st_size

    def occupied_size(self, length, path, st):
        return length

    def is_system(self, path, st):
        return path in self.system_paths

    def is_compressed(self, path, st):
        return path in self.compressed_paths

    def clear_compressed(self, path, st):
        self.cleared.append(path)
        self.compressed_paths.discard(path)


def write_file(path: Path, size: int) -> Path:
    """Create ``path`` (and its parents) with ``size`` bytes of content."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    return path


@pytest.fixture
def tmp_test_dir(tmp_path):
    """Create a temporary data directory that's cleaned up after test."""
    test_dir = tmp_path / "data"
    test_dir.mkdir()
    return test_dir


@pytest.fixture
def cache_file(tmp_path):
    """Cache snapshot path outside the data directory."""
    return tmp_path / "cache" / lzx_auto.CACHE_FILE


@pytest.fixture
def fake_compressor():
    return FakeCompressor()


@pytest.fixture
def fake_disk():
    return FakeDisk()


@pytest.fixture
def sample_tree(tmp_test_dir):
    """
    Create a nested tree of files:

    data/a.txt, data/b.tmp, data/dir1/c.bin, data/dir1/sub/d.log, data/dir2/e.dat
    """
    files = {
        "a.txt": 500,
        "b.tmp": 300,
        os.path.join("dir1", "c.bin"): 1200,
        os.path.join("dir1", "sub", "d.log"): 64,
        os.path.join("dir2", "e.dat"): 4096,
    }
    for rel, size in files.items():
        write_file(tmp_test_dir / rel, size)
    return tmp_test_dir


@pytest.fixture
def make_session(cache_file, fake_compressor, fake_disk):
    """Factory for sessions wired to the fake collaborators."""
    def _make(**kwargs):
        options = {
            "cache_file": cache_file,
            "workers": 4,
            "queue_depth": 8,
            "compressor": fake_compressor,
            "disk": fake_disk,
            "show_progress": False,
        }
        options.update(kwargs)
        return CompressionSession(**options)
    return _make


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test."""
    original_handlers = logging.root.handlers[:]
    original_level = logging.root.level
    yield
    logging.root.handlers = original_handlers
    logging.root.setLevel(original_level)
