#!/usr/bin/env python3
"""
LZX auto-compression tool for NTFS volumes.

Walks a directory tree and hands every eligible file to the OS ``compact``
utility (``/c /exe:LZX``). Files whose size did not change since the previous
run are skipped using a persistent change-detection cache keyed by a hash of
the file path.

The compression itself is done by the external command; this module only
schedules the work, keeps the cache and reports statistics. Work is admitted
onto a thread pool through a bounded queue, and a cancellation request stops
new submissions, drains in-flight work and still persists the cache.

IMPORTANT: The cache identifies files by a 32-bit hash of their path. Two paths
hashing to the same value share a cache entry; this may cause a file to be
skipped or recompressed by mistake but never damages data on disk.
"""

import os
import sys
import stat
import time
import errno
import signal
import struct
import zlib
import argparse
import logging
import threading
import subprocess
import multiprocessing
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Optional, Dict, List, Tuple, Callable, Iterable, NamedTuple

import psutil
import numpy as np
from tqdm import tqdm


__version__ = "1.0.0"

# Constants
CACHE_FILE = "FileDict.db"
CACHE_FILE_ENV = "LZXAUTO_CACHE_FILE"
CACHE_MAGIC = b"LZXC"
CACHE_VERSION = 1
QUEUE_DEPTH_FACTOR = 16  # Admitted-but-incomplete units per CPU
ADMISSION_POLL_INTERVAL = 0.1  # Seconds between cancellation checks while the queue is full
COMPACT_EXECUTABLE = "compact"
CONSOLE_ENCODING = "oem" if os.name == "nt" else None  # compact writes in the OEM code page
SIZE_MASK = 0xFFFFFFFF  # Cached sizes are stored as unsigned 32-bit values

# Snapshot layout: header, count x record, crc32 trailer (little-endian)
_CACHE_HEADER = struct.Struct("<4sHI")
_CACHE_RECORD = struct.Struct("<iI")
_CACHE_TRAILER = struct.Struct("<I")

FILE_ATTRIBUTE_SYSTEM = stat.FILE_ATTRIBUTE_SYSTEM
FILE_ATTRIBUTE_COMPRESSED = stat.FILE_ATTRIBUTE_COMPRESSED

# Priority for the compact child process
LOW_PRIORITY = psutil.IDLE_PRIORITY_CLASS if psutil.WINDOWS else 19

# File outcomes returned by FileDecisionEngine.process_file
OUTCOME_SKIPPED_EXTENSION = "skipped_by_extension"
OUTCOME_SKIPPED_ATTRIBUTE = "skipped_by_attribute"
OUTCOME_SKIPPED_UNCHANGED = "skipped_unchanged"
OUTCOME_PROCESSED = "processed"
OUTCOME_EMPTY = "empty"
OUTCOME_FAILED = "failed"

STAT_FIELDS = (
    "skipped_by_extension",
    "skipped_by_attribute",
    "skipped_unchanged",
    "processed",
    "failed",
    "bytes_read",
    "bytes_written",
    "disk_bytes_logical",
    "disk_bytes_physical",
)

_save_lock = threading.Lock()


if os.name == "nt":
    import ctypes
    from ctypes import wintypes

    _kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)

    _kernel32.GetCompressedFileSizeW.argtypes = [wintypes.LPCWSTR, ctypes.POINTER(wintypes.DWORD)]
    _kernel32.GetCompressedFileSizeW.restype = wintypes.DWORD

    _kernel32.GetDiskFreeSpaceW.argtypes = [
        wintypes.LPCWSTR,
        ctypes.POINTER(wintypes.DWORD),
        ctypes.POINTER(wintypes.DWORD),
        ctypes.POINTER(wintypes.DWORD),
        ctypes.POINTER(wintypes.DWORD),
    ]
    _kernel32.GetDiskFreeSpaceW.restype = wintypes.BOOL

    _kernel32.SetFileAttributesW.argtypes = [wintypes.LPCWSTR, wintypes.DWORD]
    _kernel32.SetFileAttributesW.restype = wintypes.BOOL


class CacheCorruptError(RuntimeError):
    """Raised when the persisted cache snapshot cannot be trusted."""


class CommandResult(NamedTuple):
    """Captured output and exit status of an external command."""
    output: str
    returncode: int


def path_identity(path: str) -> int:
    """
    Derive a stable 32-bit signed identifier from a file path.

    Two interleaved DJB-style lanes run over the UTF-16 code units of the
    path, so the value is identical across processes and platforms (unlike
    the built-in ``hash()``, which is salted per process). The identifier is
    not unique: distinct paths may collide.

    Args:
        path: Full path of the file

    Returns:
        Integer in the range [-2**31, 2**31)
    """
    data = path.encode("utf-16-le", errors="surrogatepass")
    units = struct.unpack(f"<{len(data) // 2}H", data)

    hash1 = (5381 << 16) + 5381
    hash2 = hash1
    for i in range(0, len(units), 2):
        hash1 = (((hash1 << 5) + hash1) ^ units[i]) & 0xFFFFFFFF
        if i == len(units) - 1:
            break
        hash2 = (((hash2 << 5) + hash2) ^ units[i + 1]) & 0xFFFFFFFF

    result = (hash1 + hash2 * 1566083941) & 0xFFFFFFFF
    if result & 0x80000000:
        result -= 0x100000000
    return result


def default_cache_file() -> str:
    """Cache location from LZXAUTO_CACHE_FILE, falling back to CACHE_FILE in the working directory."""
    return os.getenv(CACHE_FILE_ENV) or CACHE_FILE


class ChangeCache:
    """Thread-safe mapping from path identity to last processed file size."""

    def __init__(self, entries: Optional[Dict[int, int]] = None):
        self._entries: Dict[int, int] = {}
        self._lock = threading.Lock()
        if entries:
            for identity, size in entries.items():
                self._entries[identity] = size & SIZE_MASK

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, identity: int) -> bool:
        with self._lock:
            return identity in self._entries

    def get(self, identity: int) -> Optional[int]:
        with self._lock:
            return self._entries.get(identity)

    def set(self, identity: int, size: int) -> None:
        """Insert or overwrite the entry for ``identity``; size is truncated to 32 bits."""
        with self._lock:
            self._entries[identity] = size & SIZE_MASK

    def lookup(self, path: str) -> Optional[int]:
        return self.get(path_identity(path))

    def record(self, path: str, size: int) -> None:
        self.set(path_identity(path), size)

    def snapshot(self) -> Dict[int, int]:
        """Return a copy of all entries."""
        with self._lock:
            return dict(self._entries)

    def to_bytes(self) -> bytes:
        """Serialize the cache into the versioned snapshot format."""
        entries = self.snapshot()
        parts = [_CACHE_HEADER.pack(CACHE_MAGIC, CACHE_VERSION, len(entries))]
        parts.extend(_CACHE_RECORD.pack(identity, size) for identity, size in entries.items())
        body = b"".join(parts)
        return body + _CACHE_TRAILER.pack(zlib.crc32(body))

    @classmethod
    def from_bytes(cls, blob: bytes) -> "ChangeCache":
        """
        Deserialize a snapshot produced by ``to_bytes``.

        Raises:
            CacheCorruptError: If the blob is truncated, has the wrong magic or
                version, its length does not match the record count, or the
                checksum does not match.
        """
        minimum = _CACHE_HEADER.size + _CACHE_TRAILER.size
        if len(blob) < minimum:
            raise CacheCorruptError(f"snapshot too short ({len(blob)} bytes, need at least {minimum})")

        magic, version, count = _CACHE_HEADER.unpack_from(blob)
        if magic != CACHE_MAGIC:
            raise CacheCorruptError(f"bad magic {magic!r}")
        if version != CACHE_VERSION:
            raise CacheCorruptError(f"unsupported snapshot version {version}")

        expected = _CACHE_HEADER.size + count * _CACHE_RECORD.size + _CACHE_TRAILER.size
        if len(blob) != expected:
            raise CacheCorruptError(
                f"snapshot length {len(blob)} does not match {count} records (expected {expected})"
            )

        body = blob[:-_CACHE_TRAILER.size]
        (checksum,) = _CACHE_TRAILER.unpack_from(blob, len(body))
        if zlib.crc32(body) != checksum:
            raise CacheCorruptError("checksum mismatch")

        return cls(dict(_CACHE_RECORD.iter_unpack(body[_CACHE_HEADER.size:])))

    @classmethod
    def load(cls, cache_file: str) -> "ChangeCache":
        """
        Load the cache snapshot from disk.

        A missing or empty file yields an empty cache. Anything that cannot be
        read back intact raises, because continuing with an empty cache would
        silently throw away the change history.

        Args:
            cache_file: Path to the snapshot file

        Returns:
            The loaded ChangeCache

        Raises:
            CacheCorruptError: If the snapshot exists but is unreadable or malformed
        """
        cache_file = os.fspath(cache_file)
        if not os.path.exists(cache_file):
            logging.info(f"Cache file {cache_file} not found, starting with an empty cache")
            return cls()

        logging.info(f"Cache file found: {cache_file}")
        try:
            with open(cache_file, "rb") as f:
                blob = f.read()
        except OSError as e:
            raise CacheCorruptError(f"Could not read cache file {cache_file}: {e}") from e

        if not blob:
            logging.warning(f"Cache file {cache_file} is empty, starting with an empty cache")
            return cls()

        try:
            cache = cls.from_bytes(blob)
        except CacheCorruptError as e:
            raise CacheCorruptError(f"Cache file {cache_file} is corrupt: {e}") from e

        logging.info(f"Loaded cache from file ({len(cache)} entries)")
        return cache

    def save(self, cache_file: str) -> bool:
        """
        Persist the full cache atomically (temp file + replace).

        Only one save runs at a time. Failures are logged and reported through
        the return value; they never raise.

        Returns:
            True if the snapshot was written, False otherwise
        """
        cache_file = os.fspath(cache_file)
        temp_file = cache_file + ".tmp"
        with _save_lock:
            try:
                cache_dir = os.path.dirname(cache_file)
                if cache_dir:
                    os.makedirs(cache_dir, exist_ok=True)

                logging.debug("Saving cache file...")
                blob = self.to_bytes()
                with open(temp_file, "wb") as f:
                    f.write(blob)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_file, cache_file)
                logging.debug(f"Cache saved, entries: {len(self)}, file size: {len(blob)}")
                return True
            except (OSError, struct.error) as e:
                logging.error(f"Unable to save cache to file {cache_file}: {e}")
                if os.path.exists(temp_file):
                    try:
                        os.remove(temp_file)
                    except OSError as remove_error:
                        logging.warning(f"Could not remove temporary cache file {temp_file}: {remove_error}")
                return False

    @staticmethod
    def reset(cache_file: str) -> bool:
        """Delete the persisted snapshot. Returns True if a file was removed."""
        cache_file = os.fspath(cache_file)
        try:
            os.remove(cache_file)
        except FileNotFoundError:
            logging.info(f"Cache file {cache_file} does not exist, nothing to reset")
            return False
        logging.info(f"Deleted cache file {cache_file}")
        return True


class RunStatistics:
    """Monotonic counters and byte totals shared by all workers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._values: Dict[str, int] = dict.fromkeys(STAT_FIELDS, 0)
        self._ratios: List[float] = []

    def add(self, name: str, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError(f"Statistics are monotonic, cannot add {amount} to {name}")
        with self._lock:
            self._values[name] += amount

    def record_skip(self, counter: str, physical_size: int) -> None:
        """Count a skipped file and add its on-disk size to the physical total."""
        with self._lock:
            self._values[counter] += 1
            self._values["disk_bytes_physical"] += physical_size

    def record_processed(self, size_before: int, size_after: int) -> None:
        """Count a compressed file with its physical size before and after compact."""
        with self._lock:
            self._values["processed"] += 1
            self._values["bytes_read"] += size_before
            self._values["bytes_written"] += size_after
            self._values["disk_bytes_physical"] += size_after
            if size_after > 0:
                self._ratios.append(size_before / size_after)

    def __getitem__(self, name: str) -> int:
        with self._lock:
            return self._values[name]

    @property
    def files_visited(self) -> int:
        with self._lock:
            return (
                self._values["skipped_by_extension"]
                + self._values["skipped_by_attribute"]
                + self._values["skipped_unchanged"]
                + self._values["processed"]
            )

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            values = dict(self._values)
        values["files_visited"] = (
            values["skipped_by_extension"]
            + values["skipped_by_attribute"]
            + values["skipped_unchanged"]
            + values["processed"]
        )
        return values

    def compression_ratios(self) -> List[float]:
        with self._lock:
            return list(self._ratios)


class LocalDisk:
    """
    File attribute and allocation queries for the local filesystem.

    On Windows this uses the Win32 API for compressed size, cluster size and
    attributes. Elsewhere, physical size comes from ``st_blocks`` and the
    NTFS-specific attributes are never reported.
    """

    def __init__(self):
        self._cluster_sizes: Dict[int, int] = {}
        self._lock = threading.Lock()

    def physical_size(self, path: str, st: Optional[os.stat_result] = None) -> int:
        """On-disk allocated size of ``path`` after compression."""
        if os.name == "nt":
            high = wintypes.DWORD(0)
            ctypes.set_last_error(0)
            low = _kernel32.GetCompressedFileSizeW(path, ctypes.byref(high))
            err = ctypes.get_last_error()
            if low == 0xFFFFFFFF and err != 0:
                raise ctypes.WinError(err)
            return (high.value << 32) + low
        if st is None:
            st = os.stat(path)
        return st.st_blocks * 512

    def cluster_size(self, path: str, st: os.stat_result) -> int:
        with self._lock:
            cached = self._cluster_sizes.get(st.st_dev)
        if cached:
            return cached

        if os.name == "nt":
            drive = os.path.splitdrive(os.path.abspath(path))[0] + "\\"
            sectors_per_cluster = wintypes.DWORD(0)
            bytes_per_sector = wintypes.DWORD(0)
            free_clusters = wintypes.DWORD(0)
            total_clusters = wintypes.DWORD(0)
            ok = _kernel32.GetDiskFreeSpaceW(
                drive,
                ctypes.byref(sectors_per_cluster),
                ctypes.byref(bytes_per_sector),
                ctypes.byref(free_clusters),
                ctypes.byref(total_clusters),
            )
            if not ok:
                raise ctypes.WinError(ctypes.get_last_error())
            size = sectors_per_cluster.value * bytes_per_sector.value
        else:
            vfs = os.statvfs(path)
            size = vfs.f_frsize or vfs.f_bsize

        size = max(1, size)
        with self._lock:
            self._cluster_sizes[st.st_dev] = size
        return size

    def occupied_size(self, length: int, path: str, st: os.stat_result) -> int:
        """Logical size rounded up to whole clusters."""
        if length <= 0:
            return 0
        cluster = self.cluster_size(path, st)
        return -(-length // cluster) * cluster

    def is_system(self, path: str, st: os.stat_result) -> bool:
        return bool(getattr(st, "st_file_attributes", 0) & FILE_ATTRIBUTE_SYSTEM)

    def is_compressed(self, path: str, st: os.stat_result) -> bool:
        return bool(getattr(st, "st_file_attributes", 0) & FILE_ATTRIBUTE_COMPRESSED)

    def clear_compressed(self, path: str, st: os.stat_result) -> None:
        """Drop the NTFS (LZNT1) compressed attribute so compact can override it."""
        if os.name != "nt":
            return
        attributes = getattr(st, "st_file_attributes", 0) & ~FILE_ATTRIBUTE_COMPRESSED
        if not _kernel32.SetFileAttributesW(path, attributes):
            raise ctypes.WinError(ctypes.get_last_error())


class CompactCompressor:
    """Runs the OS ``compact`` utility at idle priority."""

    def __init__(self, executable: str = COMPACT_EXECUTABLE, lower_priority: bool = True):
        self.executable = executable
        self.lower_priority = lower_priority

    def compress(self, path: str, force: bool = False) -> CommandResult:
        """Compress a single file with LZX; ``force`` overrides an existing compression."""
        args = ["/c", "/exe:LZX"]
        if force:
            args.append("/f")
        args.append(path)
        return self._run(args)

    def remove_directory_flag(self, path: str) -> CommandResult:
        """Remove the NTFS compression flag from a directory."""
        return self._run(["/u", path])

    def _run(self, args: List[str]) -> CommandResult:
        cmd = [self.executable] + args
        logging.debug(f"Running: {subprocess.list2cmdline(cmd)}")

        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding=CONSOLE_ENCODING,
            errors="replace",
        )
        if self.lower_priority:
            self._set_low_priority(proc.pid)

        output, _ = proc.communicate()
        return CommandResult(output or "", proc.returncode)

    @staticmethod
    def _set_low_priority(pid: int) -> None:
        try:
            psutil.Process(pid).nice(LOW_PRIORITY)
        except psutil.NoSuchProcess:
            logging.debug("Process compact exited before setting its priority. Nothing to worry about.")
        except (psutil.AccessDenied, OSError) as e:
            logging.debug(f"Could not lower priority of compact (pid {pid}): {e}")


class WorkQueue:
    """
    Admits units of work onto an executor while keeping the number of
    admitted-but-incomplete units at or below ``ceiling``.

    ``submit`` blocks while the queue is full. If ``cancel_event`` is set while
    waiting (or by the time a slot frees up), nothing is admitted. Every
    admitted unit releases its slot exactly once, whether it succeeds or raises.
    """

    def __init__(
        self,
        executor,
        ceiling: int,
        on_complete: Optional[Callable[[], None]] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        if ceiling < 1:
            raise ValueError("Queue ceiling must be at least 1")
        self.ceiling = ceiling
        self.peak = 0
        self._executor = executor
        self._on_complete = on_complete
        self._cancel_event = cancel_event
        self._slots = threading.BoundedSemaphore(ceiling)
        self._cond = threading.Condition()
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    def submit(self, fn: Callable, *args) -> bool:
        """
        Admit ``fn(*args)`` once a slot is free.

        Returns:
            True if the unit was admitted, False if cancelled before admission
        """
        if not self._acquire_slot():
            return False
        with self._cond:
            self._in_flight += 1
            if self._in_flight > self.peak:
                self.peak = self._in_flight
        try:
            self._executor.submit(self._run, fn, *args)
        except Exception:
            self._complete()
            raise
        return True

    def _acquire_slot(self) -> bool:
        if self._cancel_event is None:
            self._slots.acquire()
            return True
        while not self._cancel_event.is_set():
            if self._slots.acquire(timeout=ADMISSION_POLL_INTERVAL):
                if self._cancel_event.is_set():
                    self._slots.release()
                    return False
                return True
        return False

    def drain(self) -> None:
        """Block until every admitted unit has completed."""
        with self._cond:
            self._cond.wait_for(lambda: self._in_flight == 0)

    def _run(self, fn: Callable, *args) -> None:
        try:
            fn(*args)
        except Exception as e:
            logging.error(f"Unhandled error in worker: {e}", exc_info=True)
        finally:
            self._complete()

    def _complete(self) -> None:
        with self._cond:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._cond.notify_all()
        self._slots.release()
        if self._on_complete is not None:
            self._on_complete()


def normalize_extensions(extensions: Optional[Iterable[str]]) -> frozenset:
    """Normalize extensions to ``.ext`` form, case-folded where the platform is case-insensitive."""
    normalized = set()
    for ext in extensions or ():
        ext = ext.strip()
        if not ext:
            continue
        if not ext.startswith("."):
            ext = "." + ext
        normalized.add(os.path.normcase(ext))
    return frozenset(normalized)


class FileDecisionEngine:
    """Decides per file whether to skip it or run compact on it, and records the outcome."""

    def __init__(
        self,
        cache: ChangeCache,
        stats: RunStatistics,
        compressor,
        disk=None,
        skip_extensions: Optional[Iterable[str]] = None
    ):
        self.cache = cache
        self.stats = stats
        self.compressor = compressor
        self.disk = disk if disk is not None else LocalDisk()
        self.skip_extensions = normalize_extensions(skip_extensions)

    def is_excluded(self, path: str) -> bool:
        # Everything after the last dot, so ".tmp" on its own has extension ".tmp"
        name = os.path.basename(path)
        if "." not in name:
            return False
        ext = "." + name.rsplit(".", 1)[1]
        return os.path.normcase(ext) in self.skip_extensions

    def process_file(self, path: str) -> str:
        """
        Run the decision state machine for one file.

        Exceptions are logged and counted as failures; they never propagate,
        so one bad file cannot stop the session.

        Args:
            path: Absolute path of the file

        Returns:
            One of the OUTCOME_* constants
        """
        try:
            st = os.stat(path)
            length = st.st_size
            physical_before = self.disk.physical_size(path, st)
            self.stats.add("disk_bytes_logical", self.disk.occupied_size(length, path, st))

            if self.is_excluded(path):
                self.stats.record_skip(OUTCOME_SKIPPED_EXTENSION, physical_before)
                return OUTCOME_SKIPPED_EXTENSION

            if self.disk.is_system(path, st):
                self.stats.record_skip(OUTCOME_SKIPPED_ATTRIBUTE, physical_before)
                return OUTCOME_SKIPPED_ATTRIBUTE

            if length == 0:
                self.stats.add("disk_bytes_physical", physical_before)
                return OUTCOME_EMPTY

            identity = path_identity(path)
            cached_size = self.cache.get(identity)
            if cached_size is not None and cached_size == length & SIZE_MASK:
                logging.debug(
                    f"Skipping file: '{path}' because it has been visited already "
                    f"and its size ('{format_bytes(length)}') did not change"
                )
                self.stats.record_skip(OUTCOME_SKIPPED_UNCHANGED, physical_before)
                return OUTCOME_SKIPPED_UNCHANGED

            force = False
            if self.disk.is_compressed(path, st):
                self.disk.clear_compressed(path, st)
                force = True

            logging.debug(f"Compressing file {path}")
            result = self.compressor.compress(path, force)
            if result.returncode != 0:
                logging.warning(f"compact exited with status {result.returncode} for {path}")

            physical_after = self.disk.physical_size(path)
            self.cache.set(identity, length)

            if physical_after > physical_before:
                logging.warning(
                    f"Physical size grew after compression: {physical_after} > {physical_before}, file: {path}"
                )

            self.stats.record_processed(physical_before, physical_after)
            if result.output:
                logging.debug(result.output)
            return OUTCOME_PROCESSED

        except Exception as e:
            logging.error(f"Error processing file {path}: {e}")
            self.stats.add(OUTCOME_FAILED)
            return OUTCOME_FAILED


class TreeScheduler:
    """
    Streams every file under a root directory into a WorkQueue.

    Files directly inside the root are submitted first, then the files of each
    subdirectory in depth-first order. A cancellation event is checked before
    every submission and before entering each subdirectory.
    """

    def __init__(self, engine: FileDecisionEngine, queue: WorkQueue, compressor, disk, cancel_event: threading.Event):
        self.engine = engine
        self.queue = queue
        self.compressor = compressor
        self.disk = disk
        self.cancel_event = cancel_event

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def run(self, root: str) -> bool:
        """
        Submit all files under ``root`` and wait for them to finish.

        Errors on the root itself (missing, access denied, path too long) are
        logged and end traversal early; the queue is drained either way.

        Returns:
            True if the whole tree was traversed, False if cancelled or aborted
        """
        try:
            files, subdirs = self._scan_directory(root)
            if not self._submit_files(files):
                return False

            pending = list(reversed(subdirs))
            while pending:
                if self.cancelled:
                    return self._stop()
                directory = pending.pop()
                try:
                    files, children = self._scan_directory(directory)
                    pending.extend(reversed(children))
                    if not self._submit_files(files):
                        return False
                    self._remove_directory_flag(directory)
                except PermissionError:
                    logging.warning(f"Access failed to folder: {directory}")
                except OSError as e:
                    logging.error(f"Error reading folder {directory}: {e}")

            self._remove_directory_flag(root)
            return True

        except FileNotFoundError as e:
            logging.error(f"Directory not found: {e}")
        except NotADirectoryError as e:
            logging.error(f"Not a directory: {e}")
        except PermissionError as e:
            logging.error(f"Access denied: {e}")
        except OSError as e:
            if e.errno == errno.ENAMETOOLONG:
                logging.error(f"Path too long: {e}")
            else:
                logging.error(f"Other error: {e}")
        finally:
            self.queue.drain()
        return False

    def _scan_directory(self, directory: str) -> Tuple[List[str], List[str]]:
        """List regular files and subdirectories of ``directory`` (symlinks are not followed)."""
        files = []
        subdirs = []
        with os.scandir(directory) as entries:
            for entry in entries:
                try:
                    if entry.is_dir(follow_symlinks=False):
                        subdirs.append(entry.path)
                    elif entry.is_file(follow_symlinks=False):
                        files.append(entry.path)
                except OSError as e:
                    logging.warning(f"Could not inspect {entry.path}: {e}")
        return files, subdirs

    def _submit_files(self, files: List[str]) -> bool:
        for path in files:
            if self.cancelled or not self.queue.submit(self.engine.process_file, path):
                return self._stop()
        return True

    def _stop(self) -> bool:
        logging.info(f"Cancellation requested, waiting for {self.queue.in_flight} queued files to finish")
        self.queue.drain()
        return False

    def _remove_directory_flag(self, directory: str) -> None:
        st = os.stat(directory)
        if self.disk.is_compressed(directory, st):
            logging.info(f"Removing NTFS compress flag on folder {directory} in favor of LZX compression")
            result = self.compressor.remove_directory_flag(directory)
            if result.output:
                logging.debug(result.output)


def format_bytes(num_bytes: float) -> str:
    """Human readable byte count, e.g. ``1.50 MB``."""
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(size) < 1024 or unit == "TB":
            if unit == "B":
                return f"{int(size)} {unit}"
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TB"


def format_elapsed(seconds: float) -> str:
    """Format elapsed time as hh:mm:ss:ms."""
    total_ms = int(round(seconds * 1000))
    hours, rem = divmod(total_ms, 3600 * 1000)
    minutes, rem = divmod(rem, 60 * 1000)
    secs, ms = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}:{ms:03d}"


def _savings_percent(before: int, after: int) -> str:
    if before == 0:
        return "-"
    return f"{(1 - after / before) * 100:.2f}%"


def _ratio(before: int, after: int) -> str:
    if after == 0:
        return "-"
    return f"{before / after:.2f}"


def _per_minute(count: int, elapsed_seconds: float) -> str:
    if elapsed_seconds <= 0:
        return "-"
    return f"{count / (elapsed_seconds / 60):.2f}"


def build_session_summary(
    stats: RunStatistics,
    cache_entries: int,
    cache_entries_at_start: int,
    elapsed_seconds: float,
    cancelled: bool = False
) -> Dict:
    """
    Build the end-of-session report.

    Ratios and percentages are the string ``"-"`` when their denominator is zero.
    """
    values = stats.snapshot()
    return {
        **values,
        "cancelled": cancelled,
        "cache_entries": cache_entries,
        "cache_entries_delta": cache_entries - cache_entries_at_start,
        "space_savings_bytes": values["bytes_read"] - values["bytes_written"],
        "space_savings": _savings_percent(values["bytes_read"], values["bytes_written"]),
        "compression_ratio": _ratio(values["bytes_read"], values["bytes_written"]),
        "disk_space_savings": _savings_percent(values["disk_bytes_logical"], values["disk_bytes_physical"]),
        "disk_compression_ratio": _ratio(values["disk_bytes_logical"], values["disk_bytes_physical"]),
        "elapsed_seconds": elapsed_seconds,
        "elapsed": format_elapsed(elapsed_seconds),
        "files_per_minute": _per_minute(values["files_visited"], elapsed_seconds),
        "processed_per_minute": _per_minute(values["processed"], elapsed_seconds),
    }


def log_session_summary(summary: Dict) -> None:
    logging.info("=" * 60)
    logging.info("Stats for this session:")
    if summary.get("cancelled"):
        logging.info("  Session was cancelled before the whole tree was visited")
    logging.info(f"  Files skipped by attributes:  {summary['skipped_by_attribute']}")
    logging.info(f"  Files skipped by extension:   {summary['skipped_by_extension']}")
    logging.info(f"  Files skipped by no change:   {summary['skipped_unchanged']}")
    logging.info(f"  Files processed by compact:   {summary['processed']}")
    logging.info(f"  Files failed:                 {summary['failed']}")
    logging.info(f"  Files in cache:               {summary['cache_entries']}")
    logging.info(f"  Files in cache delta:         {summary['cache_entries_delta']}")
    logging.info(f"  Files visited:                {summary['files_visited']}")
    logging.info("")
    logging.info(f"  Bytes read:                   {format_bytes(summary['bytes_read'])}")
    logging.info(f"  Bytes written:                {format_bytes(summary['bytes_written'])}")
    logging.info(f"  Space savings bytes:          {format_bytes(summary['space_savings_bytes'])}")
    logging.info(f"  Space savings:                {summary['space_savings']}")
    logging.info(f"  Compression ratio:            {summary['compression_ratio']}")
    logging.info("")
    logging.info("Disk stat:")
    logging.info(f"  Files logical size:           {format_bytes(summary['disk_bytes_logical'])}")
    logging.info(f"  Files physical size:          {format_bytes(summary['disk_bytes_physical'])}")
    logging.info(f"  Space savings:                {summary['disk_space_savings']}")
    logging.info(f"  Compression ratio:            {summary['disk_compression_ratio']}")
    logging.info("")
    logging.info("Perf stats:")
    logging.info(f"  Time elapsed [hh:mm:ss:ms]:   {summary['elapsed']}")
    logging.info(f"  Compressed files per minute:  {summary['processed_per_minute']}")
    logging.info(f"  Files per minute:             {summary['files_per_minute']}")
    logging.info("=" * 60)


def print_compression_ratio_histogram(compression_ratios: List[float]) -> None:
    """
    Log summary statistics and a text histogram of per-file compression ratios.

    Args:
        compression_ratios: Physical size before / after for each compressed file
    """
    if not compression_ratios:
        logging.info("No compression ratios to display (no files were compressed)")
        return

    ratios = np.array(compression_ratios)
    min_ratio = float(np.min(ratios))
    max_ratio = float(np.max(ratios))

    num_bins = 20
    if max_ratio - min_ratio < 0.5:
        num_bins = 10
    elif max_ratio - min_ratio > 15:
        num_bins = 30

    counts, bin_edges = np.histogram(ratios, bins=num_bins)
    max_count = int(np.max(counts))
    bar_width = 50

    logging.info("Compression Ratio Statistics")
    logging.info("-" * 70)
    logging.info(f"  Files compressed:  {len(ratios)}")
    logging.info(f"  Minimum ratio:     {min_ratio:.2f}x")
    logging.info(f"  Maximum ratio:     {max_ratio:.2f}x")
    logging.info(f"  Mean ratio:        {float(np.mean(ratios)):.2f}x")
    logging.info(f"  Median ratio:      {float(np.median(ratios)):.2f}x")
    logging.info(f"  Std deviation:     {float(np.std(ratios)):.2f}x")

    for count, bin_start, bin_end in zip(counts, bin_edges[:-1], bin_edges[1:]):
        count = int(count)
        if count == 0:
            continue
        bar = "█" * int((count / max_count) * bar_width)
        label = f"{bin_start:.2f}-{bin_end:.2f}"
        logging.info(f"  {label:>15} │{bar:<{bar_width}} {count:>5} files")
    logging.info("-" * 70)


def is_elevated() -> bool:
    """Whether the process runs with administrator (root) rights."""
    if os.name == "nt":
        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


def calculate_worker_count() -> int:
    """Default thread pool size: one worker per CPU."""
    return max(1, multiprocessing.cpu_count())


def calculate_queue_depth() -> int:
    """Default admission ceiling: QUEUE_DEPTH_FACTOR units per CPU."""
    return max(1, multiprocessing.cpu_count() * QUEUE_DEPTH_FACTOR)


class CompressionSession:
    """
    One full compression run: load the cache, walk the tree, drain, persist, report.

    ``cancel()`` may be called from any thread (or a signal handler). It stops
    new submissions; files already queued are finished and the cache is saved.
    """

    def __init__(
        self,
        cache_file: Optional[str] = None,
        workers: Optional[int] = None,
        queue_depth: Optional[int] = None,
        compressor=None,
        disk=None,
        show_progress: bool = True
    ):
        self.cache_file = os.fspath(cache_file) if cache_file else default_cache_file()
        self.workers = workers if workers is not None else calculate_worker_count()
        self.queue_depth = queue_depth if queue_depth is not None else calculate_queue_depth()
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if self.queue_depth < 1:
            raise ValueError("queue_depth must be at least 1")

        self.compressor = compressor if compressor is not None else CompactCompressor()
        self.disk = disk if disk is not None else LocalDisk()
        self.show_progress = show_progress

        self.cache: Optional[ChangeCache] = None
        self.stats = RunStatistics()
        self.queue: Optional[WorkQueue] = None
        self.summary: Optional[Dict] = None
        self._cancel_event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        if not self._cancel_event.is_set():
            logging.warning("Terminating...")
            self._cancel_event.set()

    def reset_cache(self) -> bool:
        return ChangeCache.reset(self.cache_file)

    def run(self, folder: str, skip_extensions: Optional[Iterable[str]] = None) -> Dict:
        """
        Compress every eligible file under ``folder``.

        Args:
            folder: Root directory to traverse
            skip_extensions: Extensions to leave alone (``.zip``, ``jpg``, ...)

        Returns:
            The session summary (see build_session_summary)

        Raises:
            CacheCorruptError: If the cache snapshot exists but cannot be loaded.
                No file is touched in that case.
        """
        folder = os.path.abspath(os.fspath(folder))
        skip_extensions = list(skip_extensions or [])
        start_time = time.time()

        logging.info(f"Starting new compressing session. lzx-auto version: {__version__}")
        logging.info(f"Running in Administrator mode: {is_elevated()}")
        logging.info(f"Starting path {folder}")
        logging.info(f"Workers: {self.workers}, queue depth: {self.queue_depth}")
        if skip_extensions:
            logging.info(f"Skipping extensions: {', '.join(skip_extensions)}")

        self.cache = ChangeCache.load(self.cache_file)
        entries_at_start = len(self.cache)
        self.stats = RunStatistics()
        engine = FileDecisionEngine(self.cache, self.stats, self.compressor, self.disk, skip_extensions)

        pbar = tqdm(desc="Compressing", unit="file", disable=not self.show_progress)
        try:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="lzx-worker") as executor:
                self.queue = WorkQueue(
                    executor,
                    self.queue_depth,
                    on_complete=lambda: pbar.update(1),
                    cancel_event=self._cancel_event
                )
                scheduler = TreeScheduler(engine, self.queue, self.compressor, self.disk, self._cancel_event)
                try:
                    scheduler.run(folder)
                finally:
                    self.queue.drain()
        finally:
            pbar.close()
            logging.info("Completed")
            self.cache.save(self.cache_file)

        self.summary = build_session_summary(
            self.stats,
            len(self.cache),
            entries_at_start,
            time.time() - start_time,
            cancelled=self.cancelled,
        )
        log_session_summary(self.summary)
        print_compression_ratio_histogram(self.stats.compression_ratios())
        return self.summary


def setup_logging(log_dir: Optional[str] = None, verbose: bool = False):
    """Setup logging configuration."""
    log_format = '%(asctime)s - %(levelname)s - %(message)s'
    date_format = '%Y-%m-%d %H:%M:%S'

    handlers = [logging.StreamHandler(sys.stdout)]

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_file = os.path.join(
            log_dir,
            f"lzx_auto_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        )
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=log_format,
        datefmt=date_format,
        handlers=handlers
    )


def main():
    parser = argparse.ArgumentParser(
        description="Compress files with NTFS LZX compression, skipping files unchanged since the last run",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Compress a folder, leaving archives and media alone
  %(prog)s --folder "C:\\Program Files" --skip-extensions .zip .7z .mp4 .jpg

  # Forget everything learned so far and start over
  %(prog)s --reset-cache --folder D:\\Games
        """
    )

    parser.add_argument(
        '--folder',
        type=str,
        default=None,
        help='Folder to compress (recursive)'
    )

    parser.add_argument(
        '--skip-extensions',
        nargs='*',
        default=[],
        metavar='EXT',
        help='File extensions to skip, e.g. .zip .jpg'
    )

    parser.add_argument(
        '--cache-file',
        type=str,
        default=None,
        help=f'Change-detection cache file (default: ${CACHE_FILE_ENV} or {CACHE_FILE} in the working directory)'
    )

    parser.add_argument(
        '--reset-cache',
        action='store_true',
        help='Delete the cache file before running. Exits afterwards if --folder is not given.'
    )

    parser.add_argument(
        '--workers',
        type=int,
        default=None,
        help='Number of worker threads (default: number of CPUs)'
    )

    parser.add_argument(
        '--queue-depth',
        type=int,
        default=None,
        help=f'Maximum files queued at once (default: {QUEUE_DEPTH_FACTOR} x number of CPUs)'
    )

    parser.add_argument(
        '--compact-executable',
        type=str,
        default=COMPACT_EXECUTABLE,
        help=f'Compression command to run (default: {COMPACT_EXECUTABLE})'
    )

    parser.add_argument(
        '--log-dir',
        type=str,
        default=None,
        help='Also write a timestamped log file into this directory'
    )

    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Log every file decision and compact output'
    )

    parser.add_argument(
        '--no-progress',
        action='store_true',
        help='Disable the progress bar'
    )

    args = parser.parse_args()

    if not args.folder and not args.reset_cache:
        parser.error("--folder is required unless --reset-cache is given")

    setup_logging(log_dir=args.log_dir, verbose=args.verbose)

    try:
        session = CompressionSession(
            cache_file=args.cache_file,
            workers=args.workers,
            queue_depth=args.queue_depth,
            compressor=CompactCompressor(args.compact_executable),
            show_progress=not args.no_progress
        )

        if args.reset_cache:
            session.reset_cache()
            if not args.folder:
                return

        if os.name != "nt":
            logging.warning("NTFS LZX compression is only available on Windows; compact calls are expected to fail")

        signal.signal(signal.SIGINT, lambda signum, frame: session.cancel())
        session.run(args.folder, args.skip_extensions)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except CacheCorruptError as e:
        logging.error(f"Error during loading from file: {e}")
        logging.error("Terminating.")
        sys.exit(1)
    except KeyboardInterrupt:
        # Only reachable before the SIGINT handler above is installed
        logging.warning("Interrupted by user")
        sys.exit(130)


if __name__ == '__main__':
    main()
