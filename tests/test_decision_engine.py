"""Tests for the per-file decision engine."""

import logging
import pytest

from lzx_auto import (
    ChangeCache,
    RunStatistics,
    FileDecisionEngine,
    normalize_extensions,
    OUTCOME_SKIPPED_EXTENSION,
    OUTCOME_SKIPPED_ATTRIBUTE,
    OUTCOME_SKIPPED_UNCHANGED,
    OUTCOME_PROCESSED,
    OUTCOME_EMPTY,
    OUTCOME_FAILED,
)
from conftest import FakeCompressor, write_file


@pytest.fixture
def engine(fake_compressor, fake_disk):
    return FileDecisionEngine(ChangeCache(), RunStatistics(), fake_compressor, fake_disk, [".tmp"])


class TestOutcomes:
    """Test each branch of the decision sequence."""

    def test_new_file_is_compressed(self, engine, fake_compressor, tmp_test_dir):
        path = str(write_file(tmp_test_dir / "a.txt", 500))

        assert engine.process_file(path) == OUTCOME_PROCESSED
        assert fake_compressor.calls == [(path, False)]
        assert engine.cache.lookup(path) == 500
        assert engine.stats["processed"] == 1
        assert engine.stats["bytes_read"] == 500
        assert engine.stats["disk_bytes_logical"] == 500

    def test_physical_sizes_recorded(self, fake_disk, tmp_test_dir):
        path = str(write_file(tmp_test_dir / "a.txt", 4000))
        compressor = FakeCompressor(on_compress=lambda p: fake_disk.physical_overrides.update({p: 1000}))
        engine = FileDecisionEngine(ChangeCache(), RunStatistics(), compressor, fake_disk)

        engine.process_file(path)

        assert engine.stats["bytes_read"] == 4000
        assert engine.stats["bytes_written"] == 1000
        assert engine.stats["disk_bytes_physical"] == 1000
        assert engine.stats.compression_ratios() == [4.0]

    def test_cache_written_after_compact_returns(self, fake_disk, tmp_test_dir):
        path = str(write_file(tmp_test_dir / "a.txt", 500))
        cache = ChangeCache()
        seen_during_compress = []
        compressor = FakeCompressor(on_compress=lambda p: seen_during_compress.append(cache.lookup(p)))
        engine = FileDecisionEngine(cache, RunStatistics(), compressor, fake_disk)

        engine.process_file(path)

        assert seen_during_compress == [None]
        assert cache.lookup(path) == 500

    def test_excluded_extension(self, engine, fake_compressor, tmp_test_dir):
        path = str(write_file(tmp_test_dir / "b.tmp", 300))

        assert engine.process_file(path) == OUTCOME_SKIPPED_EXTENSION
        assert fake_compressor.calls == []
        assert engine.cache.lookup(path) is None
        assert engine.stats["skipped_by_extension"] == 1
        assert engine.stats["disk_bytes_physical"] == 300

    def test_system_file_skipped(self, engine, fake_compressor, fake_disk, tmp_test_dir):
        path = str(write_file(tmp_test_dir / "pagefile.sys", 100))
        fake_disk.system_paths.add(path)

        assert engine.process_file(path) == OUTCOME_SKIPPED_ATTRIBUTE
        assert fake_compressor.calls == []
        assert engine.stats["skipped_by_attribute"] == 1

    def test_extension_checked_before_attribute(self, engine, fake_disk, tmp_test_dir):
        path = str(write_file(tmp_test_dir / "system.tmp", 100))
        fake_disk.system_paths.add(path)

        assert engine.process_file(path) == OUTCOME_SKIPPED_EXTENSION
        assert engine.stats["skipped_by_attribute"] == 0

    def test_unchanged_file_skipped(self, engine, fake_compressor, tmp_test_dir):
        path = str(write_file(tmp_test_dir / "a.txt", 500))
        engine.cache.record(path, 500)

        assert engine.process_file(path) == OUTCOME_SKIPPED_UNCHANGED
        assert fake_compressor.calls == []
        assert engine.stats["skipped_unchanged"] == 1
        assert engine.stats["disk_bytes_physical"] == 500

    def test_changed_file_recompressed(self, engine, fake_compressor, tmp_test_dir):
        path = str(write_file(tmp_test_dir / "a.txt", 700))
        engine.cache.record(path, 500)

        assert engine.process_file(path) == OUTCOME_PROCESSED
        assert len(fake_compressor.calls) == 1
        assert engine.cache.lookup(path) == 700

    def test_empty_file(self, engine, fake_compressor, tmp_test_dir):
        path = str(write_file(tmp_test_dir / "empty.txt", 0))

        assert engine.process_file(path) == OUTCOME_EMPTY
        assert fake_compressor.calls == []
        assert engine.cache.lookup(path) is None
        assert engine.stats.files_visited == 0

    def test_compressed_attribute_forces_recompression(self, engine, fake_compressor, fake_disk, tmp_test_dir):
        path = str(write_file(tmp_test_dir / "old.bin", 2048))
        fake_disk.compressed_paths.add(path)

        assert engine.process_file(path) == OUTCOME_PROCESSED
        assert fake_disk.cleared == [path]
        assert fake_compressor.calls == [(path, True)]

    def test_compressed_attribute_ignored_when_unchanged(self, engine, fake_compressor, fake_disk, tmp_test_dir):
        path = str(write_file(tmp_test_dir / "old.bin", 2048))
        fake_disk.compressed_paths.add(path)
        engine.cache.record(path, 2048)

        assert engine.process_file(path) == OUTCOME_SKIPPED_UNCHANGED
        assert fake_disk.cleared == []


class TestWarningsAndFailures:
    """Test non-fatal anomalies and per-file errors."""

    def test_inflation_logged(self, fake_disk, tmp_test_dir, caplog):
        path = str(write_file(tmp_test_dir / "random.bin", 500))
        compressor = FakeCompressor(on_compress=lambda p: fake_disk.physical_overrides.update({p: 4096}))
        engine = FileDecisionEngine(ChangeCache(), RunStatistics(), compressor, fake_disk)

        with caplog.at_level(logging.WARNING):
            assert engine.process_file(path) == OUTCOME_PROCESSED

        assert "Physical size grew after compression" in caplog.text
        assert engine.stats["bytes_written"] == 4096

    def test_nonzero_exit_still_recorded(self, fake_disk, tmp_test_dir, caplog):
        path = str(write_file(tmp_test_dir / "a.txt", 500))
        engine = FileDecisionEngine(ChangeCache(), RunStatistics(), FakeCompressor(returncode=1), fake_disk)

        with caplog.at_level(logging.WARNING):
            assert engine.process_file(path) == OUTCOME_PROCESSED

        assert "compact exited with status 1" in caplog.text
        assert engine.cache.lookup(path) == 500

    def test_compressor_error_counted_as_failure(self, fake_disk, tmp_test_dir, caplog):
        path = str(write_file(tmp_test_dir / "locked.bin", 500))
        engine = FileDecisionEngine(ChangeCache(), RunStatistics(), FakeCompressor(fail_paths=[path]), fake_disk)

        assert engine.process_file(path) == OUTCOME_FAILED

        assert engine.cache.lookup(path) is None
        assert engine.stats["failed"] == 1
        assert engine.stats["processed"] == 0
        assert f"Error processing file {path}" in caplog.text

    def test_vanished_file_counted_as_failure(self, engine, fake_compressor, tmp_test_dir):
        path = str(tmp_test_dir / "gone.txt")

        assert engine.process_file(path) == OUTCOME_FAILED
        assert fake_compressor.calls == []
        assert engine.stats["failed"] == 1
        assert engine.stats["disk_bytes_logical"] == 0


class TestExtensions:
    """Test extension normalization and matching."""

    def test_leading_dot_added(self):
        assert normalize_extensions(["zip", ".7z", " jpg "]) == {".zip", ".7z", ".jpg"}

    def test_blank_entries_ignored(self):
        assert normalize_extensions(["", "  "]) == frozenset()
        assert normalize_extensions(None) == frozenset()

    def test_matching(self, fake_compressor, fake_disk):
        engine = FileDecisionEngine(ChangeCache(), RunStatistics(), fake_compressor, fake_disk, ["zip"])
        assert engine.is_excluded("/data/archive.zip")
        assert not engine.is_excluded("/data/archive.zip.txt")
        assert not engine.is_excluded("/data/zip")

    def test_file_without_extension_never_excluded(self, engine):
        assert not engine.is_excluded("/data/Makefile")

    def test_dot_file_uses_name_as_extension(self, engine, fake_compressor, tmp_test_dir):
        path = str(write_file(tmp_test_dir / ".tmp", 10))

        assert engine.is_excluded(path)
        assert engine.process_file(path) == OUTCOME_SKIPPED_EXTENSION
        assert fake_compressor.calls == []

    def test_dot_in_directory_name_ignored(self, engine):
        assert not engine.is_excluded("/data/cache.tmp/Makefile")
