"""
Unit tests for the ZIP archive extractor
"""

import asyncio
import types
import zipfile

import pytest

from bootstrap.extractors import zip_extractor
from bootstrap.extractors.zip_extractor import ZipArchiveExtractor, is_safe_member
from conftest import build_catalog_zip, simple_catalog
from core.exceptions import BootstrapCancelled, CorruptArchiveError, DiskSpaceError


@pytest.fixture
def archive_path(tmp_path):
    catalog = simple_catalog(3)
    path = tmp_path / "data.zip"
    build_catalog_zip(path, catalog["shows"], catalog["recordings"], manifest={"package": {"version": "2.0.0"}})
    return path


class TestZipArchiveExtractor:
    """Test extraction into staging"""

    @pytest.mark.asyncio
    async def test_extracts_catalog_and_returns_root(self, staging_dir, archive_path):
        fractions = []
        extractor = ZipArchiveExtractor(staging_dir)

        root = await extractor.extract(archive_path, on_progress=lambda f, d: fractions.append(f))

        assert root == staging_dir / "catalog"
        assert len(list((root / "shows").glob("*.json"))) == 3
        assert len(list((root / "recordings").glob("*.json"))) == 3
        assert (root / "manifest.json").exists()
        assert fractions[0] == 0.0
        assert fractions[-1] == 1.0
        assert not (staging_dir / "catalog.tmp").exists()

    @pytest.mark.asyncio
    async def test_catalog_nested_in_single_directory(self, staging_dir, tmp_path):
        catalog = simple_catalog(2)
        path = tmp_path / "nested.zip"
        build_catalog_zip(path, catalog["shows"], catalog["recordings"], prefix="dead-metadata-2.0/")

        root = await ZipArchiveExtractor(staging_dir).extract(path)

        assert root == staging_dir / "catalog" / "dead-metadata-2.0"
        assert (root / "shows").is_dir()

    @pytest.mark.asyncio
    async def test_previous_extraction_is_wiped(self, staging_dir, archive_path):
        stale = staging_dir / "catalog" / "shows" / "stale.json"
        stale.parent.mkdir(parents=True)
        stale.write_text("{}")

        await ZipArchiveExtractor(staging_dir).extract(archive_path)

        assert not stale.exists()

    @pytest.mark.asyncio
    async def test_corrupt_archive(self, staging_dir, tmp_path):
        path = tmp_path / "data.zip"
        path.write_bytes(b"this is not a zip archive" * 10)

        with pytest.raises(CorruptArchiveError):
            await ZipArchiveExtractor(staging_dir).extract(path)

        assert not (staging_dir / "catalog").exists()

    @pytest.mark.asyncio
    async def test_truncated_archive(self, staging_dir, archive_path, tmp_path):
        data = archive_path.read_bytes()
        truncated = tmp_path / "truncated.zip"
        truncated.write_bytes(data[: len(data) // 2])

        with pytest.raises(CorruptArchiveError):
            await ZipArchiveExtractor(staging_dir).extract(truncated)

    @pytest.mark.asyncio
    async def test_archive_without_shows_directory(self, staging_dir, tmp_path):
        path = tmp_path / "data.zip"
        with zipfile.ZipFile(path, "w") as archive:
            archive.writestr("readme.txt", "nothing here")

        with pytest.raises(CorruptArchiveError):
            await ZipArchiveExtractor(staging_dir).extract(path)

        assert not (staging_dir / "catalog").exists()

    @pytest.mark.asyncio
    async def test_path_traversal_entries_are_skipped(self, staging_dir, tmp_path):
        catalog = simple_catalog(1)
        path = tmp_path / "data.zip"
        build_catalog_zip(path, catalog["shows"], catalog["recordings"])
        with zipfile.ZipFile(path, "a") as archive:
            archive.writestr("../escaped.json", "{}")

        root = await ZipArchiveExtractor(staging_dir).extract(path)

        assert (root / "shows").is_dir()
        assert not (staging_dir.parent / "escaped.json").exists()
        assert not (staging_dir / "escaped.json").exists()

    @pytest.mark.asyncio
    async def test_insufficient_disk_space(self, staging_dir, archive_path, monkeypatch):
        monkeypatch.setattr(zip_extractor.shutil, "disk_usage", lambda path: types.SimpleNamespace(free=10))

        with pytest.raises(DiskSpaceError) as exc_info:
            await ZipArchiveExtractor(staging_dir).extract(archive_path)

        assert exc_info.value.context["free_bytes"] == 10
        assert not (staging_dir / "catalog.tmp").exists()

    @pytest.mark.asyncio
    async def test_cancellation_between_entries(self, staging_dir, archive_path):
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(BootstrapCancelled):
            await ZipArchiveExtractor(staging_dir).extract(archive_path, cancel=cancel)

        assert not (staging_dir / "catalog.tmp").exists()
        assert not (staging_dir / "catalog").exists()


@pytest.mark.parametrize("name,safe", [
    ("shows/a.json", True),
    ("root/shows/a.json", True),
    ("../a.json", False),
    ("shows/../../a.json", False),
    ("/etc/passwd", False),
    ("C:/windows/a.json", False),
    ("..\\a.json", False),
])
def test_is_safe_member(name, safe):
    assert is_safe_member(name) is safe
