"""
Pytest configuration and fixtures
"""

import hashlib
import json
import zipfile
from pathlib import Path
from typing import Dict, Optional

import httpx
import pytest
import pytest_asyncio

from bootstrap.aggregators.venue_aggregator import VenueAggregator
from bootstrap.extractors.zip_extractor import ZipArchiveExtractor
from bootstrap.fetchers.http_fetcher import HttpArchiveFetcher
from bootstrap.loaders.catalog_importer import CatalogImporter
from bootstrap.runner import BootstrapRunner
from bootstrap.store import CatalogStore
from core.database import create_engine, create_session_maker, init_models
from schemas.catalog import CatalogArchiveRef

ARCHIVE_URL = "https://catalog.example.com/releases/data.zip"


def show_payload(
    index: int,
    venue: str = "Fillmore West",
    city: str = "San Francisco",
    state: str = "CA",
    recordings=None,
    date: Optional[str] = None,
    **overrides
) -> dict:
    """A shows/*.json object in the catalog's format"""
    date = date or f"{1965 + index % 30}-{index % 12 + 1:02d}-{index % 28 + 1:02d}"
    payload = {
        "show_id": f"{date}-show-{index:05d}",
        "band": "Grateful Dead",
        "venue": venue,
        "location_raw": f"{city}, {state}",
        "city": city,
        "state": state,
        "country": "USA",
        "date": date,
        "url": f"https://example.com/shows/{index}",
        "setlist_status": "found",
        "setlist": [
            {"set_name": "Set 1", "songs": [{"name": "Bertha"}, {"name": "Sugaree"}]},
            {"set_name": "Set 2", "songs": [{"name": "Dark Star"}]},
        ],
        "lineup_status": "found",
        "lineup": [{"name": "Jerry Garcia", "instruments": "guitar"}, {"name": "Phil Lesh", "instruments": "bass"}],
        "recordings": list(recordings) if recordings is not None else [f"gd-rec-{index:05d}"],
        "best_recording": f"gd-rec-{index:05d}",
        "avg_rating": 4.5,
        "recording_count": 1,
        "total_high_ratings": 3,
        "total_low_ratings": 1,
        "ticket_images": [],
        "photos": [],
    }
    payload.update(overrides)
    return payload


def recording_payload(rating: float = 4.0, **overrides) -> dict:
    payload = {
        "rating": rating,
        "review_count": 4,
        "source_type": "SBD",
        "confidence": 0.9,
        "date": "1977-05-08",
        "venue": "Barton Hall",
        "location": "Ithaca, NY",
        "raw_rating": rating,
        "high_ratings": 3,
        "low_ratings": 1,
        "tracks": [
            {"track": "01", "title": "Bertha", "duration": 400.5},
            {"track": "02", "title": "Sugaree", "duration": "10:00"},
        ],
        "taper": "Betty Cantor-Jackson",
        "source": "SBD > Reel",
        "lineage": "Reel > DAT > FLAC",
    }
    payload.update(overrides)
    return payload


def simple_catalog(count: int = 5) -> dict:
    """Shows and recordings for ``count`` shows, one recording each"""
    shows = {}
    recordings = {}
    for i in range(count):
        show = show_payload(i)
        shows[show["show_id"]] = show
        recordings[f"gd-rec-{i:05d}"] = recording_payload()
    return {"shows": shows, "recordings": recordings}


def write_catalog_dir(root: Path, shows: Dict[str, object], recordings: Dict[str, object] = None, manifest=None,
                      collections=None) -> Path:
    """Write an extracted catalog tree; payload values that are str are written verbatim"""
    (root / "shows").mkdir(parents=True, exist_ok=True)
    (root / "recordings").mkdir(parents=True, exist_ok=True)
    for name, payload in shows.items():
        text = payload if isinstance(payload, str) else json.dumps(payload)
        (root / "shows" / f"{name}.json").write_text(text)
    for name, payload in (recordings or {}).items():
        text = payload if isinstance(payload, str) else json.dumps(payload)
        (root / "recordings" / f"{name}.json").write_text(text)
    if manifest is not None:
        (root / "manifest.json").write_text(json.dumps(manifest))
    if collections is not None:
        text = collections if isinstance(collections, str) else json.dumps(collections)
        (root / "collections.json").write_text(text)
    return root


def build_catalog_zip(path: Path, shows: Dict[str, object], recordings: Dict[str, object] = None,
                      manifest=None, prefix: str = "", collections=None) -> bytes:
    """Write a catalog archive to ``path`` and return its bytes"""
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, payload in shows.items():
            text = payload if isinstance(payload, str) else json.dumps(payload)
            archive.writestr(f"{prefix}shows/{name}.json", text)
        for name, payload in (recordings or {}).items():
            text = payload if isinstance(payload, str) else json.dumps(payload)
            archive.writestr(f"{prefix}recordings/{name}.json", text)
        if manifest is not None:
            archive.writestr(f"{prefix}manifest.json", json.dumps(manifest))
        if collections is not None:
            text = collections if isinstance(collections, str) else json.dumps(collections)
            archive.writestr(f"{prefix}collections.json", text)
    return path.read_bytes()


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class BrokenStream(httpx.AsyncByteStream):
    """Response body that drops the connection after ``fail_after`` bytes"""

    def __init__(self, data: bytes, fail_after: int):
        self.data = data
        self.fail_after = fail_after

    async def __aiter__(self):
        yield self.data[:self.fail_after]
        raise httpx.ReadError("connection reset by peer")


class ArchiveServer:
    """
    httpx.MockTransport handler serving one archive.

    Supports Range / If-Range against its ETag, injected failures, and a
    connection drop part way through the first response.
    """

    def __init__(self, content: bytes, etag: str = '"catalog-v1"', support_ranges: bool = True,
                 fail_first: int = 0, fail_status: int = 503, drop_after: Optional[int] = None):
        self.content = content
        self.etag = etag
        self.support_ranges = support_ranges
        self.fail_first = fail_first
        self.fail_status = fail_status
        self.drop_after = drop_after
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_first > 0:
            self.fail_first -= 1
            return httpx.Response(self.fail_status)

        total = len(self.content)
        range_header = request.headers.get("Range")
        if range_header and self.support_ranges and request.headers.get("If-Range") == self.etag:
            start = int(range_header.split("=")[1].split("-")[0])
            return httpx.Response(
                206,
                content=self.content[start:],
                headers={"ETag": self.etag, "Content-Range": f"bytes {start}-{total - 1}/{total}"}
            )

        if self.drop_after is not None:
            drop_after, self.drop_after = self.drop_after, None
            return httpx.Response(
                200,
                stream=BrokenStream(self.content, drop_after),
                headers={"ETag": self.etag, "Content-Length": str(total)}
            )

        return httpx.Response(200, content=self.content, headers={"ETag": self.etag})

    def client_factory(self):
        return lambda: httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def ref(self, **overrides) -> CatalogArchiveRef:
        values = {"url": ARCHIVE_URL, "expected_sha256": sha256_hex(self.content), "expected_size": len(self.content)}
        values.update(overrides)
        return CatalogArchiveRef(**values)


def make_runner(store: CatalogStore, staging_dir: Path, server: Optional[ArchiveServer] = None,
                schema_version: str = "1", batch_size: int = 500, tolerance: int = 100,
                fetcher=None, importer=None) -> BootstrapRunner:
    """A runner wired to real components; the fetcher talks to ``server``"""
    if fetcher is None:
        fetcher = HttpArchiveFetcher(staging_dir, retry_delay=0, client_factory=server.client_factory())
    return BootstrapRunner(
        store=store,
        fetcher=fetcher,
        extractor=ZipArchiveExtractor(staging_dir),
        importer=importer or CatalogImporter(store, batch_size=batch_size),
        aggregator=VenueAggregator(store, batch_size=batch_size),
        schema_version=schema_version,
        parser_tolerance=tolerance
    )


def catalog_server(tmp_path: Path, catalog: Optional[dict] = None, manifest=None, **kwargs) -> ArchiveServer:
    """An ArchiveServer serving a zipped catalog (five shows by default)"""
    catalog = catalog or simple_catalog(5)
    content = build_catalog_zip(
        tmp_path / f"source-{len(list(tmp_path.glob('source-*.zip')))}.zip",
        catalog["shows"], catalog["recordings"], manifest=manifest, collections=catalog.get("collections")
    )
    return ArchiveServer(content, **kwargs)


async def collect(subscription) -> list:
    return [progress async for progress in subscription]


def phase_path(snapshots) -> list:
    """Distinct phases in the order they were first seen"""
    phases = []
    for progress in snapshots:
        if not phases or phases[-1] != progress.phase:
            phases.append(progress.phase)
    return phases


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a throwaway SQLite catalog database"""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    return create_session_maker(test_engine)


@pytest.fixture
def store(session_maker):
    return CatalogStore(session_maker)


@pytest.fixture
def staging_dir(tmp_path):
    path = tmp_path / "staging"
    path.mkdir()
    return path
