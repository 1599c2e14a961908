import pytest

from ingest.core import config
from ingest.core.errors import ConfigError, GeocodingError
from ingest.core.models import Coordinates, ScrapedEstablishment, SourceId
from ingest.core.store import LIVE_TABLE, STAGED_TABLE, InMemoryStore
from ingest.etl.normalize import NO_COORDINATES_FLAG
from ingest.jobs import approve_batch, geocode_staged, status
from ingest.pipeline.promotion import PromotionOutcome, PromotionResult, StagingService


def establishment(name, city, confidence, phone, street):
    return ScrapedEstablishment(
        name=name,
        source=SourceId.HFSAA,
        source_url="https://www.hfsaa.org/",
        address=None,
        street=street,
        city=city,
        state="IL",
        zip=None,
        coordinates=Coordinates(41.9, -87.6),
        phone=phone,
        website=None,
        email=None,
        description=None,
        category="RESTAURANT",
        services=(),
        signals=("halal",),
        confidence=confidence,
    )


@pytest.fixture
def store():
    store = InMemoryStore()
    staging = StagingService(store)
    staging.stage(establishment("Al-Noor Grill", "Chicago", 80, "+17735550100", "2800 W Devon Ave"))
    staging.stage(establishment("Sabri Nihari", "Chicago", 40, "+17735550101", "2502 W Devon Ave"))
    staging.stage(establishment("Kabul House", "Skokie", 70, "+18475550101", "4949 Oakton St"))
    return store


def test_pending_candidates_filters_and_orders(store):
    records = approve_batch.pending_candidates(store, 60)

    assert [record.name for record in records] == ["Al-Noor Grill", "Kabul House"]
    assert [record.name for record in approve_batch.pending_candidates(store, 0, limit=1)] == ["Al-Noor Grill"]


def test_approve_batch_promotes_and_reports_conflicts(store, capsys):
    store.create(LIVE_TABLE, {"name": "Kabul House", "city": "Skokie", "slug": "kabul-house"})

    results = approve_batch.approve_batch_job(min_confidence=60, store=store, reviewed_by="ops")

    assert [result.outcome for result in results] == [PromotionOutcome.PROMOTED, PromotionOutcome.CONFLICT]
    approved = store.find_many(STAGED_TABLE, {"status": "APPROVED"})
    assert [row["name"] for row in approved] == ["Al-Noor Grill"]
    assert approved[0]["reviewed_by"] == "ops"
    output = capsys.readouterr().out
    assert "promoted  Al-Noor Grill -> al-noor-grill" in output
    assert "Promoted 1, conflicts 1, failed 0" in output


def test_approve_batch_dry_run_writes_nothing(store, capsys):
    results = approve_batch.approve_batch_job(min_confidence=60, dry_run=True, store=store)

    assert results == []
    assert store.find_many(LIVE_TABLE) == []
    assert capsys.readouterr().out.count("would promote") == 2


def test_approve_main_exit_codes(monkeypatch):
    monkeypatch.setattr(approve_batch, "approve_batch_job", lambda **kwargs: [PromotionResult(PromotionOutcome.PROMOTED, "a")])
    assert approve_batch.main(["--min-confidence", "70"]) == 0

    monkeypatch.setattr(
        approve_batch,
        "approve_batch_job",
        lambda **kwargs: [PromotionResult(PromotionOutcome.FAILED, "b", message="connection lost")],
    )
    assert approve_batch.main([]) == 1


class DummyGeocoder:
    def __init__(self):
        self.calls = []

    def geocode(self, street, city, state, zip_code=None):
        self.calls.append(street)
        if street == "1 Main St":
            return Coordinates(41.88, -87.63)
        if street == "9 Broken Rd":
            raise GeocodingError("HTTP 500")
        return None


def staged_row(store, name, street, city="Chicago", status="PENDING_REVIEW", lat=None):
    return store.create(
        STAGED_TABLE,
        {
            "name": name,
            "street": street,
            "city": city,
            "state": "IL",
            "zip": None,
            "status": status,
            "lat": lat,
            "lng": None if lat is None else -87.6,
            "confidence": 50,
            "flags": [NO_COORDINATES_FLAG, "incomplete address"],
        },
    )


def test_geocode_staged_updates_missing_coordinates(monkeypatch):
    store = InMemoryStore()
    resolved = staged_row(store, "Al-Noor Grill", "1 Main St")
    staged_row(store, "Unknown Place", "2 Nowhere Ln", status="FLAGGED")
    staged_row(store, "Broken", "9 Broken Rd")
    staged_row(store, "No City", "3 Main St", city="")
    staged_row(store, "Approved", "4 Main St", status="APPROVED")
    staged_row(store, "Has Coordinates", "5 Main St", lat=41.9)
    sleeps = []
    monkeypatch.setattr(geocode_staged.time, "sleep", sleeps.append)
    geocoder = DummyGeocoder()
    settings = config.Settings(database_url="", geocoder_min_interval_seconds=1.1)

    summary = geocode_staged.geocode_staged_job(settings=settings, store=store, geocoder=geocoder)

    assert (summary.checked, summary.geocoded, summary.no_match, summary.failed) == (3, 1, 1, 1)
    assert sorted(geocoder.calls) == ["1 Main St", "2 Nowhere Ln", "9 Broken Rd"]
    assert sleeps == [1.1, 1.1]
    row = store.get(STAGED_TABLE, resolved["id"])
    assert (row["lat"], row["lng"]) == (41.88, -87.63)
    assert row["flags"] == ["incomplete address"]


def test_geocode_staged_dry_run(capsys):
    store = InMemoryStore()
    staged_row(store, "Al-Noor Grill", "1 Main St")
    geocoder = DummyGeocoder()

    summary = geocode_staged.geocode_staged_job(
        dry_run=True, settings=config.Settings(database_url=""), store=store, geocoder=geocoder
    )

    assert summary.checked == 1
    assert geocoder.calls == []
    assert "would geocode Al-Noor Grill (Chicago, IL)" in capsys.readouterr().out


def test_status_job_counts_by_source_and_status(store, capsys):
    store.create(STAGED_TABLE, {"name": "Midamar", "source": "ifanca", "status": "FLAGGED"})
    store.create(LIVE_TABLE, {"name": "Kabul House", "slug": "kabul-house", "scraped_business_id": "abc"})
    store.create(LIVE_TABLE, {"name": "Noor Masjid", "slug": "noor-masjid"})

    summary = status.status_job(store=store)

    assert summary.staged == {"hfsaa": {"PENDING_REVIEW": 3}, "ifanca": {"FLAGGED": 1}}
    assert (summary.live_total, summary.live_scraped) == (2, 1)
    output = capsys.readouterr().out
    assert "  hfsaa:\n    PENDING_REVIEW: 3" in output
    assert "  scraped: 1" in output


def test_status_main_reports_config_errors(monkeypatch):
    def broken(store=None):
        raise ConfigError("DATABASE_URL is required when STORE_BACKEND=postgres")

    monkeypatch.setattr(status, "status_job", broken)

    assert status.main([]) == 2
