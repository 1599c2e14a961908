import threading
import time
from collections import defaultdict
from contextlib import contextmanager

import pytest

from ingest.core.errors import InvalidTransition
from ingest.core.models import Coordinates, ScrapedEstablishment, SourceId, StagingStatus
from ingest.core.store import LIVE_TABLE, STAGED_TABLE, InMemoryStore
from ingest.pipeline import dedup, promotion


def establishment(**overrides):
    values = {
        "name": "Al-Noor Grill",
        "source": SourceId.HFSAA,
        "source_url": "https://www.hfsaa.org/chicago",
        "address": "2800 W Devon Ave, Chicago, IL 60659",
        "street": "2800 W Devon Ave",
        "city": "Chicago",
        "state": "IL",
        "zip": "60659",
        "coordinates": Coordinates(41.99, -87.69),
        "phone": "+17735550100",
        "website": "https://alnoor.com/",
        "email": None,
        "description": "Zabiha halal grill",
        "category": "RESTAURANT",
        "services": ("Catering",),
        "signals": ("zabiha", "halal"),
        "confidence": 40,
    }
    values.update(overrides)
    return ScrapedEstablishment(**values)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def staging(store):
    return promotion.StagingService(store)


@pytest.fixture
def promoter(store):
    return promotion.PromotionService(store)


def test_stage_creates_pending_record(store, staging):
    result = staging.stage(establishment())

    assert result.outcome is promotion.StageOutcome.STAGED
    row = store.get(STAGED_TABLE, result.record_id)
    assert row["status"] == "PENDING_REVIEW"
    assert row["lat"] == 41.99 and row["lng"] == -87.69
    assert row["scraped_at"] is not None


def test_identical_name_and_city_staged_once(store, staging):
    first = staging.stage(establishment())
    second = staging.stage(establishment(name="  al-noor   GRILL", city="chicago"))

    assert first.outcome is promotion.StageOutcome.STAGED
    assert second.outcome is promotion.StageOutcome.DUPLICATE
    assert second.record_id == first.record_id
    assert len(store.find_many(STAGED_TABLE)) == 1


def test_matching_record_with_different_fields_is_a_conflict(store, staging, caplog):
    staging.stage(establishment())

    with caplog.at_level("WARNING"):
        result = staging.stage(establishment(name="Noor Grill & Cafe", website="https://noorcafe.com/"))

    assert result.outcome is promotion.StageOutcome.CONFLICT
    assert result.match.matched_on == "phone"
    assert "name" in result.differing and "website" in result.differing
    assert len(store.find_many(STAGED_TABLE)) == 1
    assert "manual merge" in " ".join(caplog.messages)


def test_find_duplicate_checks_street_and_city_against_live_address(store):
    store.create(LIVE_TABLE, {"name": "Other Name", "address": "2800 W Devon Ave", "city": "Chicago", "phone": None})

    match = dedup.find_duplicate(store, establishment(name="New Name", phone=None), (LIVE_TABLE,))

    assert match.table == LIVE_TABLE
    assert match.matched_on == "street_city"


def test_find_duplicate_none_when_nothing_matches(store):
    assert dedup.find_duplicate(store, establishment()) is None


def test_concurrent_staging_of_same_business_inserts_once(store, staging):
    results = []

    def worker():
        results.append(staging.stage(establishment()))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    outcomes = [result.outcome for result in results]
    assert outcomes.count(promotion.StageOutcome.STAGED) == 1
    assert len(store.find_many(STAGED_TABLE)) == 1


def test_promote_publishes_and_approves(store, staging, promoter):
    staged_id = staging.stage(establishment()).record_id

    result = promoter.promote(staged_id, reviewed_by="admin@example.com", note="looks right")

    assert result.outcome is promotion.PromotionOutcome.PROMOTED
    assert result.ok
    assert result.slug == "al-noor-grill"
    live = store.get(LIVE_TABLE, result.business_id)
    assert live["scraped_business_id"] == staged_id
    assert live["scraped_from"] == "hfsaa"
    assert live["confidence_score"] == 40
    assert live["status"] == "PUBLISHED"
    assert live["needs_geocoding"] is False
    staged = store.get(STAGED_TABLE, staged_id)
    assert staged["status"] == "APPROVED"
    assert staged["reviewed_by"] == "admin@example.com"
    assert staged["reviewed_at"] is not None


def test_promotion_rolls_back_when_building_live_record_fails(store, staging, promoter, monkeypatch):
    staged_id = staging.stage(establishment()).record_id
    slugs = []
    real_generate_slug = promotion.generate_slug

    def tracking_generate_slug(reader, name):
        slug = real_generate_slug(reader, name)
        slugs.append(slug)
        return slug

    def broken_build(staged, slug):
        raise RuntimeError("disk full")

    monkeypatch.setattr(promotion, "generate_slug", tracking_generate_slug)
    monkeypatch.setattr(promotion, "build_live_record", broken_build)

    result = promoter.promote(staged_id)

    assert slugs == ["al-noor-grill"]
    assert result.outcome is promotion.PromotionOutcome.FAILED
    assert "disk full" in result.message
    assert store.find_many(LIVE_TABLE) == []
    assert store.get(STAGED_TABLE, staged_id)["status"] == "PENDING_REVIEW"


def test_promotion_rolls_back_when_status_update_fails(store, staging, promoter, monkeypatch):
    staged_id = staging.stage(establishment()).record_id
    real_update = store.update

    def failing_update(table, record_id, values):
        if table == STAGED_TABLE:
            raise RuntimeError("connection lost")
        return real_update(table, record_id, values)

    monkeypatch.setattr(store, "update", failing_update)

    result = promoter.promote(staged_id)

    assert result.outcome is promotion.PromotionOutcome.FAILED
    assert store.find_many(LIVE_TABLE) == []
    assert store.get(STAGED_TABLE, staged_id)["status"] == "PENDING_REVIEW"


def test_identical_names_get_distinct_slugs(store, staging, promoter):
    first_id = staging.stage(establishment()).record_id
    second_id = staging.stage(
        establishment(city="Houston", street="1 Main St", phone="+17135550100", state="TX", address=None)
    ).record_id

    first = promoter.promote(first_id)
    second = promoter.promote(second_id)

    assert first.slug == "al-noor-grill"
    assert second.slug.startswith("al-noor-grill-")
    assert second.slug != first.slug
    assert len(second.slug) == len("al-noor-grill-") + 8


def test_promotion_conflict_with_live_record_created_after_staging(store, staging, promoter):
    staged_id = staging.stage(establishment()).record_id
    existing = store.create(LIVE_TABLE, {"name": "Al-Noor Grill", "city": "Chicago", "slug": "al-noor-grill-2"})

    result = promoter.promote(staged_id)

    assert result.outcome is promotion.PromotionOutcome.CONFLICT
    assert result.existing_id == existing["id"]
    assert store.get(STAGED_TABLE, staged_id)["status"] == "PENDING_REVIEW"
    assert len(store.find_many(LIVE_TABLE)) == 1


def test_promoting_twice_is_invalid(store, staging, promoter):
    staged_id = staging.stage(establishment()).record_id
    promoter.promote(staged_id)

    again = promoter.promote(staged_id)

    assert again.outcome is promotion.PromotionOutcome.INVALID
    assert len(store.find_many(LIVE_TABLE)) == 1
    assert promoter.promote("missing").outcome is promotion.PromotionOutcome.INVALID


def test_missing_coordinates_promoted_with_warning(store, staging, promoter):
    staged_id = staging.stage(establishment(coordinates=None)).record_id

    result = promoter.promote(staged_id)

    assert result.outcome is promotion.PromotionOutcome.PROMOTED
    assert result.warnings == (promotion.MISSING_COORDINATES_WARNING,)
    live = store.get(LIVE_TABLE, result.business_id)
    assert live["needs_geocoding"] is True
    assert live["lat"] is None and live["lng"] is None


def test_review_transitions(store, staging, promoter):
    staged_id = staging.stage(establishment()).record_id

    flagged = promoter.review(staged_id, StagingStatus.FLAGGED, reviewed_by="admin", note="check hours")
    reopened = promoter.review(staged_id, StagingStatus.PENDING_REVIEW, reviewed_by="admin")
    rejected = promoter.review(staged_id, StagingStatus.REJECTED, reviewed_by="admin")

    assert flagged.status is StagingStatus.FLAGGED
    assert flagged.review_note == "check hours"
    assert reopened.status is StagingStatus.PENDING_REVIEW
    assert rejected.status is StagingStatus.REJECTED
    with pytest.raises(InvalidTransition):
        promoter.review(staged_id, StagingStatus.PENDING_REVIEW)
    with pytest.raises(ValueError):
        promoter.review(staged_id, StagingStatus.APPROVED)


def test_slugify():
    assert promotion.slugify("Café Noor & Grill!!") == "caf-noor-grill"
    assert promotion.slugify("!!!") == "business"
    assert len(promotion.slugify("x" * 80)) == promotion.SLUG_MAX_LENGTH


class KeyLockedStore(InMemoryStore):
    """Serializes transactions per lock key only, the way advisory locks do.

    Lookups that find nothing pause briefly so concurrent transactions interleave.
    """

    def __init__(self, pause=0.05):
        super().__init__()
        self.pause = pause
        self._key_locks = defaultdict(threading.Lock)
        self._guard = threading.Lock()

    @contextmanager
    def transaction(self, *lock_keys):
        with self._guard:
            locks = [self._key_locks[key] for key in sorted(set(lock_keys))]
        for lock in locks:
            lock.acquire()
        try:
            yield self
        finally:
            for lock in reversed(locks):
                lock.release()

    def find_many(self, table, filters=None, **kwargs):
        rows = super().find_many(table, filters, **kwargs)
        if not rows:
            time.sleep(self.pause)
        return rows


def run_together(*calls):
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)
    errors = []

    def runner(index, call):
        barrier.wait()
        try:
            results[index] = call()
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=runner, args=(index, call)) for index, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results, errors


def test_lock_keys_cover_every_duplicate_criterion():
    keys = dedup.lock_keys(establishment())

    assert keys == (
        "name_city:al-noor grill|chicago",
        "phone:+17735550100",
        "street_city:2800 w devon ave|chicago",
    )
    renamed = dedup.lock_keys(establishment(name="Al Noor Grill & Kabob", street=None))
    assert set(keys) & set(renamed) == {"phone:+17735550100"}


def test_concurrent_staging_under_different_names_with_same_phone():
    store = KeyLockedStore()
    staging = promotion.StagingService(store)

    results, errors = run_together(
        lambda: staging.stage(establishment()),
        lambda: staging.stage(establishment(name="Al Noor Grill & Kabob", street="2801 W Devon Ave")),
    )

    assert errors == []
    assert sorted(result.outcome.value for result in results) == ["CONFLICT", "STAGED"]
    assert len(store.find_many(STAGED_TABLE)) == 1


def test_concurrent_promotions_of_same_name_get_distinct_slugs():
    store = KeyLockedStore(pause=0)
    staging = promotion.StagingService(store)
    chicago = staging.stage(establishment()).record_id
    houston = staging.stage(
        establishment(city="Houston", state="TX", street="1 Main St", address=None, phone="+17135550100")
    ).record_id
    store.pause = 0.05
    promoter = promotion.PromotionService(store)

    results, errors = run_together(lambda: promoter.promote(chicago), lambda: promoter.promote(houston))

    assert errors == []
    assert all(result.outcome is promotion.PromotionOutcome.PROMOTED for result in results)
    slugs = [row["slug"] for row in store.find_many(LIVE_TABLE)]
    assert len(slugs) == 2
    assert len(set(slugs)) == 2


def test_concurrent_review_and_promotion_do_not_both_win():
    store = KeyLockedStore(pause=0)
    staged_id = promotion.StagingService(store).stage(establishment()).record_id
    store.pause = 0.05
    promoter = promotion.PromotionService(store)

    results, errors = run_together(
        lambda: promoter.promote(staged_id),
        lambda: promoter.review(staged_id, StagingStatus.REJECTED, reviewed_by="admin"),
    )

    status = store.get(STAGED_TABLE, staged_id)["status"]
    live_rows = store.find_many(LIVE_TABLE)
    if status == "APPROVED":
        assert results[0].outcome is promotion.PromotionOutcome.PROMOTED
        assert len(live_rows) == 1
        assert len(errors) == 1 and isinstance(errors[0], InvalidTransition)
    else:
        assert status == "REJECTED"
        assert results[0].outcome is promotion.PromotionOutcome.INVALID
        assert live_rows == []
        assert errors == []
