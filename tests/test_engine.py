"""
Integration tests for the match engine.
End-to-end matching runs against the in-memory datastore.
"""
import asyncio
import math
from datetime import datetime, timedelta, timezone

import pytest

from bloodmatch.core.config import Settings
from bloodmatch.core.errors import NotFound, StoreUnavailable, ValidationError
from bloodmatch.schemas.match import MatchCandidate, MatchStatus
from bloodmatch.schemas.request import (
    BloodGroup, BloodRequest, Coordinate, DonorProfile, RequestStatus, RhFactor, Urgency,
)
from bloodmatch.scoring.engine import (
    COMPATIBILITY_FLOOR,
    FUSION_WEIGHTS,
    MatchEngine,
    distance_score,
    fuse_scores,
    rank_candidates,
)
from bloodmatch.services.broadcast import UrgentBroadcaster
from bloodmatch.services.location_cache import DonorLocationCache
from bloodmatch.services.memory_store import InMemoryDatastore

ORIGIN = Coordinate(latitude=28.6139, longitude=77.2090)


def _north_of_origin(km: float) -> Coordinate:
    return Coordinate(latitude=ORIGIN.latitude + math.degrees(km / 6371.0), longitude=ORIGIN.longitude)


class FixedModel:
    version = "fixed"

    def __init__(self, score: float = 0.9):
        self.score = score

    def predict(self, vector):
        return self.score


class ReputationModel:
    """Scores each donor by its reputation feature."""
    version = "reputation"

    def predict(self, vector):
        return vector.reputation


class RecordingNotifier:

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def notify(self, user_id, event, payload):
        if self.fail:
            raise ConnectionError("gateway down")
        self.sent.append((user_id, event, payload))


class RecordingBus:

    def __init__(self):
        self.published = []

    async def publish(self, topic, event):
        self.published.append((topic, event))


def _settings(**overrides) -> Settings:
    kwargs = {"store_read_backoff_seconds": 0.0, "kafka_enabled": False}
    kwargs.update(overrides)
    return Settings(**kwargs)


def _make_request(**overrides) -> BloodRequest:
    kwargs = {
        "id": "REQ-001",
        "recipient_id": "USR-R1",
        "blood_group": BloodGroup.O,
        "rh_factor": RhFactor.POSITIVE,
        "urgency": Urgency.HIGH,
        "origin": ORIGIN,
        "radius_km": 10.0,
        "expires_at": datetime.now(timezone.utc) + timedelta(hours=6),
    }
    kwargs.update(overrides)
    return BloodRequest(**kwargs)


def _make_donor(donor_id: str, km: float = 1.0, **overrides) -> DonorProfile:
    kwargs = {
        "id": donor_id,
        "user_id": f"USR-{donor_id}",
        "blood_group": BloodGroup.O,
        "rh_factor": RhFactor.POSITIVE,
        "last_location": _north_of_origin(km),
        "reputation_score": 0.95,
    }
    kwargs.update(overrides)
    return DonorProfile(**kwargs)


def _make_engine(store, model=None, notifier=None, bus=None, locations=None, settings=None):
    settings = settings or _settings()
    locations = locations or DonorLocationCache()
    broadcaster = UrgentBroadcaster(store, locations, notifier=notifier, bus=bus, settings=settings)
    return MatchEngine(
        store, model or FixedModel(), locations,
        notifier=notifier, broadcaster=broadcaster, settings=settings,
    )


def _run(engine, request_id="REQ-001", limit=None):
    return asyncio.run(engine.run_matching(request_id, limit))


class TestScoringHelpers:

    def test_fusion_weights_sum_to_one(self):
        assert sum(FUSION_WEIGHTS.values()) == pytest.approx(1.0)

    def test_distance_score(self):
        assert distance_score(1.0, 10.0) == pytest.approx(0.9)
        assert distance_score(10.0, 10.0) == 0.0
        assert distance_score(12.0, 10.0) == 0.0

    def test_fuse(self):
        assert fuse_scores(0.9, 0.9) == pytest.approx(0.9)
        assert fuse_scores(1.0, 0.0) == pytest.approx(0.6)

    def test_rank_ties_break_on_distance_then_reputation(self):
        def candidate(donor_id, overall, distance, reputation):
            return MatchCandidate(
                donor_id=donor_id, user_id=donor_id, distance_km=distance,
                model_score=0.8, distance_score=0.5, overall_score=overall,
                response_score=1.0, reputation_score=reputation,
            )

        ranked = rank_candidates([
            candidate("far", 0.8, 5.0, 0.9),
            candidate("near-low-rep", 0.8, 2.0, 0.3),
            candidate("near-high-rep", 0.8, 2.0, 0.9),
            candidate("best", 0.95, 9.0, 0.1),
        ], limit=10)
        assert [c.donor_id for c in ranked] == ["best", "near-high-rep", "near-low-rep", "far"]

    def test_rank_truncates(self):
        assert rank_candidates([], 5) == []


class TestEndToEnd:

    def test_o_positive_scenario(self):
        store = InMemoryDatastore()
        store.add_request(_make_request())
        store.add_donor(_make_donor("A", km=1.0))
        store.add_donor(_make_donor("B", km=50.0))
        notifier = RecordingNotifier()

        matches = _run(_make_engine(store, FixedModel(0.9), notifier=notifier))

        assert [m.donor_id for m in matches] == ["A"]
        top = matches[0]
        assert top.distance_km == pytest.approx(1.0, abs=0.01)
        assert top.distance_score == pytest.approx(0.9, abs=0.001)
        assert top.overall_score == pytest.approx(0.9, abs=0.001)

        persisted = list(store.matches.values())
        assert len(persisted) == 1
        assert persisted[0].status == MatchStatus.PENDING
        assert persisted[0].expires_at - persisted[0].created_at == timedelta(hours=24)
        assert store.requests["REQ-001"].status == RequestStatus.MATCHED

        assert notifier.sent[0][0] == "USR-A"
        assert notifier.sent[0][1] == "MATCH_FOUND"

    def test_mismatched_blood_type_never_matches(self):
        store = InMemoryDatastore()
        store.add_request(_make_request())
        store.add_donor(_make_donor("A-neg", rh_factor=RhFactor.NEGATIVE))
        store.add_donor(_make_donor("B-pos", blood_group=BloodGroup.B))
        assert _run(_make_engine(store)) == []

    def test_blocked_and_unavailable_excluded(self):
        store = InMemoryDatastore()
        store.add_request(_make_request())
        store.add_donor(_make_donor("blocked", blocked=True))
        store.add_donor(_make_donor("away", is_available=False))
        store.add_donor(_make_donor("ok"))
        assert [m.donor_id for m in _run(_make_engine(store))] == ["ok"]

    def test_compatibility_floor_is_exclusive(self):
        store = InMemoryDatastore()
        store.add_request(_make_request())
        store.add_donor(_make_donor("at-floor", reputation_score=COMPATIBILITY_FLOOR))
        store.add_donor(_make_donor("above", reputation_score=0.71))
        matches = _run(_make_engine(store, ReputationModel()))
        assert [m.donor_id for m in matches] == ["above"]

    def test_limit_respected(self):
        store = InMemoryDatastore()
        store.add_request(_make_request())
        for i in range(6):
            store.add_donor(_make_donor(f"D{i}", km=1.0 + i))
        matches = _run(_make_engine(store), limit=3)
        assert [m.donor_id for m in matches] == ["D0", "D1", "D2"]
        assert len(store.matches) == 3

    def test_cached_location_wins_over_profile(self):
        store = InMemoryDatastore()
        store.add_request(_make_request())
        store.add_donor(_make_donor("A", km=40.0))
        locations = DonorLocationCache()
        near = _north_of_origin(2.0)
        locations.update("USR-A", near.latitude, near.longitude)

        matches = _run(_make_engine(store, locations=locations))
        assert matches[0].distance_km == pytest.approx(2.0, abs=0.01)

    def test_unknown_location_skipped(self):
        store = InMemoryDatastore()
        store.add_request(_make_request())
        store.add_donor(_make_donor("nowhere", last_location=None))
        store.add_donor(_make_donor("broken", last_location=Coordinate(latitude=120, longitude=0)))
        assert _run(_make_engine(store)) == []


class TestFailureModes:

    def test_unknown_request(self):
        with pytest.raises(NotFound):
            _run(_make_engine(InMemoryDatastore()), "missing")

    def test_request_without_origin(self):
        store = InMemoryDatastore()
        store.add_request(_make_request(origin=None))
        with pytest.raises(NotFound):
            _run(_make_engine(store))

    def test_fulfilled_request_rejected(self):
        store = InMemoryDatastore()
        store.add_request(_make_request(status=RequestStatus.FULFILLED))
        with pytest.raises(ValidationError):
            _run(_make_engine(store))

    def test_expired_request_marked_and_empty(self):
        store = InMemoryDatastore()
        store.add_request(_make_request(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1)))
        store.add_donor(_make_donor("A"))
        assert _run(_make_engine(store)) == []
        assert store.requests["REQ-001"].status == RequestStatus.EXPIRED
        assert store.matches == {}

    def test_transient_store_failure_is_retried(self):
        store = InMemoryDatastore()
        store.add_request(_make_request())
        store.add_donor(_make_donor("A"))
        store.fail("find_candidate_donors", times=2)
        assert len(_run(_make_engine(store))) == 1

    def test_persistent_store_failure_propagates(self):
        store = InMemoryDatastore()
        store.add_request(_make_request())
        store.fail("find_request", times=5)
        with pytest.raises(StoreUnavailable):
            _run(_make_engine(store))

    def test_notifier_failure_does_not_fail_run(self):
        store = InMemoryDatastore()
        store.add_request(_make_request())
        store.add_donor(_make_donor("A"))
        matches = _run(_make_engine(store, notifier=RecordingNotifier(fail=True)))
        assert len(matches) == 1
        assert len(store.matches) == 1

    def test_candidate_error_skips_only_that_candidate(self):
        class SelectiveModel:
            version = "selective"

            def predict(self, vector):
                if vector.reputation < 0.5:
                    raise RuntimeError("bad row")
                return 0.9

        store = InMemoryDatastore()
        store.add_request(_make_request())
        store.add_donor(_make_donor("bad", reputation_score=0.2))
        store.add_donor(_make_donor("good", reputation_score=0.9))
        assert [m.donor_id for m in _run(_make_engine(store, SelectiveModel()))] == ["good"]

    def test_rerun_does_not_duplicate_matches(self):
        store = InMemoryDatastore()
        store.add_request(_make_request())
        store.add_donor(_make_donor("A"))
        engine = _make_engine(store)

        _run(engine)
        second = _run(engine)

        assert [m.donor_id for m in second] == ["A"]
        assert len(store.matches) == 1

    def test_match_reports_only_inserted_records(self):
        store = InMemoryDatastore()
        store.add_request(_make_request())
        store.add_donor(_make_donor("A"))
        engine = _make_engine(store)

        first = asyncio.run(engine.match("REQ-001"))
        second = asyncio.run(engine.match("REQ-001"))

        assert first.created == 1
        assert second.created == 0
        assert [m.donor_id for m in second.matches] == ["A"]


    def test_naive_timestamps_are_read_as_utc(self):
        naive_now = datetime.now(timezone.utc).replace(tzinfo=None)
        store = InMemoryDatastore()
        store.add_request(_make_request(expires_at=naive_now + timedelta(hours=6)))
        store.add_donor(_make_donor("A", last_donation_at=naive_now - timedelta(days=100)))

        matches = _run(_make_engine(store))

        assert [m.donor_id for m in matches] == ["A"]
        assert store.requests["REQ-001"].expires_at.tzinfo is not None

    def test_naive_past_expiry_still_expires(self):
        naive_now = datetime.now(timezone.utc).replace(tzinfo=None)
        store = InMemoryDatastore()
        store.add_request(_make_request(expires_at=naive_now - timedelta(minutes=5)))
        assert _run(_make_engine(store)) == []
        assert store.requests["REQ-001"].status == RequestStatus.EXPIRED


class TestEmergencyBroadcast:

    def test_empty_emergency_run_broadcasts(self):
        store = InMemoryDatastore()
        store.add_request(_make_request(urgency=Urgency.EMERGENCY))
        # Other blood group: not a candidate, but reachable by the broadcast
        store.add_donor(_make_donor("nearby-B", km=5.0, blood_group=BloodGroup.B))
        store.add_donor(_make_donor("far-B", km=80.0, blood_group=BloodGroup.B))
        notifier, bus = RecordingNotifier(), RecordingBus()

        matches = _run(_make_engine(store, notifier=notifier, bus=bus))

        assert matches == []
        assert [topic for topic, _ in bus.published] == ["bloodmatch.requests.urgent"]
        assert bus.published[0][1]["event_type"] == "URGENT_REQUEST"
        assert [(user, event) for user, event, _ in notifier.sent] == [("USR-nearby-B", "URGENT_REQUEST")]

    def test_broadcast_reaches_donor_across_antimeridian(self):
        store = InMemoryDatastore()
        request = _make_request(urgency=Urgency.EMERGENCY, origin=Coordinate(latitude=-16.5, longitude=179.95))
        store.add_donor(_make_donor("fiji", last_location=Coordinate(latitude=-16.5, longitude=-179.95)))
        notifier = RecordingNotifier()
        broadcaster = UrgentBroadcaster(store, DonorLocationCache(), notifier=notifier, settings=_settings())

        assert asyncio.run(broadcaster.broadcast(request)) == 1
        assert notifier.sent[0][0] == "USR-fiji"

    def test_empty_high_urgency_run_is_quiet(self):
        store = InMemoryDatastore()
        store.add_request(_make_request(urgency=Urgency.HIGH))
        notifier, bus = RecordingNotifier(), RecordingBus()
        assert _run(_make_engine(store, notifier=notifier, bus=bus)) == []
        assert bus.published == []
        assert notifier.sent == []
