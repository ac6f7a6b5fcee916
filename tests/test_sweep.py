"""
Tests for the periodic matching sweep and the HTTP surface.
"""
import asyncio
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from bloodmatch.core.config import Settings
from bloodmatch.schemas.match import Match
from bloodmatch.schemas.request import (
    BloodGroup, BloodRequest, Coordinate, DonorProfile, RequestStatus, RhFactor,
)
from bloodmatch.scoring.engine import MatchEngine
from bloodmatch.services.container import build_container
from bloodmatch.services.location_cache import DonorLocationCache
from bloodmatch.services.match_lifecycle import MatchLifecycle
from bloodmatch.services.matching_sweep import run_sweep
from bloodmatch.services.memory_store import InMemoryDatastore

ORIGIN = Coordinate(latitude=28.6139, longitude=77.2090)


class FixedModel:
    version = "fixed"

    def predict(self, vector):
        return 0.9


def _settings() -> Settings:
    return Settings(store_read_backoff_seconds=0.0, kafka_enabled=False, notification_gateway_url=None)


def _make_request(request_id: str, hours_left: float, **overrides) -> BloodRequest:
    kwargs = {
        "id": request_id,
        "recipient_id": "USR-R",
        "blood_group": BloodGroup.O,
        "rh_factor": RhFactor.POSITIVE,
        "origin": ORIGIN,
        "radius_km": 10.0,
        "expires_at": datetime.now(timezone.utc) + timedelta(hours=hours_left),
    }
    kwargs.update(overrides)
    return BloodRequest(**kwargs)


def _make_donor(donor_id: str, blood_group=BloodGroup.O) -> DonorProfile:
    return DonorProfile(
        id=donor_id, user_id=f"USR-{donor_id}", blood_group=blood_group, rh_factor=RhFactor.POSITIVE,
        last_location=Coordinate(latitude=28.62, longitude=77.21),
    )


def _sweep(store):
    settings = _settings()
    engine = MatchEngine(store, FixedModel(), DonorLocationCache(), settings=settings)
    return asyncio.run(run_sweep(store, engine, MatchLifecycle(store, settings=settings)))


class TestSweep:

    def test_only_requests_in_window_are_matched(self):
        store = InMemoryDatastore()
        store.add_request(_make_request("soon", hours_left=1))
        store.add_request(_make_request("later", hours_left=10))
        store.add_donor(_make_donor("A"))

        result = _sweep(store)

        assert result["status"] == "success"
        assert result["requests_processed"] == 1
        assert result["requests_matched"] == 1
        assert result["matches_created"] == 1
        assert store.requests["soon"].status == RequestStatus.MATCHED
        assert store.requests["later"].status == RequestStatus.OPEN

    def test_existing_pair_is_not_counted_as_created(self):
        store = InMemoryDatastore()
        request = store.add_request(_make_request("soon", hours_left=1))
        store.add_donor(_make_donor("A"))
        asyncio.run(store.create_match(Match(
            id="M-0", request_id="soon", donor_id="A", user_id="USR-A",
            distance_km=1.0, model_score=0.9, distance_score=0.9, overall_score=0.9,
            created_at=datetime.now(timezone.utc), expires_at=request.expires_at,
        )))

        result = _sweep(store)

        assert result["requests_matched"] == 1
        assert result["matches_created"] == 0
        assert len(store.matches) == 1

    def test_failing_request_does_not_stop_cycle(self):
        store = InMemoryDatastore()
        store.add_request(_make_request("broken", hours_left=1, origin=None))
        store.add_request(_make_request("fine", hours_left=1))
        store.add_request(_make_request("lonely", hours_left=1, blood_group=BloodGroup.AB))
        store.add_donor(_make_donor("A"))

        result = _sweep(store)

        assert result["requests_processed"] == 3
        assert result["requests_failed"] == 1
        assert result["requests_matched"] == 1
        assert result["requests_unmatched"] == 1

    def test_expiry_pass_runs_first(self):
        store = InMemoryDatastore()
        store.add_request(_make_request("gone", hours_left=-1))
        result = _sweep(store)
        assert result["expired_requests"] == 1
        assert store.requests["gone"].status == RequestStatus.EXPIRED


class TestApi:

    def _client(self, store):
        from bloodmatch import main

        # No lifespan outside a `with` block: inject the container directly
        main.app.state.container = build_container(_settings(), datastore=store, model=FixedModel())
        return TestClient(main.app)

    def test_run_matching_endpoint(self):
        store = InMemoryDatastore()
        store.add_request(_make_request("REQ-1", hours_left=3))
        store.add_donor(_make_donor("A"))

        resp = self._client(store).post("/v1/matching/REQ-1/run")

        assert resp.status_code == 200
        body = resp.json()
        assert body["match_count"] == 1
        assert body["matches"][0]["donor_id"] == "A"

    def test_unknown_request_is_404(self):
        resp = self._client(InMemoryDatastore()).post("/v1/matching/missing/run")
        assert resp.status_code == 404
        assert resp.json()["error"] == "NotFound"

    def test_insufficient_verifiers_is_503(self):
        resp = self._client(InMemoryDatastore()).post("/v1/verification/REC-1", json={"units": 1})
        assert resp.status_code == 503

    def test_health(self):
        resp = self._client(InMemoryDatastore()).get("/v1/health")
        assert resp.status_code == 200
        assert resp.json()["model_version"] == "fixed"
