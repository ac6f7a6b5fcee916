"""
Process-wide service wiring.

Built once per process (API lifespan or sweep entry point) and passed by
reference; nothing in the core reaches for module-level state.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from bloodmatch.core.config import Settings, get_settings
from bloodmatch.scoring.engine import MatchEngine
from bloodmatch.scoring.fraud_engine import FraudRiskEngine
from bloodmatch.scoring.model import ScoringModel, load_scoring_model
from bloodmatch.services.broadcast import UrgentBroadcaster
from bloodmatch.services.collaborators import Datastore, Notifier, RealtimeBus
from bloodmatch.services.consensus_verifier import ConsensusVerifier
from bloodmatch.services.event_publisher import KafkaRealtimeBus
from bloodmatch.services.location_cache import DonorLocationCache
from bloodmatch.services.match_lifecycle import MatchLifecycle
from bloodmatch.services.memory_store import InMemoryDatastore
from bloodmatch.services.notifier import HttpNotifier


@dataclass
class ServiceContainer:
    settings: Settings
    datastore: Datastore
    locations: DonorLocationCache
    model: ScoringModel
    notifier: Notifier
    bus: RealtimeBus
    match_engine: MatchEngine
    fraud_engine: FraudRiskEngine
    verifier: ConsensusVerifier
    lifecycle: MatchLifecycle
    broadcaster: UrgentBroadcaster

    async def close(self) -> None:
        if isinstance(self.bus, KafkaRealtimeBus):
            await self.bus.close()


def build_container(
    settings: Optional[Settings] = None,
    datastore: Optional[Datastore] = None,
    model: Optional[ScoringModel] = None,
    notifier: Optional[Notifier] = None,
    bus: Optional[RealtimeBus] = None,
) -> ServiceContainer:
    settings = settings or get_settings()
    datastore = datastore if datastore is not None else InMemoryDatastore()
    locations = DonorLocationCache(max_age=timedelta(seconds=settings.location_max_age_seconds))
    model = model or load_scoring_model(
        settings.scoring_model_path,
        version=settings.scoring_model_version,
        fallback_seed=settings.scoring_fallback_seed,
    )
    notifier = notifier or HttpNotifier(settings)
    bus = bus or KafkaRealtimeBus(settings)

    broadcaster = UrgentBroadcaster(datastore, locations, notifier=notifier, bus=bus, settings=settings)
    return ServiceContainer(
        settings=settings,
        datastore=datastore,
        locations=locations,
        model=model,
        notifier=notifier,
        bus=bus,
        match_engine=MatchEngine(
            datastore, model, locations, notifier=notifier, broadcaster=broadcaster, settings=settings,
        ),
        fraud_engine=FraudRiskEngine(datastore),
        verifier=ConsensusVerifier(datastore),
        lifecycle=MatchLifecycle(datastore, settings=settings),
        broadcaster=broadcaster,
    )
