"""
Urgent broadcast — fallback when a top-urgency request finds no match.

  1. Publish URGENT_REQUEST on the realtime bus (connected clients)
  2. Notify available, unblocked donors whose known location lies inside
     the broadcast radius (bounding-box pre-filter, then haversine)

Best-effort end to end: nothing here raises to the caller.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import structlog

from bloodmatch.core.config import Settings, get_settings
from bloodmatch.services import geo
from bloodmatch.services.collaborators import Datastore, Notifier, RealtimeBus, notify_safely, publish_safely
from bloodmatch.services.location_cache import DonorLocationCache
from bloodmatch.schemas.request import BloodRequest, DonorFilter

logger = structlog.get_logger()

URGENT_REQUEST_EVENT = "URGENT_REQUEST"


class UrgentBroadcaster:

    def __init__(
        self,
        datastore: Datastore,
        locations: DonorLocationCache,
        notifier: Optional[Notifier] = None,
        bus: Optional[RealtimeBus] = None,
        settings: Optional[Settings] = None,
    ):
        self.datastore = datastore
        self.locations = locations
        self.notifier = notifier
        self.bus = bus
        self.settings = settings or get_settings()

    async def broadcast(self, request: BloodRequest) -> int:
        """Returns the number of donors notified."""
        event = {
            "event_type": URGENT_REQUEST_EVENT,
            "request_id": request.id,
            "blood_group": request.blood_group.value,
            "rh_factor": request.rh_factor.value,
            "urgency": request.urgency.value,
            "latitude": request.origin.latitude if request.origin else None,
            "longitude": request.origin.longitude if request.origin else None,
            "published_at": datetime.now(timezone.utc).isoformat(),
        }
        await publish_safely(self.bus, self.settings.kafka_topic_urgent_requests, event)

        if not geo.is_valid_coordinate(request.origin):
            logger.warning("urgent_broadcast_no_origin", request_id=request.id)
            return 0

        try:
            box = geo.bounding_box(request.origin, self.settings.broadcast_radius_km)
            donors = await self.datastore.find_candidate_donors(
                DonorFilter(is_available=True, blocked=False),
                self.settings.broadcast_donor_limit,
            )
        except Exception as e:
            logger.warning("urgent_broadcast_lookup_failed", request_id=request.id, error=str(e))
            return 0

        notified = 0
        for donor in donors:
            location = self.locations.get(donor.user_id) or donor.last_location
            if not geo.is_valid_coordinate(location) or not box.contains(location):
                continue
            if not geo.within_radius(request.origin, location, self.settings.broadcast_radius_km):
                continue
            delivered = await notify_safely(
                self.notifier,
                donor.user_id,
                URGENT_REQUEST_EVENT,
                {
                    "request_id": request.id,
                    "title": f"{request.urgency.value} Blood Request Nearby!",
                    "message": "An urgent blood request has been posted near you. Your help is needed!",
                },
            )
            notified += int(delivered)

        logger.info("urgent_broadcast_complete", request_id=request.id, donors_notified=notified)
        return notified
