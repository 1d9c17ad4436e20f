# handoff_escrow/relay.py
import logging
import threading
from typing import Callable, Dict

from .errors import UnauthorizedError
from .models import LocationPoint, utcnow
from .validation import validate_coordinates

logger = logging.getLogger(__name__)

Sink = Callable[[dict], None]


class LocationStore:
    """Audit trail of published points. Non-authoritative."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def __call__(self, handoff_id, actor_id, lat, lng):
        with self.session_factory() as session:
            with session.begin():
                session.add(LocationPoint(
                    handoff_id=handoff_id, actor_id=actor_id, lat=lat, lng=lng, recorded_at=utcnow(),
                ))


class LocationRelay:
    def __init__(self, party_lookup, store=None):
        # party_lookup(handoff_id) -> (buyer_id, seller_id); raises NotFoundError
        self.party_lookup = party_lookup
        self.store = store
        self._channels: Dict[str, Dict[str, Sink]] = {}
        self._lock = threading.Lock()

    def _role(self, handoff_id, actor_id):
        buyer_id, seller_id = self.party_lookup(handoff_id)
        if actor_id == buyer_id:
            return "buyer"
        if actor_id == seller_id:
            return "seller"
        raise UnauthorizedError("Unauthorized to join this handoff")

    def join(self, handoff_id, actor_id, sink: Sink):
        role = self._role(handoff_id, actor_id)
        with self._lock:
            channel = self._channels.setdefault(handoff_id, {})
            channel[actor_id] = sink
            others = [s for a, s in channel.items() if a != actor_id]
        self._deliver(others, {"type": "peer-joined", "handoffId": handoff_id, "actorId": actor_id, "role": role})
        return role

    def leave(self, handoff_id, actor_id, sink=None):
        with self._lock:
            channel = self._channels.get(handoff_id)
            if not channel or actor_id not in channel:
                return
            # a reconnect may have replaced this sink already
            if sink is not None and channel[actor_id] is not sink:
                return
            del channel[actor_id]
            others = list(channel.values())
            if not channel:
                del self._channels[handoff_id]
        self._deliver(others, {"type": "peer-left", "handoffId": handoff_id, "actorId": actor_id})

    def publish_location(self, handoff_id, actor_id, lat, lng):
        lat, lng = validate_coordinates(lat, lng)
        with self._lock:
            joined = actor_id in self._channels.get(handoff_id, {})
        if not joined:
            self._role(handoff_id, actor_id)

        if self.store is not None:
            try:
                self.store(handoff_id, actor_id, lat, lng)
            except Exception as e:
                logger.warning(f"Could not persist location for handoff {handoff_id}: {e}")

        with self._lock:
            others = [s for a, s in self._channels.get(handoff_id, {}).items() if a != actor_id]
        message = {
            "type": "location",
            "handoffId": handoff_id,
            "actorId": actor_id,
            "lat": lat,
            "lng": lng,
            "at": utcnow().isoformat(),
        }
        return self._deliver(others, message)

    def members(self, handoff_id):
        with self._lock:
            return set(self._channels.get(handoff_id, {}))

    def _deliver(self, sinks, message):
        delivered = 0
        for sink in sinks:
            try:
                sink(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropped relay message {message['type']} for handoff {message['handoffId']}: {e}")
        return delivered
