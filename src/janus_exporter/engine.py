"""Reconciliation of the Janus event stream into state and metrics.

Each event is classified by its type code, then (for plugin and transport
events) by the plugin or transport that emitted it, and for the video room
plugin by the membership action. Every reachable (kind, action) pair maps to
one handler in a dispatch table.

The engine is not thread-safe: callers apply events one at a time, in arrival
order.
"""

import logging
import math
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from . import metrics as m
from .anomalies import AnomalyReporter
from .config.settings import ExporterConfig
from .events import (
    VIDEOROOM_PLUGIN,
    WEBSOCKETS_TRANSPORT,
    EventType,
    JanusEvent,
    MalformedEventError,
    TransportData,
    VideoRoomData,
    flatten_events,
    parse_event,
    validate_model,
)
from .metrics import MetricSink
from .state import Publisher, StateStore, User


logger = logging.getLogger(__name__)

SESSION_END_NAMES = ("destroyed", "timeout")

ICE_IGNORED_STATES = ("gathering", "connecting", "ready", "failed")


class ReconciliationEngine:
    """Applies decoded Janus events to the state store and metric sink."""

    def __init__(
        self,
        store: StateStore,
        sink: MetricSink,
        config: ExporterConfig,
        anomalies: Optional[AnomalyReporter] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.sink = sink
        self.config = config
        self.anomalies = anomalies or store.anomalies
        self.clock = clock

        self._kind_handlers = {
            EventType.SESSION: self._on_session,
            EventType.HANDLE: self._on_observed,
            EventType.JSEP: self._on_observed,
            EventType.WEBRTC: self._on_webrtc,
            EventType.MEDIA: self._on_media,
            EventType.PLUGIN: self._on_plugin_or_transport,
            EventType.TRANSPORT: self._on_plugin_or_transport,
            EventType.CORE: self._on_core,
        }
        self._plugin_handlers = {
            VIDEOROOM_PLUGIN: self._on_videoroom,
        }
        self._transport_handlers = {
            WEBSOCKETS_TRANSPORT: self._on_websockets,
        }
        self._videoroom_handlers = {
            "joined": self._on_joined,
            "leaving": self._on_leaving,
            "published": self._on_published,
            "unpublished": self._on_unpublished,
            "subscribing": self._on_subscribing,
            "subscribed": self._on_subscribed,
        }

        self.stats = {
            "events_received": 0,
            "events_processed": 0,
            "events_rejected": 0,
            "last_event_time": None,
            "start_time": datetime.now()
        }

        logger.info("ReconciliationEngine initialized")

    # Entry points

    def process_batch(self, raw: Any) -> Dict[str, int]:
        """Flatten a (possibly nested) batch and apply each event in order."""
        events = flatten_events(raw)
        processed = 0
        for raw_event in events:
            if self.process(raw_event):
                processed += 1
        return {
            "received": len(events),
            "processed": processed,
            "rejected": len(events) - processed,
        }

    def process(self, raw_event: Any) -> bool:
        """Apply one raw event. Returns False if it was rejected as malformed."""
        self.stats["events_received"] += 1
        try:
            event = parse_event(raw_event)
            self.apply(event)
        except MalformedEventError as e:
            self.stats["events_rejected"] += 1
            self.anomalies.report(
                "malformed_event", f"Rejected malformed event: {e}",
                event_type=raw_event.get("type") if isinstance(raw_event, dict) else None
            )
            return False

        self.stats["events_processed"] += 1
        self.stats["last_event_time"] = datetime.now()
        return True

    def apply(self, event: JanusEvent) -> None:
        """Dispatch a parsed event by kind."""
        handler = self._kind_handlers.get(event.kind)
        if handler is None:
            self.anomalies.report(
                "unknown_event_type", f"Unsupported event type {event.type}",
                event_type=event.type, session_id=event.session_id
            )
            return
        handler(event)

    # Session lifecycle

    def _on_session(self, event: JanusEvent) -> None:
        payload = event.payload()
        session_id = _require(event.session_id, "session_id")

        if payload.name == "created":
            if self.store.create_session(session_id, self.clock()):
                self.sink.inc(m.SESSIONS_ACTIVE)
                self.sink.inc(m.SESSIONS_TOTAL)
        elif payload.name in SESSION_END_NAMES:
            if self.store.remove_session(session_id) is not None:
                self.sink.dec(m.SESSIONS_ACTIVE)
            if self.config.reconciliation.reap_on_session_end:
                self._reap_session(session_id)
        else:
            self._log_observed(event, f"session event '{payload.name}'")

    def _reap_session(self, session_id: int) -> None:
        """Retire publishers, users and subscriptions left behind by a session."""
        publishers = self.store.find_publishers_by_session(session_id)
        for feed_id in {publisher.feed_id for publisher in publishers}:
            self._unpublish_feed(feed_id)

        users = self.store.remove_users_by_session(session_id)
        for user in users:
            self._retire_user(user)

        subscribers = self.store.remove_subscribers_by_session(session_id)
        if subscribers:
            self.sink.dec(m.SUBSCRIBERS_ACTIVE, subscribers)

        if publishers or users or subscribers:
            self.anomalies.report(
                "session_reaped", "Session ended with live entities",
                session_id=session_id, publishers=len(publishers),
                users=len(users), subscribers=subscribers
            )

    # Observation-only kinds

    def _on_observed(self, event: JanusEvent) -> None:
        event.payload()
        self._log_observed(event, event.kind.name.lower())

    def _on_core(self, event: JanusEvent) -> None:
        payload = event.payload()
        if payload.signum is not None:
            logger.info(f"Janus core status: {payload.status} (signal {payload.signum})")
        else:
            self._log_observed(event, f"core status '{payload.status}'")

    def _log_observed(self, event: JanusEvent, what: str) -> None:
        if self.config.reconciliation.log_ignored_events:
            logger.debug(
                f"Observed {what}: session={event.session_id} handle={event.handle_id}"
            )

    # WebRTC transport state

    def _on_webrtc(self, event: JanusEvent) -> None:
        payload = event.payload()

        if payload.ice is not None:
            if payload.ice == "connected":
                self.sink.inc(m.ICE_CONNECTIONS_TOTAL)
            elif payload.ice == "disconnected":
                self.sink.inc(m.ICE_DISCONNECTS_TOTAL)
            elif payload.ice not in ICE_IGNORED_STATES:
                self._unknown_state("ice", payload.ice, event)
        elif payload.connection is not None:
            if payload.connection == "webrtcup":
                self.sink.inc(m.PEERCONNECTIONS_TOTAL)
            elif payload.connection == "hangup":
                self._log_observed(event, "hangup")
            else:
                self._unknown_state("connection", payload.connection, event)
        elif any(value is not None for value in (
            payload.dtls, payload.selected_pair,
            payload.local_candidate, payload.remote_candidate
        )):
            self._log_observed(event, "ICE/DTLS detail")
        else:
            self.anomalies.report(
                "unknown_state", "Unsupported WebRTC event",
                session_id=event.session_id, handle_id=event.handle_id
            )

    def _unknown_state(self, field: str, state: str, event: JanusEvent) -> None:
        self.anomalies.report(
            "unknown_state", f"Unrecognized {field} state '{state}'",
            session_id=event.session_id, handle_id=event.handle_id
        )

    # Media

    def _on_media(self, event: JanusEvent) -> None:
        payload = event.payload()

        if payload.receiving is not None:
            handle_id = _require(event.handle_id, "handle_id")
            medium = _require(payload.media, "media")
            if self.store.update_media(handle_id, medium, payload.receiving):
                self.sink.inc(m.MEDIA_TOTAL, labels={"type": medium})
        elif payload.is_statistics:
            # Validated by the payload model, nothing is tracked yet
            self._log_observed(event, "media statistics")
        else:
            self.anomalies.report(
                "unknown_state", "Unsupported media event",
                session_id=event.session_id, handle_id=event.handle_id
            )

    # Plugin and transport data

    def _on_plugin_or_transport(self, event: JanusEvent) -> None:
        payload = event.payload()
        data = payload.body()

        if payload.plugin is not None:
            handler = self._plugin_handlers.get(payload.plugin)
            if handler is None:
                self.anomalies.report(
                    "unknown_plugin", f"No handler for plugin {payload.plugin}",
                    plugin=payload.plugin
                )
                return
            handler(event, data)
        elif payload.transport is not None:
            handler = self._transport_handlers.get(payload.transport)
            if handler is None:
                self.anomalies.report(
                    "unknown_transport", f"No handler for transport {payload.transport}",
                    transport=payload.transport
                )
                return
            handler(event, data)
        else:
            raise MalformedEventError("Plugin/transport event names neither plugin nor transport")

    def _on_websockets(self, event: JanusEvent, data: Dict[str, Any]) -> None:
        transport_data = validate_model(TransportData, data, "transport data")

        if transport_data.event == "connected":
            self.store.open_transport_connection()
            self.sink.inc(m.WEBSOCKET_CONNECTIONS_TOTAL)
            self.sink.inc(m.WEBSOCKET_ACTIVE)
        elif transport_data.event == "disconnected":
            self.sink.inc(m.WEBSOCKET_DISCONNECTS_TOTAL)
            if self.store.close_transport_connection():
                self.sink.dec(m.WEBSOCKET_ACTIVE)
        else:
            self._log_observed(event, f"websocket event '{transport_data.event}'")

    def _on_videoroom(self, event: JanusEvent, data: Dict[str, Any]) -> None:
        room_data = validate_model(VideoRoomData, data, "videoroom data")
        handler = self._videoroom_handlers.get(room_data.event)
        if handler is None:
            self.anomalies.report(
                "unknown_action", f"Unhandled videoroom event '{room_data.event}'",
                session_id=event.session_id, handle_id=event.handle_id
            )
            return
        handler(event, room_data)

    # Video room membership

    def _on_joined(self, event: JanusEvent, data: VideoRoomData) -> None:
        handle_id = _require(event.handle_id, "handle_id")
        room_id = _require(data.room, "room")
        feed_id = _require(data.id, "id")

        existing = self.store.get_user(handle_id)
        if existing is not None:
            if existing.room_id == room_id and existing.feed_id == feed_id:
                self.anomalies.report(
                    "duplicate_join", "Handle joined the same room twice",
                    handle_id=handle_id, room=room_id, feed=feed_id
                )
                return
            # Handle moved on without a leaving event for its old membership
            self.store.remove_user(handle_id)
            self._retire_user(existing)

        _, created = self.store.create_or_get_room(room_id)
        self.store.increment_room(room_id)
        if created:
            self.sink.inc(m.ROOMS_ACTIVE)
            self.sink.inc(m.ROOMS_TOTAL)

        self.store.upsert_user(
            handle_id,
            feed_id=feed_id,
            room_id=room_id,
            joined_at=self.clock(),
            display_name=data.display,
            session_id=event.session_id,
        )
        self.sink.inc(m.USERS_ACTIVE)
        self.sink.inc(m.USERS_TOTAL)

    def _on_leaving(self, event: JanusEvent, data: VideoRoomData) -> None:
        feed_id = _require(data.id, "id")

        users = self.store.remove_users_by_feed(feed_id)
        if not users:
            self.anomalies.report(
                "orphan_leaving", "Leaving event without a joined user",
                feed=feed_id, room=data.room
            )

        for user in users:
            self._retire_user(user)

        # A publisher leaving without unpublishing first
        if self.store.find_publishers_by_feed(feed_id):
            self.anomalies.report(
                "implicit_unpublish", "Publisher left without unpublishing",
                feed=feed_id, room=data.room
            )
            # Only this feed's subscribers; the session may still watch others
            self._unpublish_feed(feed_id, sweep_sessions=False)

    def _retire_user(self, user: User) -> None:
        """Release a removed user's room slot and record its duration."""
        self.sink.dec(m.USERS_ACTIVE)
        self.sink.observe(m.USER_SESSION_DURATION, self._duration_minutes(user.joined_at))
        if self.store.decrement_room(user.room_id):
            self.sink.dec(m.ROOMS_ACTIVE)

    def _duration_minutes(self, since: float) -> int:
        """Whole minutes since ``since``, rounded half up and capped."""
        minutes = int(math.floor((self.clock() - since) / 60.0 + 0.5))
        return max(0, min(minutes, self.config.metrics.histogram_cap_minutes))

    def _on_published(self, event: JanusEvent, data: VideoRoomData) -> None:
        handle_id = _require(event.handle_id, "handle_id")
        feed_id = _require(data.id, "id")

        if self.store.get_publisher(handle_id) is not None:
            self.anomalies.report(
                "duplicate_publish", "Handle published twice",
                handle_id=handle_id, feed=feed_id
            )
            return

        self.store.upsert_publisher(
            handle_id,
            feed_id=feed_id,
            session_id=event.session_id,
            published_at=self.clock(),
        )
        self.sink.inc(m.PUBLISHERS_ACTIVE)

    def _on_unpublished(self, event: JanusEvent, data: VideoRoomData) -> None:
        feed_id = _require(data.id, "id")
        if not self._unpublish_feed(feed_id):
            self.anomalies.report(
                "orphan_unpublished", "Unpublished event without a publisher",
                feed=feed_id, handle_id=event.handle_id
            )

    def _unpublish_feed(self, feed_id, sweep_sessions: bool = True) -> int:
        """Remove the publishers of a feed and the subscriptions tied to them.

        The departing publishers' own subscribers always go with them. With
        ``sweep_sessions``, subscriptions held elsewhere by the departing
        publishers' sessions are dropped too.
        Returns the number of publishers removed.
        """
        removed = self.store.remove_publishers_by_feed(feed_id)
        if not removed:
            return 0

        subscribers = sum(len(publisher.subscribers) for publisher in removed)
        if sweep_sessions:
            for session_id in _sessions_of(removed):
                subscribers += self.store.remove_subscribers_by_session(session_id)

        self.sink.dec(m.PUBLISHERS_ACTIVE, len(removed))
        if subscribers:
            self.sink.dec(m.SUBSCRIBERS_ACTIVE, subscribers)
        return len(removed)

    def _on_subscribing(self, event: JanusEvent, data: VideoRoomData) -> None:
        self.sink.inc(m.SUBSCRIBING_TOTAL)

    def _on_subscribed(self, event: JanusEvent, data: VideoRoomData) -> None:
        handle_id = _require(event.handle_id, "handle_id")
        feed_id = _require(data.feed, "feed")

        self.sink.inc(m.SUBSCRIBERS_TOTAL)
        added = self.store.add_subscriber(
            feed_id,
            handle_id,
            session_id=event.session_id,
            subscribed_at=self.clock(),
        )
        if added:
            self.sink.inc(m.SUBSCRIBERS_ACTIVE)

    # Reporting

    def get_stats(self) -> Dict[str, Any]:
        """Get engine statistics."""
        uptime = (datetime.now() - self.stats["start_time"]).total_seconds()

        stats = self.stats.copy()
        stats.update({
            "uptime_seconds": uptime,
            "events_per_second": self.stats["events_processed"] / max(uptime, 1),
            "rejection_rate": self.stats["events_rejected"] / max(self.stats["events_received"], 1),
            "anomalies": self.anomalies.get_stats(),
            "state": self.store.snapshot(),
        })
        return stats

    def health_check(self) -> Dict[str, Any]:
        """Perform health check on the engine."""
        stats = self.get_stats()
        health_status = {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "stats": stats,
        }

        total_received = self.stats["events_received"]
        if total_received > 0 and stats["rejection_rate"] > 0.05:  # >5% rejected
            health_status["status"] = "degraded"
            health_status["warning"] = f"High rejection rate: {stats['rejection_rate']:.2%}"

        return health_status


def _require(value, name: str):
    if value is None:
        raise MalformedEventError(f"Missing required field '{name}'")
    return value


def _sessions_of(publishers: List[Publisher]) -> List[int]:
    sessions = []
    for publisher in publishers:
        if publisher.session_id is not None and publisher.session_id not in sessions:
            sessions.append(publisher.session_id)
    return sessions
