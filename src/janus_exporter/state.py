"""In-memory model of the live Janus entities.

The store is the only owner of entity records. Every operation is total: a
missing key never raises, it degrades to a no-op or an empty result and is
reported through the anomaly side channel.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from .anomalies import AnomalyReporter


logger = logging.getLogger(__name__)

Identifier = Union[int, str]


@dataclass
class Session:
    """One signaling connection."""
    session_id: int
    created_at: float


@dataclass
class Room:
    """One active room and the number of users joined to it."""
    room_id: Identifier
    user_count: int = 0


@dataclass
class User:
    """A participant currently joined to a room."""
    handle_id: int
    feed_id: Identifier
    room_id: Identifier
    joined_at: float
    display_name: Optional[str] = None
    session_id: Optional[int] = None


@dataclass
class Subscriber:
    """A remote endpoint receiving a publisher's feed."""
    handle_id: int
    feed_id: Identifier
    session_id: Optional[int]
    subscribed_at: float


@dataclass
class Publisher:
    """A media-publishing endpoint and its subscribers."""
    handle_id: int
    feed_id: Identifier
    session_id: Optional[int]
    published_at: float
    audio_active: bool = False
    video_active: bool = False
    receiving: Dict[str, bool] = field(default_factory=dict)
    subscribers: Dict[int, Subscriber] = field(default_factory=dict)


MEDIA_FLAGS = {
    "audio": "audio_active",
    "video": "video_active",
}


class StateStore:
    """Authoritative store of sessions, rooms, users, publishers and subscribers."""

    def __init__(self, anomalies: Optional[AnomalyReporter] = None):
        self.anomalies = anomalies or AnomalyReporter()

        self.sessions: Dict[int, Session] = {}
        self.rooms: Dict[Identifier, Room] = {}
        self.users: Dict[int, User] = {}
        self.publishers: Dict[int, Publisher] = {}
        self.transport_connections = 0

    # Sessions

    def create_session(self, session_id: int, created_at: float) -> bool:
        """Track a new session; returns False if it was already known."""
        if session_id in self.sessions:
            self.anomalies.report(
                "duplicate_session", "Session created twice",
                session_id=session_id
            )
            return False
        self.sessions[session_id] = Session(session_id=session_id, created_at=created_at)
        return True

    def remove_session(self, session_id: int) -> Optional[Session]:
        session = self.sessions.pop(session_id, None)
        if session is None:
            self.anomalies.report(
                "orphan_session", "Session ended without being created",
                session_id=session_id
            )
        return session

    # Rooms

    def create_or_get_room(self, room_id: Identifier) -> Tuple[Room, bool]:
        """Return the room and whether it was created by this call."""
        room = self.rooms.get(room_id)
        if room is not None:
            return room, False
        room = Room(room_id=room_id)
        self.rooms[room_id] = room
        return room, True

    def increment_room(self, room_id: Identifier) -> Optional[Room]:
        room = self.rooms.get(room_id)
        if room is None:
            self.anomalies.report(
                "orphan_room", "Increment of unknown room", room=room_id
            )
            return None
        room.user_count += 1
        return room

    def decrement_room(self, room_id: Identifier) -> bool:
        """Decrement the user count, removing the room at zero.

        Returns True when the room was removed.
        """
        room = self.rooms.get(room_id)
        if room is None:
            self.anomalies.report(
                "orphan_room", "Decrement of unknown room", room=room_id
            )
            return False
        room.user_count -= 1
        if room.user_count <= 0:
            del self.rooms[room_id]
            return True
        return False

    # Users

    def get_user(self, handle_id: int) -> Optional[User]:
        return self.users.get(handle_id)

    def upsert_user(self, handle_id: int, **fields: Any) -> User:
        user = self.users.get(handle_id)
        if user is None:
            user = User(handle_id=handle_id, **fields)
            self.users[handle_id] = user
        else:
            for name, value in fields.items():
                setattr(user, name, value)
        return user

    def remove_users_by_feed(self, feed_id: Identifier) -> List[User]:
        """Remove every user publishing under ``feed_id`` (normally at most one)."""
        return self._remove_users(lambda user: user.feed_id == feed_id)

    def remove_users_by_session(self, session_id: int) -> List[User]:
        return self._remove_users(lambda user: user.session_id == session_id)

    def remove_user(self, handle_id: int) -> Optional[User]:
        return self.users.pop(handle_id, None)

    def _remove_users(self, predicate) -> List[User]:
        removed = [user for user in self.users.values() if predicate(user)]
        for user in removed:
            del self.users[user.handle_id]
        return removed

    # Publishers

    def get_publisher(self, handle_id: int) -> Optional[Publisher]:
        return self.publishers.get(handle_id)

    def upsert_publisher(self, handle_id: int, **fields: Any) -> Publisher:
        publisher = self.publishers.get(handle_id)
        if publisher is None:
            publisher = Publisher(handle_id=handle_id, **fields)
            self.publishers[handle_id] = publisher
        else:
            for name, value in fields.items():
                setattr(publisher, name, value)
        return publisher

    def find_publishers_by_feed(self, feed_id: Identifier) -> List[Publisher]:
        return [p for p in self.publishers.values() if p.feed_id == feed_id]

    def find_publishers_by_session(self, session_id: int) -> List[Publisher]:
        return [p for p in self.publishers.values() if p.session_id == session_id]

    def remove_publishers_by_feed(self, feed_id: Identifier) -> List[Publisher]:
        """Remove every publisher of ``feed_id``, keyed independently of handle."""
        removed = self.find_publishers_by_feed(feed_id)
        for publisher in removed:
            del self.publishers[publisher.handle_id]
        return removed

    # Subscribers

    def add_subscriber(self, feed_id: Identifier, handle_id: int, **fields: Any) -> bool:
        """Attach a subscriber to the publisher of ``feed_id``.

        Returns False when there is no such publisher or the subscriber is
        already attached, which makes repeated subscriptions idempotent.
        """
        publishers = self.find_publishers_by_feed(feed_id)
        if not publishers:
            self.anomalies.report(
                "orphan_subscribed", "Subscription to a feed with no publisher",
                feed=feed_id, handle_id=handle_id
            )
            return False

        # The most recent publish wins when a feed was published twice
        publisher = publishers[-1]
        if handle_id in publisher.subscribers:
            return False
        publisher.subscribers[handle_id] = Subscriber(
            handle_id=handle_id, feed_id=feed_id, **fields
        )
        return True

    def remove_subscribers_by_session(self, session_id: int) -> int:
        """Strip subscribers owned by ``session_id`` from every publisher."""
        removed = 0
        for publisher in self.publishers.values():
            stale = [
                handle_id for handle_id, subscriber in publisher.subscribers.items()
                if subscriber.session_id == session_id
            ]
            for handle_id in stale:
                del publisher.subscribers[handle_id]
            removed += len(stale)
        return removed

    @property
    def subscriber_count(self) -> int:
        return sum(len(p.subscribers) for p in self.publishers.values())

    # Media

    def update_media(self, handle_id: int, medium: str, receiving: bool) -> bool:
        """Record a publisher's media state.

        The ``<medium>_active`` flag latches on the first ``receiving: true``
        and stays set for the publisher's lifetime; the latest reported state
        is kept in ``receiving``. Returns True only when the flag latches.
        """
        flag = MEDIA_FLAGS.get(medium)
        if flag is None:
            self.anomalies.report(
                "unknown_medium", "Media event for unknown medium",
                medium=medium, handle_id=handle_id
            )
            return False

        publisher = self.publishers.get(handle_id)
        if publisher is None:
            self.anomalies.report(
                "orphan_media", "Media event for a handle that is not publishing",
                medium=medium, handle_id=handle_id
            )
            return False

        publisher.receiving[medium] = receiving
        if not receiving or getattr(publisher, flag):
            return False
        setattr(publisher, flag, True)
        return True

    # Transport connections

    def open_transport_connection(self) -> int:
        self.transport_connections += 1
        return self.transport_connections

    def close_transport_connection(self) -> bool:
        """Returns False if no connection was open."""
        if self.transport_connections <= 0:
            self.anomalies.report(
                "orphan_transport_disconnect",
                "Transport disconnect with no open connection"
            )
            return False
        self.transport_connections -= 1
        return True

    def snapshot(self) -> Dict[str, int]:
        """Entity counts for health reporting."""
        return {
            "sessions": len(self.sessions),
            "rooms": len(self.rooms),
            "users": len(self.users),
            "publishers": len(self.publishers),
            "subscribers": self.subscriber_count,
            "transport_connections": self.transport_connections,
        }
