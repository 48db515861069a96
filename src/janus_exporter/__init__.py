"""
Janus Events Exporter - Prometheus metrics derived from Janus event handlers.

This package receives the event stream posted by the Janus WebRTC server's
HTTP event handler, replays it into an in-memory model of sessions, rooms,
users, publishers and subscribers, and exposes the result as Prometheus metrics.
"""

__version__ = "1.0.0"
