"""Networking layer — peer monitors, the ping probe and the ping responder."""

from conncheck.network.peer import PeerMonitor
from conncheck.network.probe import is_reachable
from conncheck.network.transport import PingServer

__all__ = ["PeerMonitor", "PingServer", "is_reachable"]
