"""Connectivity checker — debounced reachability monitoring of service peers."""

__version__ = "0.1.0"
