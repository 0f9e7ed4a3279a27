"""Adapters between the turn engine and its consumers: events, streams, pumps."""
