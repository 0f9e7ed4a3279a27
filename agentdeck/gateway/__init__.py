"""Gateway daemon, its client, and the stream reconciliation bridge."""
