"""agentdeck: drive coding-agent CLIs from the browser over resumable event streams."""

__version__ = "0.1.0"
