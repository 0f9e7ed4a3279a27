"""Browser-facing HTTP + SSE server."""
