"""Shared helpers: in-memory chat store and HTTP utilities."""
