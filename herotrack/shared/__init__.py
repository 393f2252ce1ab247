"""Shared building blocks used by both the client and the server."""
