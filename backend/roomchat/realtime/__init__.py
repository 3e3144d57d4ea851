"""Realtime change feed over WebSocket."""
