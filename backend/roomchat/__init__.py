"""Roomchat: real-time chat rooms and direct messages with row-level security."""

__version__ = "0.1.0"
