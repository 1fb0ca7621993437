"""Luma Relay: streaming chat-completion relay for the Luma mobile app."""

__version__ = "0.1.0"
