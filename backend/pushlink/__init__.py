"""Pushlink - desktop client for a push-notification service."""

__version__ = "1.0.0"
