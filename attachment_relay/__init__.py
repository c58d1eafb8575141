"""Relay messaging attachments into Google Drive through a sequential upload queue."""

__version__ = "0.3.0"
