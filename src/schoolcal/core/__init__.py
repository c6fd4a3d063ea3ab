"""Ambient infrastructure: logging, metrics and session storage."""
