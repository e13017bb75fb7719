"""Chatterwise billing webhook service."""

__version__ = "1.1.3"
