"""Messaging core: encrypted message storage, conversation state and unread sync."""

__version__ = "0.1.0"
