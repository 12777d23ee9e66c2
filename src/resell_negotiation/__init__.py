"""Marketplace negotiation layer: chats, messages, offers and price advice."""

__version__ = "0.1.0"
