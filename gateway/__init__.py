"""Conversational gateway between a messaging-platform webhook and a chat model."""

__version__ = "1.0.0"
