"""
Vy - Semantic Memory Store

This package persists text as vector-embedded memories and retrieves them
by similarity, so past context can be injected into new AI conversations.
"""

__version__ = "0.1.0"
