"""Coin, diamond and commission economy for the voice-room backend."""

__version__ = "1.0.0"
