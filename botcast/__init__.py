"""Broadcast queue engine for Telegram bot shots and downsells."""

__version__ = "1.0.0"
