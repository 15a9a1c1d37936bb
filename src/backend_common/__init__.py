"""Shared building blocks for aiohttp services."""
