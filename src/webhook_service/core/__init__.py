"""Core errors."""
