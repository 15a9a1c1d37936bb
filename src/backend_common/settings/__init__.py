"""Settings base classes."""
