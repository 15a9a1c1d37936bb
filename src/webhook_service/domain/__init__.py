"""Webhook domain model."""
