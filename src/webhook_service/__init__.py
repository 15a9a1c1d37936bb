"""Webhook subscription and delivery service."""
