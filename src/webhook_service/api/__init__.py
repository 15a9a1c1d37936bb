"""HTTP API for webhook-service."""
