"""Inbound webhook handling."""

from verify_api.webhooks.routes import decode_event, router

__all__ = ["decode_event", "router"]
