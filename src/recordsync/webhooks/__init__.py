"""Inbound webhooks -- event normalization, replay protection and handler dispatch."""

from src.recordsync.webhooks.processor import (
    WebhookProcessor,
    WebhookResult,
    make_link_handler,
    make_refresh_handler,
    parse_webhook_event,
)

__all__ = [
    "WebhookProcessor",
    "WebhookResult",
    "make_link_handler",
    "make_refresh_handler",
    "parse_webhook_event",
]
