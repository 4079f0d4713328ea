"""
Notify Layer - webhook delivery of trade events.

This module provides:
    - NotificationDispatcher: single POST delivery and retry with 2**n backoff
    - DeliveryOutcome: result of a delivery
    - EventKind / event_kind_for: status -> event type mapping
    - build_payload / serialize_payload / sign_payload: envelope and HMAC signature
"""

from .dispatcher import (
    SIGNATURE_HEADER,
    ConfigurationMissing,
    DeliveryOutcome,
    DispatcherConfig,
    EventKind,
    NotificationDispatcher,
    SinkDeliveryFailed,
    build_payload,
    event_kind_for,
    serialize_payload,
    sign_payload,
)

__all__ = [
    "SIGNATURE_HEADER",
    "ConfigurationMissing",
    "DeliveryOutcome",
    "DispatcherConfig",
    "EventKind",
    "NotificationDispatcher",
    "SinkDeliveryFailed",
    "build_payload",
    "event_kind_for",
    "serialize_payload",
    "sign_payload",
]
