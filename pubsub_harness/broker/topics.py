"""Topic naming convention shared by the harness and the service under test."""

from __future__ import annotations

DEFAULT_PREFIX = "pub-sub"


def topic_name(event_type: str, tenant: str, prefix: str = DEFAULT_PREFIX) -> str:
    """Build the topic for an event type and tenant.

    >>> topic_name("record_created", "diku")
    'pub-sub.diku.record_created'
    """
    if not event_type or not tenant:
        raise ValueError("event_type and tenant are both required")
    return f"{prefix}.{tenant}.{event_type}"
