"""
Best-effort audit sink for business events.

The pricing engine and lifecycle manager report what they did (purchase
executed, tranche advanced, tranche transitioned, overdue tranches marked)
through an :class:`AuditSink`.  The real audit store belongs to another
service; here the default sink writes structured records to the ``audit``
logger, which inherits the JSON file handlers set up in
:mod:`tranche_service.core.logging`.

Recording an event must never abort or roll back the business operation:
:func:`emit_audit_event` logs and swallows any sink failure.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("audit")


class AuditEvent:
    """Event type names emitted by the core."""

    PURCHASE_EXECUTED = "PURCHASE_EXECUTED"
    TRANCHE_ADVANCED = "TRANCHE_ADVANCED"
    FUND_SOLD_OUT = "FUND_SOLD_OUT"
    PRICING_TIER_CREATED = "PRICING_TIER_CREATED"
    PRICING_TIER_UPDATED = "PRICING_TIER_UPDATED"
    PRICING_TIER_DELETED = "PRICING_TIER_DELETED"
    TRANCHE_TRANSITIONED = "TRANCHE_TRANSITIONED"
    TRANCHES_MARKED_OVERDUE = "TRANCHES_MARKED_OVERDUE"
    COMMITMENT_SCHEDULED = "COMMITMENT_SCHEDULED"


class AuditSink(Protocol):
    def record(self, event_type: str, **payload: Any) -> None: ...


class LoggingAuditSink:
    """Writes each event as one INFO record on the ``audit`` logger."""

    def record(self, event_type: str, **payload: Any) -> None:
        audit_logger.info(
            "%s %s",
            event_type,
            payload,
            extra={
                "event_type": event_type,
                "audit": {
                    "recorded_at": datetime.now(timezone.utc).isoformat(),
                    **{k: str(v) if v is not None else None for k, v in payload.items()},
                },
            },
        )


def emit_audit_event(sink: AuditSink, event_type: str, **payload: Any) -> None:
    """Record ``event_type`` on ``sink``; failures are logged, never raised."""
    try:
        sink.record(event_type, **payload)
    except Exception as exc:
        logger.warning("Audit sink failed for %s: %s", event_type, exc)


default_audit_sink = LoggingAuditSink()
