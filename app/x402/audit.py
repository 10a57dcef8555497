# app/x402/audit.py
"""
Audit logging for x402 payments.

This module records payment events for:
- Dispute resolution
- Financial reconciliation
- Debugging facilitator failures

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH

Events logged (already redacted by app.x402.diagnostics):
- Payment received (before verify: payload shape, masked addresses, deltas)
- Payment failed (verify stage: reason code, masked payer)
- Payment failed (settle stage: reason code, masked payer)

AuditLogHooks plugs into PaymentProcessor as a DiagnosticsHooks observer.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

from app.x402.diagnostics import (
    BeforeVerifyEvent,
    DiagnosticsHooks,
    SettleFailureEvent,
    VerifyFailureEvent,
)

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    SETTLEMENT_FAILED = "settlement_failed"


def generate_request_id() -> str:
    """Generate a short unique id for an audit event."""
    return str(uuid.uuid4())[:8]


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        wallet_address: Masked payer address (if known)
        request_id: Unique request identifier (if available)

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "wallet_address": wallet_address,
        "data": data
    }


def log_audit_event(
    log_path: Union[str, Path],
    event_type: AuditEventType,
    data: Dict[str, Any],
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the audit log.

    Returns:
        The request_id used for this event, or None on error
    """
    event = create_audit_event(
        event_type=event_type,
        data=data,
        wallet_address=wallet_address,
        request_id=request_id
    )

    try:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(json.dumps(event, default=str) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except OSError as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


class AuditLogHooks(DiagnosticsHooks):
    """Diagnostics observer that appends every event to a JSON-lines audit log."""

    def __init__(self, log_path: Union[str, Path]):
        self.log_path = Path(log_path)

    def before_verify(self, event: BeforeVerifyEvent) -> None:
        wallet = None
        if event.authorization is not None:
            wallet = event.authorization.from_address
        elif event.permit2 is not None:
            wallet = event.permit2.from_address
        log_audit_event(
            self.log_path,
            AuditEventType.PAYMENT_RECEIVED,
            data=event.to_dict(),
            wallet_address=wallet,
        )

    def on_verify_failure(self, event: VerifyFailureEvent) -> None:
        data = event.to_dict()
        data["stage"] = "verify"
        log_audit_event(
            self.log_path,
            AuditEventType.PAYMENT_FAILED,
            data=data,
            wallet_address=event.payer,
        )

    def on_settle_failure(self, event: SettleFailureEvent) -> None:
        data = event.to_dict()
        data["stage"] = "settle"
        log_audit_event(
            self.log_path,
            AuditEventType.SETTLEMENT_FAILED,
            data=data,
            wallet_address=event.payer,
        )


def read_audit_log(
    log_path: Union[str, Path],
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None
) -> list:
    """
    Read entries from the audit log.

    Args:
        log_path: Path of the JSON-lines audit log
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)

    Returns:
        List of audit events (most recent first)
    """
    path = Path(log_path)
    if not path.exists():
        return []

    events = []
    try:
        with open(path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    # Most recent first
    return list(reversed(events))[:max_entries]


def get_audit_stats(log_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Get statistics from the audit log.

    Returns:
        Dict with event counts and first/last timestamps
    """
    path = Path(log_path)
    if not path.exists():
        return {
            "total_events": 0,
            "events_by_type": {},
            "log_path": str(path),
            "log_exists": False,
        }

    events_by_type: Dict[str, int] = {}
    total = 0
    first_timestamp = None
    last_timestamp = None

    try:
        with open(path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                total += 1
                kind = event.get("event_type", "unknown")
                events_by_type[kind] = events_by_type.get(kind, 0) + 1

                timestamp = event.get("timestamp")
                if timestamp:
                    if first_timestamp is None:
                        first_timestamp = timestamp
                    last_timestamp = timestamp
    except OSError as e:
        logger.error(f"Failed to get audit stats: {e}")
        return {
            "total_events": 0,
            "events_by_type": {},
            "log_path": str(path),
            "log_exists": True,
            "error": str(e),
        }

    return {
        "total_events": total,
        "events_by_type": events_by_type,
        "first_event": first_timestamp,
        "last_event": last_timestamp,
        "log_path": str(path),
        "log_exists": True,
    }
