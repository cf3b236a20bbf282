"""
Audit logging for ILP payments.

This module records every payment and gate event for:
- Reconciling ledger balances against settled transfers
- Investigating disputed tokens
- Debugging fulfillment failures

Log format: JSON lines (one event per line)
Log location: Configured via ILP_AUDIT_LOG_PATH
Disable with ILP_AUDIT_ENABLED=false

Events logged:
- Payment received / rejected (token, transfer id, amount)
- Payment fulfilled / fulfillment failed (and whether the credit stayed)
- Balance credited / debited (token, amount, resulting balance)
- 402 returned (token, price, balance, reason)
- Error (type, context)
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_REJECTED = "payment_rejected"
    PAYMENT_FULFILLED = "payment_fulfilled"
    FULFILLMENT_FAILED = "fulfillment_failed"
    BALANCE_CREDITED = "balance_credited"
    BALANCE_DEBITED = "balance_debited"
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    ERROR = "error"


def generate_event_id() -> str:
    """Generate a short unique ID for an event."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    """Get the path to the audit log file."""
    return Path(settings.ILP_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    token: Optional[str] = None,
    client_ip: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        token: Payment token involved (if any)
        client_ip: Client IP address (if available)

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "event_id": generate_event_id(),
        "token": token,
        "client_ip": client_ip,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    token: Optional[str] = None,
    client_ip: Optional[str] = None
) -> Optional[str]:
    """
    Append an event to the audit log.

    Write failures are logged and never propagate to the payment flow.

    Returns:
        The event_id written, or None if auditing is disabled or failed
    """
    if not settings.ILP_AUDIT_ENABLED:
        return None

    event = create_audit_event(event_type, data, token=token, client_ip=client_ip)

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['event_id']}]")
        return event["event_id"]

    except OSError as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_payment_received(
    token: str,
    transfer_id: Optional[str],
    amount: str
) -> Optional[str]:
    """Log an incoming payment with valid correlation data."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_RECEIVED,
        data={"transfer_id": transfer_id, "amount": amount},
        token=token
    )


def log_payment_rejected(
    transfer_id: Optional[str],
    amount: str,
    reason: str
) -> Optional[str]:
    """Log an incoming payment dropped before crediting."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REJECTED,
        data={"transfer_id": transfer_id, "amount": amount, "reason": reason}
    )


def log_payment_fulfilled(
    token: str,
    transfer_id: Optional[str],
    amount: str
) -> Optional[str]:
    """Log a successful fulfillment."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_FULFILLED,
        data={"transfer_id": transfer_id, "amount": amount},
        token=token
    )


def log_fulfillment_failed(
    token: str,
    transfer_id: Optional[str],
    amount: str,
    reason: str,
    credited: bool
) -> Optional[str]:
    """Log a failed fulfillment and whether the credit was kept."""
    return log_audit_event(
        event_type=AuditEventType.FULFILLMENT_FAILED,
        data={
            "transfer_id": transfer_id,
            "amount": amount,
            "reason": reason,
            "credited": credited,
        },
        token=token
    )


def log_balance_credited(token: str, amount: str, balance: str) -> Optional[str]:
    """Log a ledger credit."""
    return log_audit_event(
        event_type=AuditEventType.BALANCE_CREDITED,
        data={"amount": amount, "balance": balance},
        token=token
    )


def log_balance_debited(
    token: str,
    amount: str,
    balance: str,
    client_ip: Optional[str] = None,
    path: Optional[str] = None
) -> Optional[str]:
    """Log a ledger debit for a paid request."""
    return log_audit_event(
        event_type=AuditEventType.BALANCE_DEBITED,
        data={"amount": amount, "balance": balance, "path": path},
        token=token,
        client_ip=client_ip
    )


def log_payment_required_sent(
    token: Optional[str],
    price: str,
    balance: str,
    reason: str,
    client_ip: Optional[str] = None,
    path: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Required response."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={"price": price, "balance": balance, "reason": reason, "path": path},
        token=token,
        client_ip=client_ip
    )


def log_error(
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    client_ip: Optional[str] = None
) -> Optional[str]:
    """Log an error event."""
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    token: Optional[str] = None
) -> list:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        token: Filter by payment token (optional)

    Returns:
        List of audit events (most recent first)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    events = []
    try:
        with open(log_path, "r") as f:
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
                if token and event.get("token") != token:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    # Most recent first, limited to max_entries
    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """
    Get statistics from the audit log.

    Returns:
        Dict with event counts and date range
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return {
            "total_events": 0,
            "events_by_type": {},
            "log_path": str(log_path),
            "log_exists": False,
        }

    events_by_type: Dict[str, int] = {}
    total = 0
    first_timestamp = None
    last_timestamp = None

    with open(log_path, "r") as f:
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

    return {
        "total_events": total,
        "events_by_type": events_by_type,
        "first_event": first_timestamp,
        "last_event": last_timestamp,
        "log_path": str(log_path),
        "log_exists": True,
    }
