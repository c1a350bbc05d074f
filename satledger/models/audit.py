"""
Audit Models for SatLedger

Every balance change, record write and backup operation produces an audit
event. This provides:
1. Traceability of every balance movement
2. Debugging information when a side effect fails after a save
3. A visible trail for clamped (partially applied) changes
4. Ability to reconstruct history

DESIGN DECISION: Audit events are append-only. We never delete or modify them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from satledger.models.asset import BalanceAdjustment
from satledger.models.common import utcnow


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Assets
    ASSET_CREATED = "asset_created"
    ASSET_UPDATED = "asset_updated"
    ASSET_DELETED = "asset_deleted"
    BALANCE_ADJUSTED = "balance_adjusted"
    BALANCE_CLAMPED = "balance_clamped"
    BALANCE_REPAIRED = "balance_repaired"

    # Ledger records
    RECORD_SAVED = "record_saved"
    RECORD_UPDATED = "record_updated"
    RECORD_DELETED = "record_deleted"
    LINKED_BALANCE_FAILED = "linked_balance_failed"

    # Price snapshots
    PRICE_SNAPSHOT_PENDING = "price_snapshot_pending"
    PRICE_SYNCED = "price_synced"

    # Loans
    LOAN_SAVED = "loan_saved"
    LOAN_DELETED = "loan_deleted"
    LOAN_REPAYMENT_APPLIED = "loan_repayment_applied"

    # Storage
    DOCUMENT_UNREADABLE = "document_unreadable"
    BACKUP_CREATED = "backup_created"
    RESTORE_COMPLETED = "restore_completed"
    RESTORE_REJECTED = "restore_rejected"

    # System events
    AUTH_REQUIRED = "auth_required"
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    Amounts in ``details`` are raw integers (won or sats); no display
    formatting happens at this layer.
    """

    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'asset', 'record', 'loan', 'backup')"
    )
    entity_id: Optional[str] = None

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.asset_created(asset_id, "fiat", "Salary")
        event = AuditEventBuilder.balance_adjusted(adjustment)
    """

    @staticmethod
    def asset_created(asset_id: str, asset_type: str, name: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ASSET_CREATED,
            entity_type="asset",
            entity_id=asset_id,
            description=f"{asset_type.capitalize()} asset created: {name}",
            details={"asset_type": asset_type},
        )

    @staticmethod
    def asset_updated(asset_id: str, fields: list[str]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ASSET_UPDATED,
            entity_type="asset",
            entity_id=asset_id,
            description=f"Asset updated: {', '.join(fields)}",
            details={"fields": fields},
        )

    @staticmethod
    def asset_deleted(asset_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ASSET_DELETED,
            entity_type="asset",
            entity_id=asset_id,
            description="Asset deleted",
        )

    @staticmethod
    def balance_adjusted(adjustment: BalanceAdjustment) -> AuditEvent:
        """Clamped adjustments are logged as warnings so they stand out."""
        if adjustment.clamped:
            return AuditEvent(
                event_type=AuditEventType.BALANCE_CLAMPED,
                severity=AuditSeverity.WARNING,
                entity_type="asset",
                entity_id=adjustment.asset_id,
                description=(
                    f"Balance change on {adjustment.asset_name} partially applied: "
                    f"requested {adjustment.requested}, applied {adjustment.actual}"
                ),
                details=adjustment.model_dump(),
            )
        return AuditEvent(
            event_type=AuditEventType.BALANCE_ADJUSTED,
            entity_type="asset",
            entity_id=adjustment.asset_id,
            description=f"Balance of {adjustment.asset_name} changed by {adjustment.actual_delta}",
            details=adjustment.model_dump(),
        )

    @staticmethod
    def balance_repaired(asset_id: str, name: str, old_balance: int, new_balance: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BALANCE_REPAIRED,
            severity=AuditSeverity.WARNING,
            entity_type="asset",
            entity_id=asset_id,
            description=f"Stored balance of {name} violated its floor and was repaired",
            details={"old_balance": old_balance, "new_balance": new_balance},
        )

    @staticmethod
    def record_saved(record_id: str, record_type: str, amount: int, currency: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECORD_SAVED,
            entity_type="record",
            entity_id=record_id,
            description=f"{record_type.capitalize()} saved: {amount} {currency}",
            details={"record_type": record_type, "amount": amount, "currency": currency},
        )

    @staticmethod
    def record_updated(record_id: str, fields: list[str]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECORD_UPDATED,
            entity_type="record",
            entity_id=record_id,
            description=f"Record updated: {', '.join(fields)}",
            details={"fields": fields},
        )

    @staticmethod
    def record_deleted(record_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECORD_DELETED,
            entity_type="record",
            entity_id=record_id,
            description="Record deleted",
        )

    @staticmethod
    def linked_balance_failed(record_id: str, asset_id: str, error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LINKED_BALANCE_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="record",
            entity_id=record_id,
            description="Record saved but the linked asset balance was not updated",
            details={"asset_id": asset_id},
            error_message=error_message,
        )

    @staticmethod
    def price_snapshot_pending(record_id: str, day: str, error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PRICE_SNAPSHOT_PENDING,
            severity=AuditSeverity.WARNING,
            entity_type="record",
            entity_id=record_id,
            description=f"BTC/KRW rate for {day} unavailable, queued for price sync",
            details={"date": day},
            error_message=error_message,
        )

    @staticmethod
    def price_synced(synced: int, still_pending: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PRICE_SYNCED,
            entity_type="ledger",
            description=f"Price sync: {synced} repaired, {still_pending} still pending",
            details={"synced": synced, "still_pending": still_pending},
        )

    @staticmethod
    def loan_saved(loan_id: str, name: str, monthly_payment: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LOAN_SAVED,
            entity_type="loan",
            entity_id=loan_id,
            description=f"Loan saved: {name}",
            details={"monthly_payment": monthly_payment},
        )

    @staticmethod
    def loan_deleted(loan_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LOAN_DELETED,
            entity_type="loan",
            entity_id=loan_id,
            description="Loan deleted",
        )

    @staticmethod
    def loan_repayment_applied(
        loan_id: str, name: str, month: int, amount: int, record_id: Optional[str]
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LOAN_REPAYMENT_APPLIED,
            entity_type="loan",
            entity_id=loan_id,
            description=f"Repayment {month} of {name} applied",
            details={"month": month, "amount": amount, "record_id": record_id},
        )

    @staticmethod
    def document_unreadable(name: str, error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DOCUMENT_UNREADABLE,
            severity=AuditSeverity.WARNING,
            entity_type="document",
            entity_id=name,
            description=f"Document {name} could not be decrypted, using default",
            error_message=error_message,
        )

    @staticmethod
    def backup_created(filename: str, documents: list[str]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BACKUP_CREATED,
            entity_type="backup",
            entity_id=filename,
            description=f"Backup created: {filename}",
            details={"documents": documents},
        )

    @staticmethod
    def restore_completed(filename: str, counts: dict[str, int]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RESTORE_COMPLETED,
            entity_type="backup",
            entity_id=filename,
            description=f"Backup restored: {filename}",
            details=counts,
        )

    @staticmethod
    def restore_rejected(filename: str, error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RESTORE_REJECTED,
            severity=AuditSeverity.ERROR,
            entity_type="backup",
            entity_id=filename,
            description="Backup rejected before any state was changed",
            error_message=error_message,
        )

    @staticmethod
    def auth_required(operation: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.AUTH_REQUIRED,
            severity=AuditSeverity.WARNING,
            description=f"Refused {operation}: no encryption key available",
            details={"operation": operation},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
        )

    @staticmethod
    def external_service_error(service: str, error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={"service": service},
        )
