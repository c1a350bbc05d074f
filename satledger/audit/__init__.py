"""Audit logging package."""

from satledger.audit.logger import AuditLogger, AuditSink

__all__ = ["AuditLogger", "AuditSink"]
