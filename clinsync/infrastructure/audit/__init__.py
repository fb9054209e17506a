"""Audit infrastructure components.

This package builds audit entries for state-changing actions and appends
them to the audit log.
"""

from clinsync.infrastructure.audit.audit_trail import AuditTrail

__all__ = ['AuditTrail']
