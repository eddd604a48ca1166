"""
Audit trail of mutating user actions.
"""

from .audit_logger import (
    AuditAction,
    AuditEntityType,
    add_audit_entry,
    get_client_info,
    record_action,
)

__all__ = [
    'AuditAction',
    'AuditEntityType',
    'add_audit_entry',
    'get_client_info',
    'record_action',
]
