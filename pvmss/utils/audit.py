# -*- coding: utf-8 -*-
"""
PVMSS Audit Logging - Layer 3
Console access is a compliance record, not telemetry: every ticket attempt
lands in the audit_log table.
"""

import logging

from flask import request, has_request_context

from pvmss.constants import AUDIT_ACTION_CONSOLE, AUDIT_RETENTION_DAYS


def log_audit(db, user: str, action: str, details: str = None, ip_address: str = None):
    """Add an entry to the audit log"""
    ip = ip_address or get_client_ip()

    try:
        db.add_audit_entry(user=user, action=action, details=details or '', ip=ip)
    except Exception as e:
        logging.error(f"Failed to save audit entry to database: {e}")

    logging.info(f"Audit: {user} - {action} - {details}")


def log_console_access(db, user: str, vmid: int, node: str, success: bool, reason: str = None,
                       ip_address: str = None):
    """One row per console ticket attempt (who, which VM, outcome)"""
    outcome = 'success' if success else 'failure'
    details = f"VM {vmid} on {node}: {outcome}"
    if reason:
        details += f" ({reason})"
    log_audit(db, user, AUDIT_ACTION_CONSOLE, details, ip_address=ip_address)
    if not success:
        logging.warning(f"[VNC] Console access failed for {user} on VM {vmid}/{node}: {reason}")


def cleanup_audit_log(db):
    """Remove audit entries older than retention period"""
    try:
        deleted = db.cleanup_audit_log(days=AUDIT_RETENTION_DAYS)
        if deleted > 0:
            logging.info(f"Cleaned up {deleted} old audit log entries")
        return deleted
    except Exception as e:
        logging.error(f"Failed to cleanup audit log: {e}")
        return 0


def _is_loopback(addr):
    """loopback = our reverse proxy"""
    return addr in ('127.0.0.1', '::1')


def get_client_ip():
    """Client IP of the current request.

    X-Forwarded-For is only trusted when the request comes from loopback.
    """
    if not has_request_context():
        return 'system'
    if _is_loopback(request.remote_addr):
        if request.headers.get('X-Forwarded-For'):
            return request.headers.get('X-Forwarded-For').split(',')[0].strip()
        elif request.headers.get('X-Real-IP'):
            return request.headers.get('X-Real-IP')
    return request.remote_addr
