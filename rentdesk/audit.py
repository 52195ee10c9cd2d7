"""Append-only audit trail of admin actions.

``record`` adds its row to the caller's session so it commits (or rolls
back) together with the change it describes.
"""

import json
import logging
from datetime import datetime
from typing import Optional

from .models import AuditLog, db

logger = logging.getLogger(__name__)

ACTION_DESCRIPTIONS = {
    'user.create': 'Created user',
    'user.update': 'Updated user',
    'user.delete': 'Deleted user',
    'user.suspend': 'Suspended user',
    'user.activate': 'Activated user',
    'user.ban': 'Banned user',
    'user.role_change': 'Changed user role',
    'vehicle.create': 'Created vehicle',
    'vehicle.update': 'Updated vehicle',
    'vehicle.delete': 'Deleted vehicle',
    'package.create': 'Created package',
    'package.update': 'Updated package',
    'package.delete': 'Deleted package',
    'policy.create': 'Created policy',
    'policy.update': 'Updated policy',
    'policy.delete': 'Deleted policy',
    'policy.attach': 'Attached policy',
    'booking.create': 'Created booking',
    'booking.update': 'Updated booking',
    'booking.confirm': 'Confirmed booking',
    'booking.collect': 'Recorded vehicle collection',
    'booking.complete': 'Completed rental',
    'booking.cancel': 'Cancelled booking',
    'booking.document': 'Uploaded booking document',
    'invoice.generate': 'Generated invoice',
    'invoice.issue': 'Issued invoice',
    'invoice.send': 'Sent invoice',
    'payment.record': 'Recorded payment',
    'permission.grant': 'Granted permission',
    'permission.deny': 'Denied permission',
    'permission.revoke': 'Revoked permission',
}


def describe_action(action: str) -> str:
    return ACTION_DESCRIPTIONS.get(action, action)


def request_info(request) -> dict:
    """Client address and user agent from a Flask request."""
    if request is None:
        return {}
    forwarded = request.headers.get('X-Forwarded-For', '')
    ip = forwarded.split(',')[0].strip() or request.headers.get('X-Real-IP') or request.remote_addr
    return {'ip_address': ip, 'user_agent': request.headers.get('User-Agent')}


def record(actor, action: str, resource: str, resource_id=None,
           details: Optional[dict] = None, request=None) -> AuditLog:
    entry = AuditLog(
        user_id=actor.user_id,
        action=action,
        resource=resource,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=json.dumps(details, default=str) if details else None,
        **request_info(request),
    )
    db.session.add(entry)
    logger.debug("audit %s %s:%s by user %s", action, resource, resource_id, actor.user_id)
    return entry


def query_logs(user_id: Optional[int] = None, action: Optional[str] = None,
               resource: Optional[str] = None, resource_id=None,
               start: Optional[datetime] = None, end: Optional[datetime] = None,
               limit: int = 50, offset: int = 0):
    """Return ``(logs, total)`` newest first, filtered by any given field."""
    query = AuditLog.query
    if user_id is not None:
        query = query.filter(AuditLog.user_id == user_id)
    if action:
        query = query.filter(AuditLog.action == action)
    if resource:
        query = query.filter(AuditLog.resource == resource)
    if resource_id is not None:
        query = query.filter(AuditLog.resource_id == str(resource_id))
    if start:
        query = query.filter(AuditLog.created_at >= start)
    if end:
        query = query.filter(AuditLog.created_at <= end)
    total = query.count()
    logs = (query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(limit).offset(offset).all())
    return logs, total
