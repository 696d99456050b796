import json
from flask import has_app_context, has_request_context, request
from models import db
from models.audit_log import AuditLog

def _client_meta():
    if not has_request_context():
        return None, None
    ip = request.headers.get("X-Forwarded-For", request.remote_addr)
    user_agent = request.headers.get("User-Agent", "")
    return ip, (user_agent[:255] if user_agent else None)

def log_event(action: str, user_id=None, entity=None, entity_id=None, metadata=None, severity="low"):
    ip, user_agent = _client_meta()

    row = AuditLog(
        user_id=user_id,
        action=action,
        severity=severity,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        ip=ip,
        user_agent=user_agent,
        metadata_json=json.dumps(metadata, default=str) if metadata else None
    )
    db.session.add(row)
    db.session.commit()
    return row

def make_audit_sink(app):
    """
    Build the SecurityMonitor sink that persists events as audit rows.

    Events raised from background threads (session watchdog) arrive without
    an app context, so one is pushed for them.
    """
    def sink(event):
        data = dict(event.data)
        user_id = data.pop("user_id", None)
        if has_app_context():
            log_event(event.type, user_id=user_id, metadata=data, severity=event.severity)
            return
        with app.app_context():
            log_event(event.type, user_id=user_id, metadata=data, severity=event.severity)

    return sink
