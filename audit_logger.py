"""
Audit Event Logging Service
Structured JSON audit trail for hires, milestone moves, invoices and denials
"""
import json
import logging
import logging.handlers
import os
from datetime import datetime
from typing import Any, Dict, Optional

import requests
from flask import g, has_request_context, request


class AuditLogger:
    """
    Writes one JSON line per workflow event to a rotating log file, with
    warnings and errors duplicated into a separate file. Optionally forwards
    each event to a webhook (AUDIT_WEBHOOK_URL).
    """

    def __init__(self, app=None):
        self.app = app
        self.logger = None
        self.webhook_url = None

        if app:
            self.init_app(app)

    def init_app(self, app):
        """Initialize audit logger with Flask app"""
        self.app = app
        self._setup_structured_logging()
        self.webhook_url = app.config.get('AUDIT_WEBHOOK_URL')

    def _setup_structured_logging(self):
        """Configure JSON formatted, size rotated audit files"""
        log_dir = self.app.config.get('AUDIT_LOG_DIR') or os.path.join(
            os.path.dirname(os.path.abspath(__file__)), 'logs'
        )
        os.makedirs(log_dir, exist_ok=True)

        self.logger = logging.getLogger('audit')
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        json_formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "event": %(message)s}'
        )

        # 20MB per file, keep 10 backups
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, 'audit.log'),
            maxBytes=20 * 1024 * 1024,
            backupCount=10,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(json_formatter)
        self.logger.addHandler(file_handler)

        warning_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, 'audit_warnings.log'),
            maxBytes=20 * 1024 * 1024,
            backupCount=10,
            encoding='utf-8'
        )
        warning_handler.setLevel(logging.WARNING)
        warning_handler.setFormatter(json_formatter)
        self.logger.addHandler(warning_handler)

        if self.app.debug:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.DEBUG)
            console_handler.setFormatter(json_formatter)
            self.logger.addHandler(console_handler)

    def _get_request_context(self) -> Dict[str, Any]:
        context = {
            'user_id': None,
            'role': None,
            'ip_address': None,
            'request_method': None,
            'request_path': None
        }
        if not has_request_context():
            return context

        auth = getattr(g, 'auth', None)
        if auth is not None:
            context['user_id'] = auth.user_id
            context['role'] = auth.role

        # First hop of X-Forwarded-For when behind a proxy
        ip_address = request.headers.get('X-Forwarded-For', request.remote_addr)
        if ip_address and ',' in ip_address:
            ip_address = ip_address.split(',')[0].strip()
        context['ip_address'] = ip_address
        context['request_method'] = request.method
        context['request_path'] = request.path
        return context

    def log_event(
        self,
        event_category: str,
        event_type: str,
        action: str,
        severity: str = 'low',
        status: str = 'success',
        message: str = '',
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
        details: Optional[Dict] = None
    ):
        """
        Record an audit event

        Args:
            event_category: Category (authorization, hiring, milestone, payment)
            event_type: Specific event type (permission_denied, hire_completed, ...)
            action: Human-readable action description
            severity: low, medium, high or critical
            status: success, failure or blocked
            message: Additional message
            resource_type: Type of resource affected (project, contract, milestone, invoice)
            resource_id: ID of affected resource
            details: Additional context as dictionary
        """
        if self.logger is None:
            return

        try:
            event = {
                'event_category': event_category,
                'event_type': event_type,
                'action': action,
                'severity': severity,
                'status': status,
                'message': message,
                'resource_type': resource_type,
                'resource_id': str(resource_id) if resource_id is not None else None,
                'details': details,
                'recorded_at': datetime.utcnow().isoformat()
            }
            event.update(self._get_request_context())

            log_level = {
                'low': logging.INFO,
                'medium': logging.WARNING,
                'high': logging.ERROR,
                'critical': logging.CRITICAL
            }.get(severity, logging.INFO)

            self.logger.log(log_level, json.dumps(event, default=str))

            if self.webhook_url:
                self._forward(event)

        except Exception as e:
            # An audit failure must never change the outcome of the request
            self.app.logger.error(f"Audit logging failed: {e}")
            self.app.logger.error(f"Event: {event_category}/{event_type} - {action}")

    def _forward(self, event: Dict[str, Any]):
        try:
            requests.post(
                self.webhook_url,
                json=event,
                timeout=5,
                headers={'Content-Type': 'application/json'}
            )
        except requests.exceptions.RequestException as e:
            self.app.logger.warning(f"Audit webhook failed: {e}")

    def log_authorization(self, resource_type: str, resource_id, action: str, message: str = ''):
        """Log a denied action"""
        self.log_event(
            event_category='authorization',
            event_type='permission_denied',
            action=action,
            severity='medium',
            status='blocked',
            message=message,
            resource_type=resource_type,
            resource_id=resource_id
        )

    def log_workflow(self, event_category: str, event_type: str, action: str, resource_type: str,
                     resource_id, status: str = 'success', details: Optional[Dict] = None, message: str = ''):
        severity = 'low' if status == 'success' else 'high'
        self.log_event(
            event_category=event_category,
            event_type=event_type,
            action=action,
            severity=severity,
            status=status,
            message=message,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details
        )


audit_logger = None


def init_audit_logger(app):
    """Initialize the global audit logger and register it on the app"""
    global audit_logger
    audit_logger = AuditLogger(app)
    app.extensions['audit_logger'] = audit_logger
    return audit_logger
