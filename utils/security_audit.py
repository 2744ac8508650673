"""
Security audit trail
Logs security-relevant events and records them as SecurityIncident rows for manual review
"""

import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from models import SecurityIncident, IncidentType

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security_alerts")


class SecurityAuditLogger:
    """Writes incidents in their own session so they survive the caller's rollback"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def record_incident(
        self,
        incident_type: IncidentType,
        details: Optional[Dict[str, Any]] = None,
        redirection_code: Optional[str] = None,
        trade_id: Optional[str] = None,
        severity: str = "high",
    ) -> Optional[int]:
        """Alert and persist an incident; returns the incident id or None if it could not be stored"""
        security_logger.critical(
            f"🚨 SECURITY_INCIDENT: {incident_type.value} code={redirection_code} "
            f"trade={trade_id} severity={severity} details={details or {}}"
        )

        session = self.session_factory()
        try:
            incident = SecurityIncident(
                incident_type=incident_type.value,
                severity=severity,
                redirection_code=redirection_code,
                trade_id=trade_id,
                details=details or {},
            )
            session.add(incident)
            session.commit()
            return incident.id
        except Exception as e:
            session.rollback()
            # The log line above is the alert of record when the database is unavailable
            logger.error(f"❌ Failed to persist security incident {incident_type.value}: {e}")
            return None
        finally:
            session.close()

    def pending_incidents(self, incident_type: Optional[IncidentType] = None) -> list:
        """Unreviewed incidents, oldest first"""
        session = self.session_factory()
        try:
            query = session.query(SecurityIncident).filter(SecurityIncident.reviewed.is_(False))
            if incident_type is not None:
                query = query.filter(SecurityIncident.incident_type == incident_type.value)
            return query.order_by(SecurityIncident.id).all()
        finally:
            session.close()

    def mark_reviewed(self, incident_id: int) -> bool:
        session = self.session_factory()
        try:
            incident = session.get(SecurityIncident, incident_id)
            if incident is None:
                return False
            incident.reviewed = True
            session.commit()
            logger.info(f"✅ SECURITY_INCIDENT_REVIEWED: {incident_id}")
            return True
        finally:
            session.close()
