# portfolio_auth/monitoring.py
"""
Session statistics, anomaly heuristics, health alerts and periodic
maintenance. Everything here reports; nothing revokes sessions.
"""
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portfolio_auth.auth.sessions import active_session_filter, cleanup_expired_sessions
from portfolio_auth.auth.utils import as_utc, utcnow
from portfolio_auth.config import settings
from portfolio_auth.logging import get_logger
from portfolio_auth.models import User, UserSession
from portfolio_auth.security_log import SecurityEventType, log_security_event

logger = get_logger(__name__)

LONG_AVERAGE_SESSION_SECONDS = 30 * 24 * 60 * 60
SESSIONS_PER_USER_ALERT_RATIO = 3
EXPIRING_SOON_ALERT_RATIO = 0.5


@dataclass
class SessionStats:
    total_active_sessions: int = 0
    total_users: int = 0
    remember_me_sessions: int = 0
    sessions_expiring_in_24h: int = 0
    suspicious_activity_count: int = 0
    average_session_duration: float = 0.0  # seconds, created_at to expires_at


@dataclass
class SuspiciousUser:
    user_id: int
    email: Optional[str]
    session_count: int
    distinct_ips: int
    distinct_user_agents: int
    reasons: list[str] = field(default_factory=list)


@dataclass
class HealthReport:
    healthy: bool
    alerts: list[str]
    stats: SessionStats


@dataclass
class MaintenanceReport:
    expired_sessions_cleaned: int = 0
    suspicious_sessions_found: int = 0
    errors: list[str] = field(default_factory=list)


def get_session_stats(db: Session) -> SessionStats:
    """All zeros when the store is unavailable."""
    now = utcnow()
    active = active_session_filter(now)
    try:
        active_query = db.query(UserSession).filter(*active)
        total_active = active_query.count()
        total_users = db.query(User).filter(User.is_active.is_(True)).count()
        remember_me = active_query.filter(UserSession.is_remember_me.is_(True)).count()
        expiring = active_query.filter(UserSession.expires_at <= now + timedelta(hours=24)).count()
        crowded_users = (
            db.query(UserSession.user_id)
            .filter(*active)
            .group_by(UserSession.user_id)
            .having(func.count(UserSession.id) > settings.MONITOR_MAX_ACTIVE_SESSIONS)
            .count()
        )
        # averaged here rather than in SQL, date arithmetic differs per backend
        lifetimes = db.query(UserSession.created_at, UserSession.expires_at).filter(*active).all()
    except SQLAlchemyError:
        db.rollback()
        logger.error("session_stats_failed")
        return SessionStats()

    durations = [(as_utc(expires) - as_utc(created)).total_seconds() for created, expires in lifetimes]
    average = round(sum(durations) / len(durations)) if durations else 0

    return SessionStats(
        total_active_sessions=total_active,
        total_users=total_users,
        remember_me_sessions=remember_me,
        sessions_expiring_in_24h=expiring,
        suspicious_activity_count=crowded_users,
        average_session_duration=float(average),
    )


def detect_suspicious_activity(db: Session) -> list[SuspiciousUser]:
    """
    Flag active users whose live sessions exceed any of the thresholds: too
    many sessions, too many distinct IPs, or too many distinct user agents.
    Each flagged user is logged. Storage errors propagate to the caller.
    """
    now = utcnow()
    session_count = func.count(UserSession.id)
    distinct_ips = func.count(func.distinct(UserSession.ip_address))
    distinct_agents = func.count(func.distinct(UserSession.user_agent))
    try:
        rows = (
            db.query(UserSession.user_id, User.email, session_count, distinct_ips, distinct_agents)
            .join(User, User.id == UserSession.user_id)
            .filter(*active_session_filter(now), User.is_active.is_(True))
            .group_by(UserSession.user_id, User.email)
            .having(
                or_(
                    session_count > settings.MONITOR_MAX_ACTIVE_SESSIONS,
                    distinct_ips > settings.MONITOR_MAX_DISTINCT_IPS,
                    distinct_agents > settings.MONITOR_MAX_DISTINCT_USER_AGENTS,
                )
            )
            .all()
        )
    except SQLAlchemyError:
        db.rollback()
        logger.error("suspicious_activity_detection_failed")
        raise

    flagged = []
    for user_id, email, sessions, ips, agents in rows:
        reasons = []
        if sessions > settings.MONITOR_MAX_ACTIVE_SESSIONS:
            reasons.append("too_many_sessions")
        if ips > settings.MONITOR_MAX_DISTINCT_IPS:
            reasons.append("too_many_ips")
        if agents > settings.MONITOR_MAX_DISTINCT_USER_AGENTS:
            reasons.append("too_many_user_agents")
        suspicious = SuspiciousUser(
            user_id=user_id,
            email=email,
            session_count=sessions,
            distinct_ips=ips,
            distinct_user_agents=agents,
            reasons=reasons,
        )
        log_security_event(
            SecurityEventType.SUSPICIOUS_SESSION_ACTIVITY,
            user_id=user_id,
            email=email,
            details={
                "session_count": sessions,
                "distinct_ips": ips,
                "distinct_user_agents": agents,
                "reasons": ",".join(reasons),
            },
        )
        flagged.append(suspicious)
    return flagged


def monitor_session_health(db: Session) -> HealthReport:
    stats = get_session_stats(db)
    alerts = []

    try:
        suspicious = detect_suspicious_activity(db)
    except SQLAlchemyError:
        suspicious = []
        alerts.append("Suspicious activity detection failed")

    if stats.suspicious_activity_count > settings.MONITOR_MAX_SUSPICIOUS_USERS:
        alerts.append(
            f"High suspicious activity: {stats.suspicious_activity_count} users with unusual session patterns"
        )
    if stats.total_active_sessions > stats.total_users * SESSIONS_PER_USER_ALERT_RATIO:
        alerts.append(
            f"Unusually high session count: {stats.total_active_sessions} sessions for {stats.total_users} users"
        )
    if stats.average_session_duration > LONG_AVERAGE_SESSION_SECONDS:
        days = round(stats.average_session_duration / (24 * 60 * 60))
        alerts.append(f"Very long average session duration: {days} days")
    if stats.sessions_expiring_in_24h > stats.total_active_sessions * EXPIRING_SOON_ALERT_RATIO:
        alerts.append(
            f"Large number of sessions expiring soon: {stats.sessions_expiring_in_24h} "
            f"of {stats.total_active_sessions}"
        )
    if suspicious:
        alerts.append(f"Detected {len(suspicious)} users with suspicious session activity")

    report = HealthReport(healthy=not alerts, alerts=alerts, stats=stats)
    log_security_event(
        SecurityEventType.SESSION_HEALTH_CHECK,
        details={"healthy": report.healthy, "alert_count": len(alerts), "stats": asdict(stats)},
    )
    return report


def perform_session_maintenance(db: Session) -> MaintenanceReport:
    """Run each task independently; failures are collected, not raised."""
    report = MaintenanceReport()

    try:
        report.expired_sessions_cleaned = cleanup_expired_sessions(db)
    except SQLAlchemyError as exc:
        report.errors.append(f"Session cleanup failed: {type(exc).__name__}")

    try:
        report.suspicious_sessions_found = len(detect_suspicious_activity(db))
    except SQLAlchemyError as exc:
        report.errors.append(f"Suspicious activity detection failed: {type(exc).__name__}")

    log_security_event(
        SecurityEventType.SESSION_MAINTENANCE,
        details={
            "expired_sessions_cleaned": report.expired_sessions_cleaned,
            "suspicious_sessions_found": report.suspicious_sessions_found,
            "errors": len(report.errors),
        },
    )
    return report
