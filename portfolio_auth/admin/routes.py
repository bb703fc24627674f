# portfolio_auth/admin/routes.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from portfolio_auth.auth.dependencies import require_admin, require_csrf
from portfolio_auth.auth.sessions import revoke_all_sessions_for_user
from portfolio_auth.database import get_db
from portfolio_auth.errors import NotFoundError
from portfolio_auth.models import User
from portfolio_auth.monitoring import (
    detect_suspicious_activity,
    get_session_stats,
    monitor_session_health,
    perform_session_maintenance,
)
from portfolio_auth.schemas import (
    HealthReportResponse,
    MaintenanceReportResponse,
    SessionsRevokedResponse,
    SessionStatsResponse,
    SuspiciousUserResponse,
)

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/sessions/stats", response_model=SessionStatsResponse)
def session_stats(db: Session = Depends(get_db)):
    return get_session_stats(db)


@router.get("/sessions/health", response_model=HealthReportResponse)
def session_health(db: Session = Depends(get_db)):
    return monitor_session_health(db)


@router.get("/sessions/suspicious", response_model=list[SuspiciousUserResponse])
def suspicious_sessions(db: Session = Depends(get_db)):
    return detect_suspicious_activity(db)


@router.post("/sessions/maintenance", response_model=MaintenanceReportResponse, dependencies=[Depends(require_csrf)])
def session_maintenance(db: Session = Depends(get_db)):
    return perform_session_maintenance(db)


@router.post(
    "/users/{user_id}/revoke-sessions",
    response_model=SessionsRevokedResponse,
    dependencies=[Depends(require_csrf)],
)
def force_logout(user_id: int, db: Session = Depends(get_db)):
    if db.get(User, user_id) is None:
        raise NotFoundError("User not found.")
    revoked = revoke_all_sessions_for_user(user_id, db, reason="admin_force_logout")
    return {"revoked": revoked}
