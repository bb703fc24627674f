# portfolio_auth/auth/account_routes.py
from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from portfolio_auth.auth.accounts import deactivate_account, delete_account, get_account_status, reactivate_account
from portfolio_auth.auth.dependencies import CurrentSession, get_current_session, require_csrf
from portfolio_auth.auth.sessions import (
    clear_session_cookie,
    list_active_sessions,
    revoke_all_sessions_for_user,
    revoke_user_session,
)
from portfolio_auth.auth.utils import extract_client_context
from portfolio_auth.database import get_db
from portfolio_auth.errors import NotFoundError
from portfolio_auth.mail import Mailer, get_mailer
from portfolio_auth.schemas import (
    AccountStatusResponse,
    DeactivateAccountRequest,
    DeleteAccountRequest,
    MessageResponse,
    ReactivateAccountRequest,
    SessionResponse,
    SessionsRevokedResponse,
)

router = APIRouter()


# ---------- signed-in devices ----------
@router.get("/sessions", response_model=list[SessionResponse])
def my_sessions(current: CurrentSession = Depends(get_current_session), db: Session = Depends(get_db)):
    sessions = list_active_sessions(current.user.id, db)
    return [
        SessionResponse.model_validate(s).model_copy(update={"current": s.id == current.session_id})
        for s in sessions
    ]


@router.delete("/sessions/{session_id}", response_model=MessageResponse, dependencies=[Depends(require_csrf)])
def revoke_one_session(
    session_id: int,
    response: Response,
    current: CurrentSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    if not revoke_user_session(current.user.id, session_id, db):
        raise NotFoundError("Session not found.")
    if session_id == current.session_id:
        clear_session_cookie(response)
    return {"message": "Session signed out."}


@router.post("/sessions/revoke-others", response_model=SessionsRevokedResponse, dependencies=[Depends(require_csrf)])
def revoke_other_sessions(current: CurrentSession = Depends(get_current_session), db: Session = Depends(get_db)):
    revoked = revoke_all_sessions_for_user(
        current.user.id, db, except_session_id=current.session_id, reason="user_revoked_others"
    )
    return {"revoked": revoked}


# ---------- account lifecycle ----------
@router.get("/account/status", response_model=AccountStatusResponse)
def account_status(current: CurrentSession = Depends(get_current_session), db: Session = Depends(get_db)):
    status = get_account_status(current.user.id, db)
    if status is None:
        raise NotFoundError("Account not found.")
    return status


@router.post("/account/deactivate", response_model=SessionsRevokedResponse, dependencies=[Depends(require_csrf)])
def deactivate(
    req: DeactivateAccountRequest,
    request: Request,
    response: Response,
    current: CurrentSession = Depends(get_current_session),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    ip, _ = extract_client_context(request)
    revoked = deactivate_account(current.user.id, req.password, db, mailer, reason=req.reason, ip=ip)
    clear_session_cookie(response)
    return {"revoked": revoked}


@router.post("/account/reactivate", response_model=MessageResponse, dependencies=[Depends(require_csrf)])
def reactivate(
    req: ReactivateAccountRequest,
    request: Request,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    ip, _ = extract_client_context(request)
    reactivate_account(req.email, req.password, db, mailer, ip=ip)
    return {"message": "Account reactivated successfully. You can now sign in."}


@router.post("/account/delete", response_model=MessageResponse, dependencies=[Depends(require_csrf)])
def delete(
    req: DeleteAccountRequest,
    request: Request,
    response: Response,
    current: CurrentSession = Depends(get_current_session),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    ip, _ = extract_client_context(request)
    delete_account(current.user.id, req.password, req.confirmation_text, db, mailer, ip=ip)
    clear_session_cookie(response)
    return {"message": "Account deleted successfully."}
