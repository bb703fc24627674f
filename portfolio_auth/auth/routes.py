# portfolio_auth/auth/routes.py
from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session

from portfolio_auth.auth.csrf import generate_csrf_token
from portfolio_auth.auth.dependencies import CurrentSession, get_current_session, get_current_user, require_csrf
from portfolio_auth.auth.passwords import (
    change_password,
    reset_password_with_token,
    send_password_reset,
    verify_password_reset_token,
)
from portfolio_auth.auth.services import authenticate_user, register_user
from portfolio_auth.auth.sessions import clear_session_cookie, revoke_session, set_session_cookie
from portfolio_auth.auth.utils import extract_client_context
from portfolio_auth.auth.verification import resend_email_verification, verify_email_token
from portfolio_auth.config import settings
from portfolio_auth.database import get_db
from portfolio_auth.errors import ValidationError
from portfolio_auth.mail import Mailer, get_mailer
from portfolio_auth.models import User
from portfolio_auth.schemas import (
    ChangePasswordRequest,
    CSRFTokenResponse,
    EmailRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    ResetTokenCheckResponse,
    SessionsRevokedResponse,
    UserResponse,
)
from portfolio_auth.security_log import SecurityEventType, log_security_event

router = APIRouter()


@router.get("/csrf-token", response_model=CSRFTokenResponse)
def csrf_token(response: Response):
    """Issue a token in the body and in the cookie; send it back in the X-CSRF-Token header."""
    token = generate_csrf_token()
    response.set_cookie(
        key=settings.CSRF_COOKIE_NAME,
        value=token,
        max_age=settings.CSRF_TOKEN_EXPIRE_SECONDS,
        path="/",
        httponly=True,
        secure=settings.SESSION_COOKIE_SECURE,
        samesite="strict",
    )
    return {"csrf_token": token}


@router.post(
    "/register",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_csrf)],
)
def register(
    user: RegisterRequest,
    request: Request,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    return register_user(user.email, user.password, user.name, db, mailer, request)


# ---------- LOGIN (server-side session in an httpOnly cookie) ----------
@router.post("/login", response_model=LoginResponse, dependencies=[Depends(require_csrf)])
def login(login_req: LoginRequest, request: Request, response: Response, db: Session = Depends(get_db)):
    result = authenticate_user(
        email=login_req.email,
        password=login_req.password,
        db=db,
        request=request,
        remember_me=login_req.remember_me,
    )
    set_session_cookie(response, result.raw_session_id, result.session.expires_at)
    return {"user": result.user, "expires_at": result.session.expires_at}


# ---------- LOGOUT ----------
@router.post("/logout", response_model=MessageResponse, dependencies=[Depends(require_csrf)])
def logout(request: Request, response: Response, db: Session = Depends(get_db)):
    """Revokes the cookie's session if there is one; always clears the cookie."""
    raw_session_id = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if raw_session_id:
        row = revoke_session(raw_session_id, db, reason="user_logout")
        ip, ua = extract_client_context(request)
        log_security_event(
            SecurityEventType.LOGOUT,
            user_id=row.user_id if row else None,
            ip=ip,
            user_agent=ua,
        )
    clear_session_cookie(response)
    return {"message": "Signed out."}


@router.get("/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)):
    return current_user


# ---------- email verification ----------
@router.get("/verify-email", response_model=MessageResponse)
def verify_email(token: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    """Target of the emailed link; the token itself is the credential."""
    result = verify_email_token(token, db)
    if not result.success:
        raise ValidationError(result.message)
    return {"message": result.message}


@router.post("/resend-verification", response_model=MessageResponse, dependencies=[Depends(require_csrf)])
def resend_verification(
    req: EmailRequest,
    request: Request,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    ip, _ = extract_client_context(request)
    result = resend_email_verification(req.email, db, mailer, ip=ip)
    return {"message": result.message}


# ---------- password reset ----------
@router.post("/forgot-password", response_model=MessageResponse, dependencies=[Depends(require_csrf)])
def forgot_password(
    req: EmailRequest,
    request: Request,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    # same answer whether or not the account exists
    ip, _ = extract_client_context(request)
    result = send_password_reset(req.email, db, mailer, ip=ip)
    return {"message": result.message}


@router.get("/reset-password", response_model=ResetTokenCheckResponse)
def check_reset_token(token: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    return {"valid": verify_password_reset_token(token, db) is not None}


@router.post("/reset-password", response_model=MessageResponse, dependencies=[Depends(require_csrf)])
def reset_password(
    req: ResetPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    ip, _ = extract_client_context(request)
    result = reset_password_with_token(req.token, req.new_password, db, mailer, ip=ip)
    if not result.success:
        raise ValidationError(result.message)
    return {"message": result.message}


@router.post("/change-password", response_model=SessionsRevokedResponse, dependencies=[Depends(require_csrf)])
def change_password_route(
    req: ChangePasswordRequest,
    request: Request,
    current: CurrentSession = Depends(get_current_session),
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    """Signs out every other device; the calling session stays signed in."""
    ip, _ = extract_client_context(request)
    revoked = change_password(
        current.user.id,
        req.current_password,
        req.new_password,
        db,
        mailer,
        keep_session_id=current.session_id,
        ip=ip,
    )
    return {"revoked": revoked}
