# portfolio_auth/main.py
from fastapi import FastAPI

from portfolio_auth.admin.routes import router as admin_router
from portfolio_auth.auth.account_routes import router as account_router
from portfolio_auth.auth.routes import router as auth_router
from portfolio_auth.config import settings
from portfolio_auth.database import Base, engine
from portfolio_auth.errors import register_exception_handlers
from portfolio_auth.logging import get_logger
from portfolio_auth.middleware import ClientContextMiddleware, SecurityHeadersMiddleware, SessionCookieMiddleware

logger = get_logger(__name__)

app = FastAPI(title=f"{settings.SITE_NAME} Auth")

# Middleware order matters: the last one added runs first
app.add_middleware(SessionCookieMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ClientContextMiddleware)

register_exception_handlers(app)

Base.metadata.create_all(bind=engine)

app.include_router(auth_router, prefix="/auth", tags=["Auth"])
app.include_router(account_router, prefix="/auth", tags=["Account"])
app.include_router(admin_router, prefix="/admin", tags=["Admin"])

logger.info("app_started", site=settings.SITE_NAME)


@app.get("/")
def root():
    return {"message": "Auth Service is running"}
