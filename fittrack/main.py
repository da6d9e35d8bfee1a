import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.staticfiles import StaticFiles
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import models
from .audit import AuditLogger
from .auth import hash_password, pwd_context
from .config import Settings
from .config import settings as default_settings
from .database import Base, make_engine, make_session_factory
from .email_service import EmailService
from .exceptions import FitTrackError, NotFoundError, ServerError, ValidationError
from .logging_config import setup_logging
from .responses import error_response
from .routes import account as account_routes
from .routes import admin as admin_routes
from .routes import api as api_routes
from .routes import auth as auth_routes
from .routes import internal as internal_routes
from .routes import pages as pages_routes
from .security.backends import build_backend
from .security.csrf import CsrfGuard
from .security.pipeline import SecurityPipeline
from .security.rate_limit import LOGIN_POLICY, REGISTER_POLICY, RateLimitGuard, RateLimiter
from .security.sessions import ServerSessionMiddleware, SessionStore
from .security.timeout import SessionTimeoutGuard
from .tokens import TokenService
from .verification import cleanup_verifications

logger = logging.getLogger(__name__)

base_path = Path(__file__).resolve().parent
static_dir = base_path / "static"


def _seed_defaults(db: Session, settings: Settings) -> None:
    """Create the default administrator when the database has none."""
    if db.query(models.User).filter(models.User.is_admin.is_(True)).first():
        return
    if db.query(models.User).filter(models.User.username == settings.default_admin_username).first():
        return

    admin = models.User(
        username=settings.default_admin_username,
        email=settings.default_admin_email,
        first_name="Site",
        last_name="Administrator",
        password_hash=hash_password(settings.default_admin_password),
        is_admin=True,
    )
    db.add(admin)
    logger.warning(
        "Created default admin account '%s'; change its password after first login",
        settings.default_admin_username,
    )


def run_maintenance(app: FastAPI) -> None:
    """Evict stale rate-limit counters, expired sessions and verification codes."""
    for limiter in app.state.rate_limiters.values():
        limiter.sweep()
    app.state.session_store.purge_expired()

    db = app.state.session_factory()
    try:
        cleanup_verifications(db)
    except SQLAlchemyError:
        db.rollback()
        logger.warning("Verification cleanup failed", exc_info=True)
    finally:
        db.close()


async def _maintenance_loop(app: FastAPI, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(run_maintenance, app)
        except Exception:
            logger.exception("Maintenance pass failed")


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(FitTrackError)
    async def fittrack_exception_handler(request: Request, exc: FitTrackError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.info("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
        return error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            field = ".".join(str(p) for p in error["loc"] if p not in ("query", "path", "body"))
            errors.append(f"{field or 'Input'}: {error['msg']}")
        return error_response(request, ValidationError(errors=errors))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(request, NotFoundError("Page not found"))
        error = FitTrackError(str(exc.detail))
        error.status_code = exc.status_code
        return error_response(request, error)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled application error", exc_info=exc)
        return error_response(request, ServerError())


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    clock=time.time,
) -> FastAPI:
    """Build the application and every service it depends on."""
    settings = settings or default_settings
    setup_logging(settings.log_level, settings.log_dir)
    pwd_context.update(bcrypt__rounds=settings.bcrypt_rounds)

    engine = engine or make_engine(settings.database_url)
    session_factory = make_session_factory(engine)
    backend = build_backend(settings.redis_url, clock)

    audit = AuditLogger(session_factory, trust_proxy=settings.trust_proxy_headers)
    tokens = TokenService(settings.token_secret, settings.token_expires_seconds, clock)
    session_store = SessionStore(backend, settings.session_max_age, clock)
    rate_limiters = {
        "login": RateLimiter(LOGIN_POLICY, backend, clock),
        "register": RateLimiter(REGISTER_POLICY, backend, clock),
    }

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=engine)
        db = session_factory()
        try:
            _seed_defaults(db, settings)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

        maintenance = asyncio.create_task(_maintenance_loop(app, settings.rate_limit_sweep_seconds))
        logger.info("%s started", settings.app_name)
        try:
            yield
        finally:
            maintenance.cancel()
            with suppress(asyncio.CancelledError):
                await maintenance
            backend.close()
            logger.info("%s stopped", settings.app_name)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.clock = clock
    app.state.audit = audit
    app.state.tokens = tokens
    app.state.session_store = session_store
    app.state.rate_limiters = rate_limiters
    app.state.email = EmailService(settings)

    guards = [
        RateLimitGuard(
            {
                ("POST", "/auth/login"): rate_limiters["login"],
                ("POST", "/api/auth/token"): rate_limiters["login"],
                ("POST", "/auth/register"): rate_limiters["register"],
            },
            audit,
            trust_proxy=settings.trust_proxy_headers,
        ),
        SessionTimeoutGuard(
            audit,
            idle_timeout=settings.idle_timeout_seconds,
            warning_after=settings.idle_warning_seconds,
            clock=clock,
        ),
        CsrfGuard(audit, tokens),
    ]
    # Added last so it wraps the pipeline: guards see the loaded session.
    app.add_middleware(SecurityPipeline, guards=guards)
    app.add_middleware(
        ServerSessionMiddleware,
        store=session_store,
        secret_key=settings.secret_key,
        session_cookie=settings.session_cookie,
        max_age=settings.session_max_age,
        https_only=settings.session_https_only,
    )

    app.mount("/static", StaticFiles(directory=static_dir), name="static")
    _register_exception_handlers(app)

    app.include_router(pages_routes.router)
    app.include_router(auth_routes.router)
    app.include_router(account_routes.router)
    app.include_router(api_routes.router)
    app.include_router(internal_routes.router)
    app.include_router(admin_routes.router)
    return app


app = create_app()
