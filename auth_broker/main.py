"""
Auth Broker: OAuth2 authorization code + PKCE logins against several providers,
with any number of provider accounts attached to one browser session.
GET /auth/{provider}/login, /auth/{provider}/callback, /auth/{provider}/token, /auth/status;
POST /auth/{provider}/logout. Port 8080.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import Cookie, Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from auth_broker.config import (
    ALLOWED_REDIRECT_DOMAINS,
    CORS_ALLOWED_ORIGINS,
    LOG_LEVEL,
    REUSE_SESSION_ON_LOGIN,
    SESSION_COOKIE_NAME,
    SESSION_COOKIE_SECURE,
)
from auth_broker.errors import AuthBrokerError
from auth_broker.flow import AuthBroker
from auth_broker.kv import get_redis, wait_for_redis
from auth_broker.providers import registry_from_env

logger = logging.getLogger(__name__)

_broker: AuthBroker | None = None


def get_broker() -> AuthBroker:
    """Dependency: the process-wide broker, built from the environment on first use."""
    global _broker
    if _broker is None:
        _broker = AuthBroker.from_redis(
            get_redis(),
            registry_from_env(),
            ALLOWED_REDIRECT_DOMAINS,
            reuse_sessions=REUSE_SESSION_ON_LOGIN,
        )
    return _broker


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and wait for Redis on startup."""
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    await run_in_threadpool(wait_for_redis, get_redis())
    broker = get_broker()
    logger.info("Providers enabled: %s", ", ".join(sorted(broker.providers)) or "(none)")
    if not broker.allowed_redirect_domains:
        logger.warning("ALLOWED_REDIRECT_DOMAINS is empty; every redirect_uri will be rejected")
    yield


app = FastAPI(title="Auth Broker", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Accept", "Authorization", "Content-Type"],
    expose_headers=["Content-Length"],
    max_age=300,
)


@app.exception_handler(AuthBrokerError)
def auth_broker_error_handler(request: Request, exc: AuthBrokerError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "auth_broker"}


@app.get("/auth/status")
def auth_status(
    session_id: str | None = Cookie(default=None),
    broker: AuthBroker = Depends(get_broker),
):
    """Provider accounts attached to the session cookie."""
    return broker.status(session_id)


@app.get("/auth/{provider}/login")
def login(provider: str, redirect_uri: str | None = None, broker: AuthBroker = Depends(get_broker)):
    """Redirect to the provider's authorization page; redirect_uri is where the browser lands afterwards."""
    url = broker.login(provider, redirect_uri)
    return RedirectResponse(url=url, status_code=307)


@app.get("/auth/{provider}/callback")
def callback(
    provider: str,
    state: str | None = None,
    code: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    session_id: str | None = Cookie(default=None),
    broker: AuthBroker = Depends(get_broker),
):
    """Provider redirects here. On success: set the session cookie and return to the caller's redirect_uri."""
    result = broker.callback(
        provider,
        state,
        code,
        error=error,
        error_description=error_description,
        current_session_id=session_id,
    )
    response = RedirectResponse(url=result.redirect_uri, status_code=307)
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=result.session_id,
        path="/",
        httponly=True,
        secure=SESSION_COOKIE_SECURE,
        samesite="lax",
    )
    return response


@app.get("/auth/{provider}/token")
def token(
    provider: str,
    user_id: str | None = None,
    session_id: str | None = Cookie(default=None),
    broker: AuthBroker = Depends(get_broker),
):
    """Access token for one attached account, refreshed first if it has expired."""
    record = broker.get_token(provider, session_id, user_id)
    return {
        "access_token": record.access_token,
        "refresh_token": record.refresh_token,
        # Unix time at which the access token expires
        "expires_in": int(record.expiry),
    }


@app.post("/auth/{provider}/logout")
def logout(
    provider: str,
    user_id: str | None = None,
    session_id: str | None = Cookie(default=None),
    broker: AuthBroker = Depends(get_broker),
):
    """Detach one account (user_id given) or every account of the provider from the session."""
    return {"message": broker.logout(provider, session_id, user_id)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "auth_broker.main:app",
        host="0.0.0.0",
        port=8080,
        reload=True,
    )
