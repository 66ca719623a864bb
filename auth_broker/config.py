"""
Auth Broker configuration. Values come from the environment; no secrets in this file.
Provider credentials are read here and resolved into ProviderDescriptor values by providers.py.
"""
import os

# Key-value store holding PKCE entries, state tokens and per-session credentials
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379/0")

# Startup connection attempts against Redis before giving up
REDIS_CONNECT_RETRIES = int(os.environ.get("REDIS_CONNECT_RETRIES", "5"))
REDIS_CONNECT_BACKOFF_SECONDS = float(os.environ.get("REDIS_CONNECT_BACKOFF_SECONDS", "2"))

# Comma-separated domains a post-login redirect_uri may point at (e.g. "localhost,example.com")
ALLOWED_REDIRECT_DOMAINS = [
    d.strip() for d in os.environ.get("ALLOWED_REDIRECT_DOMAINS", "").split(",") if d.strip()
]

# Spotify application credentials; provider is disabled when the client ID is unset
SPOTIFY_CLIENT_ID = os.environ.get("SPOTIFY_CLIENT_ID", "")
SPOTIFY_CLIENT_SECRET = os.environ.get("SPOTIFY_CLIENT_SECRET", "")
SPOTIFY_REDIRECT_URL = os.environ.get("SPOTIFY_REDIRECT_URL", "http://localhost:8080/auth/spotify/callback")

# Tidal application credentials; provider is disabled when the client ID is unset
TIDAL_CLIENT_ID = os.environ.get("TIDAL_CLIENT_ID", "")
TIDAL_CLIENT_SECRET = os.environ.get("TIDAL_CLIENT_SECRET", "")
TIDAL_REDIRECT_URL = os.environ.get("TIDAL_REDIRECT_URL", "http://localhost:8080/auth/tidal/callback")

# Lifetime of a pending login (PKCE verifier and state token), seconds
PKCE_TTL_SECONDS = int(os.environ.get("PKCE_TTL_SECONDS", "300"))
STATE_TTL_SECONDS = int(os.environ.get("STATE_TTL_SECONDS", "300"))

# Extra seconds a credential stays in the store past its token expiry, so an expired
# token can still be refreshed on read. 0 keeps storage expiry equal to token expiry.
CREDENTIAL_RETENTION_SECONDS = int(os.environ.get("CREDENTIAL_RETENTION_SECONDS", "0"))

# Used when a provider token response carries no expires_in
DEFAULT_TOKEN_LIFETIME_SECONDS = int(os.environ.get("DEFAULT_TOKEN_LIFETIME_SECONDS", "3600"))

# Timeout for outbound calls to provider token and user-info endpoints
HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "10"))

# Session cookie
SESSION_COOKIE_NAME = "session_id"
# When true, a callback that presents a session cookie with live credentials attaches the new
# account to that session instead of starting a new one
REUSE_SESSION_ON_LOGIN = os.environ.get("REUSE_SESSION_ON_LOGIN", "false").lower() in ("1", "true", "yes")
SESSION_COOKIE_SECURE = os.environ.get("SESSION_COOKIE_SECURE", "true").lower() not in ("0", "false", "no")

# Front-end origins allowed to call the API with credentials (comma-separated)
CORS_ALLOWED_ORIGINS = [
    o.strip() for o in os.environ.get("CORS_ALLOWED_ORIGINS", "http://localhost:5173").split(",") if o.strip()
]

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
