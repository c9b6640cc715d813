"""Shared constants for Cloudflare Gate."""

SERVER_NAME = "Cloudflare Gate"
SERVER_VERSION = "0.1.0"

# Logging defaults
DEFAULT_LOG_LEVEL = "INFO"

# Access JWT verification
SUPPORTED_ALGORITHMS = frozenset({"RS256", "ES256"})
ACCESS_DOMAIN_SUFFIX = "cloudflareaccess.com"
CERTS_PATH = "/cdn-cgi/access/certs"
JWKS_TTL = 600.0  # seconds before a routine refresh
JWKS_MISS_COOLDOWN = 30.0  # seconds during which unknown kids do not refetch
JWKS_ROTATION_GUARD = 5.0  # minimum age of the key set before a miss forces a refetch
JWKS_FETCH_TIMEOUT = 10.0
DEFAULT_CLOCK_SKEW = 30.0  # leeway applied to exp / nbf

# Identity headers
JWT_ASSERTION_HEADER = "cf-access-jwt-assertion"
USER_EMAIL_HEADER = "x-auth-user-email"
AUTH_SOURCE_HEADER = "x-auth-source"
AUTH_SOURCE_TAG = "cloudflare-access"

# Connector (cloudflared) supervision
CONNECTOR_ARGS = ("tunnel", "run")
CONNECTOR_TOKEN_ENV = "TUNNEL_TOKEN"
CONNECTOR_START_TIMEOUT = 30.0
CONNECTOR_STOP_GRACE = 1.5
CONNECTOR_LOG_LINES = 200
CONNECTOR_STREAM_LIMIT = 1024 * 1024  # max bytes per output line
CONNECTOR_DRAIN_TIMEOUT = 0.5  # time allowed to collect output after an early exit
CONNECTOR_VERSION_TIMEOUT = 3.0
CONNECTOR_RELEASE_URL = "https://github.com/cloudflare/cloudflared/releases/latest/download"

# Environment variable consulted when the config carries no tunnel token
GATE_TUNNEL_TOKEN_ENV = "CLOUDFLARE_GATE_TUNNEL_TOKEN"
