"""
Authentication gate for every route.

Basic auth (constant-time username/password check) or bearer auth (HS256
JWT signed with the configured key). Basic auth takes precedence when both
are enabled. The active config snapshot is passed in per request, so a
reload takes effect on the next request.
"""

import logging
import secrets as secrets_module
from typing import Any, Dict, Optional

import jwt
from flask import Request, Response

from am_executor.config_loader import Config, ConfigError

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"
TOKEN_USER = "am-executor"
BASIC_REALM = "am-executor"


def _unauthorized(basic: bool = False) -> Response:
    response = Response("Unauthorized\n", status=401, mimetype="text/plain")
    if basic:
        response.headers["WWW-Authenticate"] = f'Basic realm="{BASIC_REALM}"'
    return response


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def check_basic_auth(config: Config, request: Request) -> bool:
    auth = request.authorization
    if auth is None or auth.type != "basic":
        return False
    username = auth.username or ""
    password = auth.password or ""
    # Evaluate both so a wrong username costs the same as a wrong password
    user_ok = secrets_module.compare_digest(username.encode(), config.basic_auth.username.encode())
    pass_ok = secrets_module.compare_digest(password.encode(), config.basic_auth.password.encode())
    return user_ok and pass_ok


def verify_token(token: str, signing_key: str) -> Dict[str, Any]:
    """Decode and verify a bearer token. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, signing_key, algorithms=[TOKEN_ALGORITHM])


def check_bearer_auth(config: Config, request: Request) -> bool:
    token = _bearer_token(request)
    if token is None:
        return False
    try:
        verify_token(token, config.bearer_auth.signing_key)
    except jwt.PyJWTError as e:
        logger.warning(f"Bearer token rejected: {e}")
        return False
    return True


def authenticate(config: Config, request: Request) -> Optional[Response]:
    """
    Run the gate for one request.

    Returns None to let the request through, or the 401 response to send.
    """
    if config.basic_auth.enabled:
        if check_basic_auth(config, request):
            return None
        logger.warning(f"Basic authentication failed from {request.remote_addr}")
        return _unauthorized(basic=True)

    if config.bearer_auth.enabled:
        if check_bearer_auth(config, request):
            return None
        logger.warning(f"Bearer authentication failed from {request.remote_addr}")
        return _unauthorized()

    return None


def create_token(config: Config) -> str:
    """Sign a bearer token with the configured key (--create-token)."""
    if not config.bearer_auth.signing_key:
        raise ConfigError("bearerAuth.signingKey is not set")
    return jwt.encode(
        {"authorized": True, "user": TOKEN_USER},
        config.bearer_auth.signing_key,
        algorithm=TOKEN_ALGORITHM,
    )
