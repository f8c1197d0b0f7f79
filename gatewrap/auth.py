"""
Shared-token resolution and operator authentication.

The gateway token is the only credential between the wrapper and the
backend. The operator password (SETUP_PASSWORD) gates every human-facing
route through HTTP Basic auth; the username is ignored.
"""

import base64
import binascii
import logging
import os
import secrets
from enum import Enum
from pathlib import Path

from fastapi import HTTPException, Request

from .commands import token_log_safe
from .config import Config

logger = logging.getLogger(__name__)

REALM = "Openclaw"


class TokenStore:
    """Resolves and persists the shared gateway token."""

    def __init__(self, settings: Config):
        self.settings = settings

    def resolve(self) -> str:
        """
        Resolve the gateway token.

        Precedence: OPENCLAW_GATEWAY_TOKEN env, then the persisted token file,
        then a freshly generated token written owner-only before returning.
        """
        env_token = (self.settings.gateway_token or "").strip()
        if env_token:
            logger.info(
                f"Using gateway token from environment "
                f"(fingerprint: {token_log_safe(env_token)}, len: {len(env_token)})"
            )
            self._persist(env_token)
            return env_token

        path = self.settings.token_path
        try:
            existing = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            existing = ""
        except OSError as e:
            logger.warning(f"Could not read persisted token {path}: {e}")
            existing = ""

        if existing:
            logger.info(f"Using persisted gateway token (fingerprint: {token_log_safe(existing)})")
            return existing

        generated = secrets.token_hex(32)
        logger.warning(f"Generated new gateway token (fingerprint: {token_log_safe(generated)})")
        self._persist(generated)
        return generated

    def _persist(self, token: str):
        path: Path = self.settings.token_path
        try:
            if path.exists() and path.read_text(encoding="utf-8").strip() == token:
                return
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(token)
            os.chmod(path, 0o600)
            logger.info(f"Persisted gateway token to {path}")
        except OSError as e:
            logger.warning(f"Could not persist gateway token to {path}: {e}")


def secure_compare(a: str | None, b: str | None) -> bool:
    """Constant-time string comparison."""
    return secrets.compare_digest((a or "").encode("utf-8"), (b or "").encode("utf-8"))


class AuthResult(Enum):
    OK = "ok"
    NOT_CONFIGURED = "not_configured"
    MISSING = "missing"
    INVALID = "invalid"


def check_basic_auth(header: str | None, password: str | None) -> AuthResult:
    """Validate an Authorization header against the operator password."""
    if not password:
        return AuthResult.NOT_CONFIGURED

    scheme, _, encoded = (header or "").partition(" ")
    if scheme != "Basic" or not encoded.strip():
        return AuthResult.MISSING

    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return AuthResult.MISSING

    _, sep, supplied = decoded.partition(":")
    if not secure_compare(supplied if sep else "", password):
        return AuthResult.INVALID
    return AuthResult.OK


def raise_for_auth(result: AuthResult, realm: str = REALM):
    """Translate a failed AuthResult into the matching HTTP error."""
    if result is AuthResult.OK:
        return
    if result is AuthResult.NOT_CONFIGURED:
        raise HTTPException(
            status_code=500,
            detail="SETUP_PASSWORD is not set. Set it in the deployment variables to use this service.",
        )
    challenge = {"WWW-Authenticate": f'Basic realm="{realm}"'}
    if result is AuthResult.MISSING:
        raise HTTPException(status_code=401, detail="Auth required", headers=challenge)
    raise HTTPException(status_code=401, detail="Invalid password", headers=challenge)


def require_operator(request: Request):
    """FastAPI dependency gating a route behind the operator password."""
    settings: Config = request.app.state.settings
    result = check_basic_auth(request.headers.get("authorization"), settings.setup_password)
    if result is not AuthResult.OK:
        logger.debug(f"Rejected {request.method} {request.url.path}: {result.value}")
    raise_for_auth(result)
