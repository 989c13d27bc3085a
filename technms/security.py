"""
Security utilities: rate limiting, security headers, input validation,
and encryption of upstream credentials kept in the session.
"""

import base64
import hashlib
import os
import re
from urllib.parse import urlparse

from cryptography.fernet import Fernet, InvalidToken
from flask import request, jsonify
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address


# Initialize rate limiter (configured in app.py). The key is request.remote_addr,
# which ProxyFix rewrites from X-Forwarded-For only when TRUST_PROXY is set.
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["200 per minute"],
    storage_uri="memory://",
)

# Content-Security-Policy directives per mode; the dashboard holds a
# Socket.IO connection open, so connect-src carries ws/wss in both.
CSP_STRICT = {
    'default-src': "'self'",
    'script-src': "'self' 'unsafe-inline'",
    'style-src': "'self' 'unsafe-inline'",
    'img-src': "'self' data:",
    'connect-src': "'self' ws: wss:",
    'frame-ancestors': "'none'",
    'form-action': "'self'",
    'base-uri': "'self'",
}
CSP_RELAXED = dict(
    CSP_STRICT,
    **{
        'default-src': "'self' *",
        'script-src': "'self' 'unsafe-inline' 'unsafe-eval'",
        'style-src': "'self' 'unsafe-inline' *",
        'img-src': "'self' data: https: *",
        'connect-src': "'self' https: ws: wss: *",
        'frame-ancestors': "'self'",
    }
)
NO_STORE_HEADERS = {
    'Cache-Control': 'no-store, no-cache, must-revalidate, private',
    'Pragma': 'no-cache',
    'Expires': '0',
}


def _env_flag(name: str) -> bool:
    return os.environ.get(name, 'false').lower() == 'true'


def build_csp(relaxed: bool = False) -> str:
    policy = CSP_RELAXED if relaxed else CSP_STRICT
    return '; '.join(f'{directive} {sources}' for directive, sources in policy.items())


def add_security_headers(response):
    """
    Add security headers to a response.
    DISABLE_SECURITY_HEADERS leaves only cache control (the reverse proxy
    sets the rest); RELAXED_SECURITY allows framing and remote assets.
    """
    if request.endpoint and 'static' not in request.endpoint:
        response.headers.update(NO_STORE_HEADERS)

    if _env_flag('DISABLE_SECURITY_HEADERS'):
        return response

    relaxed = _env_flag('RELAXED_SECURITY')
    response.headers['X-Frame-Options'] = 'SAMEORIGIN' if relaxed else 'DENY'
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
    response.headers['Content-Security-Policy'] = build_csp(relaxed)
    return response


def validate_url(url: str) -> tuple[bool, str]:
    """
    Validate an upstream base URL from configuration.
    Returns (is_valid, sanitized_url_or_error).
    """
    if not url:
        return False, "URL is required."

    url = url.strip()

    if not url.startswith(('http://', 'https://')):
        url = f'https://{url}'

    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return False, "Invalid URL format."

    hostname = parsed.netloc.split(':')[0]
    if not hostname:
        return False, "Invalid hostname."

    clean_url = f"{parsed.scheme}://{parsed.netloc}"
    if parsed.path and parsed.path != '/':
        clean_url += parsed.path.rstrip('/')

    return True, clean_url


def sanitize_string(s: str, max_length: int = 256, allow_newlines: bool = False) -> str:
    """Sanitize a string input."""
    if not s:
        return ""

    s = str(s).strip()

    # Remove control characters (except newlines if allowed)
    if allow_newlines:
        s = re.sub(r'[\x00-\x09\x0b\x0c\x0e-\x1f\x7f]', '', s)
    else:
        s = re.sub(r'[\x00-\x1f\x7f]', '', s)

    if len(s) > max_length:
        s = s[:max_length]

    return s


def rate_limit_exceeded_handler(e):
    """Custom handler for rate limit exceeded."""
    return jsonify({
        'error': 'Rate limit exceeded. Please wait before trying again.',
        'retry_after': e.description
    }), 429


def _fernet(secret_key: str) -> Fernet:
    # Derive a Fernet-compatible key from the secret
    key = base64.urlsafe_b64encode(hashlib.sha256(secret_key.encode()).digest())
    return Fernet(key)


def encrypt_value(value: str, secret_key: str) -> str:
    """Encrypt a value using Fernet symmetric encryption."""
    return _fernet(secret_key).encrypt(value.encode()).decode()


def decrypt_value(encrypted_value: str, secret_key: str) -> str:
    """Decrypt a value. Returns an empty string when the token is invalid."""
    try:
        return _fernet(secret_key).decrypt(encrypted_value.encode()).decode()
    except (InvalidToken, ValueError):
        return ""


class InputValidator:
    """Utility class for common input validations."""

    @staticmethod
    def username(value: str) -> tuple[bool, str]:
        """Validate a login name before it is sent upstream."""
        if not value:
            return False, "Username is required."
        value = value.strip()
        if len(value) > 100:
            return False, "Username must be less than 100 characters."
        return True, value

    @staticmethod
    def password(value: str) -> tuple[bool, str]:
        if not value:
            return False, "Password is required."
        if len(value) > 256:
            return False, "Password must be less than 256 characters."
        return True, value

    @staticmethod
    def integer(value, min_val: int = None, max_val: int = None, field_name: str = "Value") -> tuple[bool, int, str]:
        """Validate and convert to integer."""
        try:
            int_val = int(value)
            if min_val is not None and int_val < min_val:
                return False, 0, f"{field_name} must be at least {min_val}."
            if max_val is not None and int_val > max_val:
                return False, 0, f"{field_name} must be at most {max_val}."
            return True, int_val, ""
        except (ValueError, TypeError):
            return False, 0, f"{field_name} must be a number."

    @staticmethod
    def id_list(value, field_name: str = "IDs") -> tuple[bool, list, str]:
        """Accept a single id or a list of ids, returned as a list of strings."""
        if value is None or value == '' or value == []:
            return False, [], f"{field_name} are required."
        if not isinstance(value, list):
            value = [value]
        ids = [str(v).strip() for v in value if str(v).strip()]
        if not ids:
            return False, [], f"{field_name} are required."
        return True, ids, ""


def json_body() -> dict:
    """The request's JSON object, or an empty dict for missing/invalid bodies."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}
