"""Authentication simulation for OpenAPI security schemes.

Requirements are evaluated as OR-of-AND: the request passes as soon as one
alternative has every one of its schemes satisfied. Credentials are only
checked for shape; nothing is verified cryptographically.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from typing import Any, Iterable, Mapping

import structlog
from pydantic import TypeAdapter, ValidationError

from .models import (
    ApiKeyScheme,
    AuthRequest,
    AuthResult,
    ErrorResponse,
    HttpScheme,
    OAuth2Scheme,
    OpenIdConnectScheme,
    SecurityScheme,
)

LOGGER = structlog.get_logger("openapi_mock.auth")

REALM = "Mock API Server"
API_KEY_LOCATIONS = ("header", "query", "cookie")
DIGEST_REQUIRED_FIELDS = ("username", "realm", "nonce", "response")

_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")
_DIGEST_FIELD_PATTERN = re.compile(r'(\w+)\s*=\s*(?:"([^"]*)"|([^,\s]*))')
_SCHEME_ADAPTER: TypeAdapter[Any] = TypeAdapter(SecurityScheme)


def _first(value: Any) -> str | None:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None:
        return None
    return str(value)


def _lookup(values: Mapping[str, Any], name: str, *, case_insensitive: bool = False) -> str | None:
    if not case_insensitive:
        return _first(values.get(name))
    lowered = name.lower()
    for key, value in values.items():
        if key.lower() == lowered:
            return _first(value)
    return None


def _split_authorization(header: str) -> tuple[str, str]:
    scheme_word, _, credentials = header.strip().partition(" ")
    return scheme_word, credentials.strip()


def _is_jwt_shaped(token: str) -> bool:
    return len(token.split(".")) == 3


def _jwt_scopes(token: str) -> set[str] | None:
    """Return the unverified ``scope``/``scp`` claim of a JWT-shaped token, if any."""

    if not _is_jwt_shaped(token):
        return None
    payload = token.split(".")[1]
    try:
        decoded = base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4))
        claims = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, ValueError):
        return None
    if not isinstance(claims, dict):
        return None
    raw = claims.get("scope", claims.get("scp"))
    if isinstance(raw, str):
        return set(raw.split())
    if isinstance(raw, list):
        return {str(item) for item in raw}
    return None


class AuthenticationHandler:
    """Validates requests against ``security`` requirements and schemes."""

    def validate_auth(
        self,
        request: AuthRequest,
        security_requirements: Iterable[Mapping[str, Iterable[str]]] | None,
        security_schemes: Mapping[str, Any] | None,
    ) -> AuthResult:
        requirements = list(security_requirements or [])
        if not requirements:
            return AuthResult.ok()

        schemes = security_schemes or {}
        last_failure: AuthResult | None = None
        for requirement in requirements:
            result = self._validate_requirement(request, requirement, schemes)
            if result.valid:
                return result
            if result.status_code is not None and result.status_code >= 500:
                LOGGER.warning("auth_configuration_invalid", scheme=result.scheme_name, reason=result.error)
                return result
            last_failure = result

        LOGGER.debug("auth_rejected", alternatives=len(requirements), reason=last_failure and last_failure.error)
        return last_failure or AuthResult.fail("Authentication required")

    def _validate_requirement(
        self,
        request: AuthRequest,
        requirement: Mapping[str, Iterable[str]],
        schemes: Mapping[str, Any],
    ) -> AuthResult:
        if not requirement:
            return AuthResult.ok()

        for scheme_name, scopes in requirement.items():
            raw_scheme = schemes.get(scheme_name)
            if raw_scheme is None:
                return AuthResult.fail(f"Unknown security scheme: {scheme_name}", 500)

            scheme = self.parse_scheme(raw_scheme)
            if isinstance(scheme, AuthResult):
                scheme.scheme_name = scheme_name
                return scheme

            result = self._validate_scheme(request, scheme, list(scopes or []))
            result.scheme = scheme
            result.scheme_name = scheme_name
            if not result.valid:
                return result

        return AuthResult.ok()

    @staticmethod
    def parse_scheme(raw: Any) -> SecurityScheme | AuthResult:
        """Turn a raw scheme mapping into a typed variant, or a 500 result."""

        if isinstance(raw, (ApiKeyScheme, HttpScheme, OAuth2Scheme, OpenIdConnectScheme)):
            return raw
        if not isinstance(raw, Mapping):
            return AuthResult.fail("Invalid security scheme definition", 500)
        try:
            return _SCHEME_ADAPTER.validate_python(dict(raw))
        except ValidationError:
            return AuthResult.fail(f"Unsupported security scheme type: {raw.get('type')}", 500)

    def _validate_scheme(self, request: AuthRequest, scheme: SecurityScheme, scopes: list[str]) -> AuthResult:
        if isinstance(scheme, ApiKeyScheme):
            return self._validate_api_key(request, scheme)
        if isinstance(scheme, HttpScheme):
            return self._validate_http(request, scheme)
        if isinstance(scheme, OAuth2Scheme):
            return self._validate_oauth2(request, scopes)
        if isinstance(scheme, OpenIdConnectScheme):
            return self._validate_openid_connect(request, scopes)
        return AuthResult.fail(f"Unsupported security scheme type: {getattr(scheme, 'type', None)}", 500)

    def _validate_api_key(self, request: AuthRequest, scheme: ApiKeyScheme) -> AuthResult:
        if not scheme.name or not scheme.location:
            return AuthResult.fail("Invalid API key scheme configuration", 500)

        if scheme.location == "header":
            api_key = _lookup(request.headers, scheme.name, case_insensitive=True)
        elif scheme.location == "query":
            api_key = _lookup(request.query, scheme.name)
        elif scheme.location == "cookie":
            api_key = _lookup(request.cookies, scheme.name)
        else:
            return AuthResult.fail(f"Invalid API key location: {scheme.location}", 500)

        if not api_key or not api_key.strip():
            return AuthResult.fail(f"Missing API key in {scheme.location}: {scheme.name}")
        return AuthResult.ok()

    def _validate_http(self, request: AuthRequest, scheme: HttpScheme) -> AuthResult:
        if not scheme.scheme:
            return AuthResult.fail("Invalid HTTP scheme configuration", 500)

        header = _lookup(request.headers, "authorization", case_insensitive=True)
        if not header or not header.strip():
            return AuthResult.fail("Missing Authorization header")

        declared = scheme.scheme.lower()
        if declared == "basic":
            return self._validate_basic(header)
        if declared == "bearer":
            return self._validate_bearer(header, scheme.bearer_format)
        if declared == "digest":
            return self._validate_digest(header)

        scheme_word, credentials = _split_authorization(header)
        if scheme_word.lower() != declared:
            return AuthResult.fail(f"Invalid authentication scheme. Expected: {scheme.scheme}")
        if not credentials:
            return AuthResult.fail("Missing credentials")
        return AuthResult.ok()

    @staticmethod
    def _validate_basic(header: str) -> AuthResult:
        scheme_word, credentials = _split_authorization(header)
        if scheme_word.lower() != "basic":
            return AuthResult.fail("Invalid Basic authentication format")
        if not credentials:
            return AuthResult.fail("Missing Basic authentication credentials")
        if not _BASE64_PATTERN.match(credentials):
            return AuthResult.fail("Invalid Basic authentication encoding")
        try:
            decoded = base64.b64decode(credentials, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return AuthResult.fail("Invalid Basic authentication encoding")

        username, colon, password = decoded.partition(":")
        if not colon:
            return AuthResult.fail("Invalid Basic authentication format")
        if not username or not password:
            return AuthResult.fail("Username and password required")
        return AuthResult.ok()

    @staticmethod
    def _validate_bearer(header: str, bearer_format: str | None) -> AuthResult:
        scheme_word, token = _split_authorization(header)
        if scheme_word.lower() != "bearer":
            return AuthResult.fail("Invalid Bearer token format")
        if not token:
            return AuthResult.fail("Missing Bearer token")
        if bearer_format and bearer_format.upper() == "JWT" and not _is_jwt_shaped(token):
            return AuthResult.fail("Invalid JWT token format")
        return AuthResult.ok()

    @staticmethod
    def _validate_digest(header: str) -> AuthResult:
        scheme_word, credentials = _split_authorization(header)
        if scheme_word.lower() != "digest":
            return AuthResult.fail("Invalid Digest authentication format")
        if not credentials:
            return AuthResult.fail("Missing Digest authentication credentials")

        fields = {
            match.group(1).lower(): match.group(2) if match.group(2) is not None else match.group(3)
            for match in _DIGEST_FIELD_PATTERN.finditer(credentials)
        }
        if not all(fields.get(name) for name in DIGEST_REQUIRED_FIELDS):
            return AuthResult.fail("Invalid Digest authentication format")
        return AuthResult.ok()

    def _validate_oauth2(self, request: AuthRequest, scopes: list[str]) -> AuthResult:
        header = _lookup(request.headers, "authorization", case_insensitive=True)
        if not header or not header.strip():
            return AuthResult.fail("Missing Authorization header for OAuth2")
        scheme_word, token = _split_authorization(header)
        if scheme_word.lower() != "bearer":
            return AuthResult.fail("OAuth2 requires Bearer token")
        if not token:
            return AuthResult.fail("Missing OAuth2 access token")
        return self._check_scopes(token, scopes)

    def _validate_openid_connect(self, request: AuthRequest, scopes: list[str]) -> AuthResult:
        header = _lookup(request.headers, "authorization", case_insensitive=True)
        if not header or not header.strip():
            return AuthResult.fail("Missing Authorization header for OpenID Connect")
        scheme_word, token = _split_authorization(header)
        if scheme_word.lower() != "bearer":
            return AuthResult.fail("OpenID Connect requires Bearer token")
        if not token:
            return AuthResult.fail("Missing OpenID Connect ID token")
        if not _is_jwt_shaped(token):
            return AuthResult.fail("Invalid OpenID Connect ID token format")
        return self._check_scopes(token, scopes)

    @staticmethod
    def _check_scopes(token: str, required: list[str]) -> AuthResult:
        # Opaque tokens or tokens without a scope claim are accepted as-is.
        granted = _jwt_scopes(token)
        if not required or granted is None:
            return AuthResult.ok()
        missing = [scope for scope in required if scope not in granted]
        if missing:
            result = AuthResult.fail(f"Insufficient scope: {', '.join(missing)}", 403)
            result.required_scopes = list(required)
            return result
        return AuthResult.ok()

    def generate_auth_error(self, scheme: Any) -> ErrorResponse:
        """Build the 401 response for a failed scheme."""

        parsed = self.parse_scheme(scheme) if scheme is not None else None
        challenge: str | None = None

        if isinstance(parsed, ApiKeyScheme):
            body = {
                "error": "Unauthorized",
                "message": f"Missing or invalid API key in {parsed.location}: {parsed.name}",
                "code": "INVALID_API_KEY",
            }
        elif isinstance(parsed, HttpScheme):
            declared = (parsed.scheme or "").lower()
            if declared == "basic":
                challenge = f'Basic realm="{REALM}"'
                body = {
                    "error": "Unauthorized",
                    "message": "Invalid or missing Basic authentication credentials",
                    "code": "INVALID_BASIC_AUTH",
                }
            elif declared == "bearer":
                challenge = f'Bearer realm="{REALM}"'
                if parsed.bearer_format:
                    challenge += f', bearer_format="{parsed.bearer_format}"'
                body = {
                    "error": "Unauthorized",
                    "message": "Invalid or missing Bearer token",
                    "code": "INVALID_BEARER_TOKEN",
                }
            elif declared == "digest":
                challenge = f'Digest realm="{REALM}", nonce="mock-nonce", algorithm=MD5, qop="auth"'
                body = {
                    "error": "Unauthorized",
                    "message": "Invalid or missing Digest authentication credentials",
                    "code": "INVALID_DIGEST_AUTH",
                }
            else:
                body = {
                    "error": "Unauthorized",
                    "message": f"Invalid or missing {parsed.scheme} authentication",
                    "code": "INVALID_HTTP_AUTH",
                }
        elif isinstance(parsed, OAuth2Scheme):
            challenge = f'Bearer realm="{REALM}", error="invalid_token"'
            body = {
                "error": "invalid_token",
                "message": "The access token provided is expired, revoked, malformed, or invalid",
                "error_description": "The access token provided is expired, revoked, malformed, or invalid",
                "code": "INVALID_OAUTH2_TOKEN",
            }
        elif isinstance(parsed, OpenIdConnectScheme):
            body = {
                "error": "invalid_token",
                "message": "The ID token provided is expired, revoked, malformed, or invalid",
                "error_description": "The ID token provided is expired, revoked, malformed, or invalid",
                "code": "INVALID_OIDC_TOKEN",
            }
        else:
            body = {
                "error": "Unauthorized",
                "message": "Authentication required",
                "code": "AUTHENTICATION_REQUIRED",
            }

        headers = {"WWW-Authenticate": challenge} if challenge else None
        return ErrorResponse(status_code=401, body=body, headers=headers)

    @staticmethod
    def generate_forbidden_error(scheme: Any, required_scopes: list[str] | None = None) -> ErrorResponse:
        body: dict[str, Any] = {
            "error": "Forbidden",
            "message": "Insufficient permissions to access this resource",
            "code": "INSUFFICIENT_PERMISSIONS",
        }
        if required_scopes:
            body["required_scopes"] = list(required_scopes)
        return ErrorResponse(status_code=403, body=body)

    def build_failure_response(self, result: AuthResult) -> ErrorResponse:
        """Translate a failed validation into the HTTP response the listener writes."""

        if result.status_code == 403:
            return self.generate_forbidden_error(result.scheme, result.required_scopes)
        if result.status_code is not None and result.status_code >= 500:
            return ErrorResponse(
                status_code=result.status_code,
                body={"error": "Internal Server Error", "message": result.error, "code": "AUTH_CONFIGURATION_ERROR"},
            )
        response = self.generate_auth_error(result.scheme)
        response.body["details"] = result.error
        return response
