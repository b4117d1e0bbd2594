"""Credential extraction and the passthrough/override key policy."""

from __future__ import annotations

import hmac
import logging
from typing import Mapping

from .config import GatewayConfig
from .errors import UnauthorizedFault

LOG = logging.getLogger(__name__)


def extract_bearer_token(authorization: str | None) -> str | None:
    """Extract bearer token from an Authorization header value if present."""
    if not authorization:
        return None
    parts = authorization.strip().split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, token = parts[0].lower(), parts[1].strip()
    if scheme != "bearer" or not token:
        return None
    return token


def extract_api_key(headers: Mapping[str, str], query: Mapping[str, str] | None = None) -> str | None:
    """Find the client key in Authorization, X-API-Key or the api_key query parameter."""
    token = extract_bearer_token(headers.get("authorization"))
    if token:
        return token
    header_key = (headers.get("x-api-key") or "").strip()
    if header_key:
        return header_key
    if query is not None:
        query_key = (query.get("api_key") or "").strip()
        if query_key:
            return query_key
    return None


def resolve_upstream_key(
    cfg: GatewayConfig,
    headers: Mapping[str, str],
    query: Mapping[str, str] | None = None,
    *,
    request_id: str | None = None,
) -> tuple[str, str]:
    """Authenticate the caller and return ``(client_key, upstream_key)``."""
    client_key = extract_api_key(headers, query)
    if not client_key:
        raise UnauthorizedFault(
            "API key is required. Provide it via the Authorization header.",
            code="missing_api_key",
            request_id=request_id,
        )
    if len(client_key) < cfg.min_api_key_length:
        raise UnauthorizedFault("Invalid API key format", code="invalid_api_key", request_id=request_id)

    if cfg.service_api_key and not hmac.compare_digest(client_key, cfg.service_api_key):
        LOG.info("gateway key rejected request_id=%s", request_id)
        raise UnauthorizedFault("Invalid API key", code="invalid_api_key", request_id=request_id)

    if cfg.auth_mode == "override":
        assert cfg.upstream_api_key is not None
        return client_key, cfg.upstream_api_key
    return client_key, client_key
