from __future__ import annotations

import base64
import json
import logging

import httpx
from supabase import Client, ClientOptions, create_client

from bundleflow.core.config import Settings
from bundleflow.core.errors import ERR_CONFIG_MISSING, ConfigurationError

logger = logging.getLogger(__name__)

_HTTPX_TIMEOUT = 120.0


def _build_supabase_http_client(timeout: float = _HTTPX_TIMEOUT) -> httpx.Client:
    """Return an httpx client configured for Supabase REST and storage calls."""
    return httpx.Client(timeout=httpx.Timeout(timeout))


def _client_options(timeout: float = _HTTPX_TIMEOUT) -> ClientOptions:
    options = ClientOptions()
    options.httpx_client = _build_supabase_http_client(timeout)
    return options


def _verify_service_role(jwt_token: str) -> None:
    try:
        segments = jwt_token.split(".")
        if len(segments) < 2:
            raise ValueError("missing JWT payload")
        payload_segment = segments[1]
        padding = "=" * (-len(payload_segment) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload_segment + padding))
    except (ValueError, TypeError) as exc:
        raise ConfigurationError("Invalid SUPABASE_SERVICE_ROLE_KEY JWT") from exc

    role = claims.get("role")
    if role != "service_role":
        raise ConfigurationError(f"Service role key has unexpected role: {role}")


def create_supabase_client(settings: Settings) -> Client:
    """Build a service-role Supabase client from the given settings."""
    url = (settings.SUPABASE_URL or "").strip()
    key = (settings.SUPABASE_SERVICE_ROLE_KEY or "").strip()
    missing = [
        name
        for name, value in {"SUPABASE_URL": url, "SUPABASE_SERVICE_ROLE_KEY": key}.items()
        if not value
    ]
    if missing:
        raise ConfigurationError(
            "Missing Supabase credential(s): " + ", ".join(missing),
            error_code=ERR_CONFIG_MISSING,
        )

    _verify_service_role(key)
    client = create_client(url, key, options=_client_options(float(settings.LONG_RUNNING_TIMEOUT)))
    logger.info("Initialized Supabase storage client for bucket '%s'", settings.STORAGE_BUCKET)
    return client
