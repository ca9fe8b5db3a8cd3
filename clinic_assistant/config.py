"""Centralized configuration for the clinic assistant.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/clinic-assistant/<VARIABLE_NAME>``.

LLM API keys are *not* required at import time: the active provider and key
can be changed at runtime through the LLM settings endpoint, so they are
resolved lazily with :func:`optional_secret`.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))

_SSM_PREFIX = "/clinic-assistant"


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 - lazy import keeps boto3 out of the test path

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"{_SSM_PREFIX}/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def optional_secret(name: str) -> str | None:
    """Return a config value from env-var or SSM, or ``None``."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = optional_secret(name)
    if value:
        return value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store {_SSM_PREFIX}/{name} (AWS)."
    )


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


# ── Clinic CRM ──────────────────────────────────────────────────────
CRM_AUTH_TOKEN: str = _require_env("CRM_AUTH_TOKEN")
CRM_BASE_URL: str = os.getenv("CRM_BASE_URL", "https://pmsapi.healthlantern.com/api")
CRM_TREATMENTS_KEY: str = os.getenv("CRM_TREATMENTS_KEY", "1a26495729bbc804007b72e98803cab4")
CRM_CLINIC_KEY: str = os.getenv("CRM_CLINIC_KEY", "c9ab83f09006371cb3f745a03b1f8c64")
CRM_TIMEOUT_SECONDS: float = _float_env("CRM_TIMEOUT_SECONDS", 15.0)
CRM_APP_SOURCE: str = os.getenv("CRM_APP_SOURCE", "https://www.healthlantern.com")

# ── Clinic facts used in fallback replies ───────────────────────────
CLINIC_NAME: str = os.getenv("CLINIC_NAME", "Citrine Clinic")
CLINIC_PHONE: str = os.getenv("CLINIC_PHONE", "9654122458")
CLINIC_SITE_URL: str = os.getenv("CLINIC_SITE_URL", "https://www.citrineclinic.com/")

# ── Web content (Tavily) ────────────────────────────────────────────
TAVILY_BASE_URL: str = "https://api.tavily.com"
TAVILY_TIMEOUT_SECONDS: float = _float_env("TAVILY_TIMEOUT_SECONDS", 20.0)

# ── LLM defaults (overridable at runtime) ───────────────────────────
LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "mistral")
LLM_MODEL: str | None = os.getenv("LLM_MODEL") or None

# ── Engine tuning ───────────────────────────────────────────────────
CONTENT_CACHE_TTL_SECONDS: float = _float_env("CONTENT_CACHE_TTL_SECONDS", 300.0)
CONTEXT_BUDGET_CHARS: int = int(_float_env("CONTEXT_BUDGET_CHARS", 50_000))
STREAM_CHUNK_DELAY_SECONDS: float = _float_env("STREAM_CHUNK_DELAY_SECONDS", 0.05)

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
