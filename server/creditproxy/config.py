from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_DEFAULT_CREDIT_EXCEEDED_MESSAGE = (
    "Your monthly AI credits have been used up. "
    "They will be renewed in the next billing cycle."
)


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _env_int(name: str, default: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except Exception as e:
            raise ValueError(f"Invalid integer value for {name}: {raw!r}") from e
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value} (got {value})")
    if max_value is not None and value > max_value:
        raise ValueError(f"{name} must be <= {max_value} (got {value})")
    return value


def _env_float(name: str, default: float, *, min_value: float | None = None, max_value: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        value = float(default)
    else:
        try:
            value = float(raw)
        except Exception as e:
            raise ValueError(f"Invalid float value for {name}: {raw!r}") from e
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value} (got {value})")
    if max_value is not None and value > max_value:
        raise ValueError(f"{name} must be <= {max_value} (got {value})")
    return value


@dataclass(frozen=True)
class Settings:
    host: str
    port: int
    log_level: str
    max_body_mb: int

    user_id: str
    instance_id: str
    ai_provider: str
    ai_model: str

    ledger_backend: str
    supabase_url: str
    supabase_key: str
    db_url: str
    default_cap_cents: int
    ledger_timeout_seconds: float
    ledger_fail_open: bool
    ledger_cas_attempts: int

    upstream_connect_timeout_seconds: float
    pricing_file: Path | None
    credit_exceeded_message: str

    @classmethod
    def from_env(cls) -> "Settings":
        host = _env_str("CREDIT_PROXY_HOST", "127.0.0.1")
        port = _env_int("CREDIT_PROXY_PORT", 4100, min_value=1, max_value=65535)
        log_level = _env_str("CREDIT_PROXY_LOG_LEVEL", "INFO")
        max_body_mb = _env_int("CREDIT_PROXY_MAX_BODY_MB", 32, min_value=1, max_value=1024)

        user_id = _env_str("USER_ID", "")
        instance_id = _env_str("INSTANCE_ID", "")
        ai_provider = _env_str("AI_PROVIDER", "anthropic").lower()
        ai_model = _env_str("AI_MODEL", "anthropic/claude-opus-4-6")

        ledger_backend = _env_str("CREDIT_PROXY_LEDGER_BACKEND", "rest").lower()
        if ledger_backend not in {"rest", "sql"}:
            raise ValueError("CREDIT_PROXY_LEDGER_BACKEND must be 'rest' or 'sql'.")
        supabase_url = _env_str("SUPABASE_URL", "")
        supabase_key = _env_str("SUPABASE_SERVICE_ROLE_KEY", "")
        db_url = _env_str("CREDIT_PROXY_DB_URL", "sqlite:///./data/credit-proxy.db")
        default_cap_cents = _env_int("CREDIT_PROXY_DEFAULT_CAP_CENTS", 1500, min_value=1, max_value=10_000_000)
        ledger_timeout_seconds = _env_float(
            "CREDIT_PROXY_LEDGER_TIMEOUT_SECONDS", 5.0, min_value=0.1, max_value=120.0
        )
        ledger_fail_mode = _env_str("CREDIT_PROXY_LEDGER_FAIL_MODE", "open").lower()
        if ledger_fail_mode not in {"open", "closed"}:
            raise ValueError("CREDIT_PROXY_LEDGER_FAIL_MODE must be 'open' or 'closed'.")
        ledger_cas_attempts = _env_int("CREDIT_PROXY_LEDGER_CAS_ATTEMPTS", 5, min_value=1, max_value=50)

        upstream_connect_timeout_seconds = _env_float(
            "CREDIT_PROXY_UPSTREAM_CONNECT_TIMEOUT_SECONDS", 10.0, min_value=0.5, max_value=300.0
        )
        pricing_file_raw = _env_str("CREDIT_PROXY_PRICING_FILE", "")
        pricing_file = Path(pricing_file_raw) if pricing_file_raw else None
        credit_exceeded_message = _env_str(
            "CREDIT_PROXY_CREDIT_EXCEEDED_MESSAGE", _DEFAULT_CREDIT_EXCEEDED_MESSAGE
        )

        return cls(
            host=host,
            port=port,
            log_level=log_level,
            max_body_mb=max_body_mb,
            user_id=user_id,
            instance_id=instance_id,
            ai_provider=ai_provider,
            ai_model=ai_model,
            ledger_backend=ledger_backend,
            supabase_url=supabase_url,
            supabase_key=supabase_key,
            db_url=db_url,
            default_cap_cents=default_cap_cents,
            ledger_timeout_seconds=ledger_timeout_seconds,
            ledger_fail_open=ledger_fail_mode == "open",
            ledger_cas_attempts=ledger_cas_attempts,
            upstream_connect_timeout_seconds=upstream_connect_timeout_seconds,
            pricing_file=pricing_file,
            credit_exceeded_message=credit_exceeded_message,
        )
