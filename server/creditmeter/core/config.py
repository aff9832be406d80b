from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

# Upper bound for any reservation hold, whatever the environment asks for.
MAX_RESERVATION_TTL_SECONDS = 7 * 86_400


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


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {raw!r}")


def _env_path(name: str) -> Path | None:
    raw = _env_str(name, "")
    return Path(raw) if raw else None


@dataclass(frozen=True)
class Settings:
    db_url: str
    log_level: str
    api_token: str
    public_origin: str

    reservation_ttl_seconds: int
    reservation_max_ttl_seconds: int
    sweep_interval_seconds: int
    overrun_allowance_credits: int
    overrun_allowance_pct: float
    write_retry_attempts: int
    write_retry_base_seconds: float

    pricing_file: Path | None
    default_overage_rate: str
    billing_currency: str
    billing_period_days: int

    invoicing_enabled: bool
    stripe_secret_key: str
    invoice_retry_interval_seconds: int
    invoice_max_attempts: int

    notifications_enabled: bool
    mailgun_api_key: str
    mailgun_domain: str
    mailgun_sender: str
    mailgun_base_url: str
    api_timeout_seconds: float

    worker_poll_seconds: float
    rollover_interval_seconds: int

    @classmethod
    def from_env(cls) -> "Settings":
        db_url = _env_str("CREDITMETER_DB_URL", "sqlite:///./data/creditmeter.db")
        log_level = _env_str("CREDITMETER_LOG_LEVEL", "INFO")
        api_token = _env_str("CREDITMETER_API_TOKEN", "")
        public_origin = _env_str("CREDITMETER_PUBLIC_ORIGIN", "")

        reservation_ttl_seconds = _env_int("CREDITMETER_RESERVATION_TTL_SECONDS", 300, min_value=5, max_value=86_400)
        reservation_max_ttl_seconds = _env_int(
            "CREDITMETER_RESERVATION_MAX_TTL_SECONDS", 86_400, min_value=5, max_value=MAX_RESERVATION_TTL_SECONDS
        )
        sweep_interval_seconds = _env_int("CREDITMETER_SWEEP_INTERVAL_SECONDS", 30, min_value=1, max_value=3600)
        overrun_allowance_credits = _env_int("CREDITMETER_OVERRUN_ALLOWANCE_CREDITS", 0, min_value=0, max_value=1_000_000)
        overrun_allowance_pct = _env_float("CREDITMETER_OVERRUN_ALLOWANCE_PCT", 0.0, min_value=0.0, max_value=100.0)
        write_retry_attempts = _env_int("CREDITMETER_WRITE_RETRY_ATTEMPTS", 8, min_value=1, max_value=50)
        write_retry_base_seconds = _env_float("CREDITMETER_WRITE_RETRY_BASE_SECONDS", 0.02, min_value=0.0, max_value=5.0)

        pricing_file = _env_path("CREDITMETER_PRICING_FILE")
        default_overage_rate = _env_str("CREDITMETER_DEFAULT_OVERAGE_RATE", "0.01")
        try:
            float(default_overage_rate)
        except ValueError as e:
            raise ValueError(
                f"Invalid decimal value for CREDITMETER_DEFAULT_OVERAGE_RATE: {default_overage_rate!r}"
            ) from e
        billing_currency = _env_str("CREDITMETER_BILLING_CURRENCY", "usd").lower()
        billing_period_days = _env_int("CREDITMETER_BILLING_PERIOD_DAYS", 30, min_value=1, max_value=366)

        invoicing_enabled = _env_bool("CREDITMETER_INVOICING_ENABLED", False)
        stripe_secret_key = _env_str("STRIPE_SECRET_KEY", "")
        invoice_retry_interval_seconds = _env_int(
            "CREDITMETER_INVOICE_RETRY_INTERVAL_SECONDS", 300, min_value=5, max_value=86_400
        )
        invoice_max_attempts = _env_int("CREDITMETER_INVOICE_MAX_ATTEMPTS", 10, min_value=1, max_value=100)

        notifications_enabled = _env_bool("CREDITMETER_NOTIFICATIONS_ENABLED", False)
        mailgun_api_key = _env_str("CREDITMETER_MAILGUN_API_KEY", "")
        mailgun_domain = _env_str("CREDITMETER_MAILGUN_DOMAIN", "")
        mailgun_sender = _env_str("CREDITMETER_MAILGUN_SENDER", "")
        mailgun_base_url = _env_str("CREDITMETER_MAILGUN_BASE_URL", "https://api.mailgun.net/v3")
        api_timeout_seconds = _env_float("CREDITMETER_API_TIMEOUT_SECONDS", 20.0, min_value=2.0, max_value=120.0)

        worker_poll_seconds = _env_float("CREDITMETER_WORKER_POLL_SECONDS", 1.5, min_value=0.1, max_value=60.0)
        rollover_interval_seconds = _env_int("CREDITMETER_ROLLOVER_INTERVAL_SECONDS", 300, min_value=5, max_value=86_400)

        if reservation_ttl_seconds > reservation_max_ttl_seconds:
            raise ValueError(
                "CREDITMETER_RESERVATION_TTL_SECONDS must not exceed CREDITMETER_RESERVATION_MAX_TTL_SECONDS."
            )
        if invoicing_enabled and not stripe_secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required when CREDITMETER_INVOICING_ENABLED is on.")

        return cls(
            db_url=db_url,
            log_level=log_level,
            api_token=api_token,
            public_origin=public_origin,
            reservation_ttl_seconds=reservation_ttl_seconds,
            reservation_max_ttl_seconds=reservation_max_ttl_seconds,
            sweep_interval_seconds=sweep_interval_seconds,
            overrun_allowance_credits=overrun_allowance_credits,
            overrun_allowance_pct=overrun_allowance_pct,
            write_retry_attempts=write_retry_attempts,
            write_retry_base_seconds=write_retry_base_seconds,
            pricing_file=pricing_file,
            default_overage_rate=default_overage_rate,
            billing_currency=billing_currency,
            billing_period_days=billing_period_days,
            invoicing_enabled=invoicing_enabled,
            stripe_secret_key=stripe_secret_key,
            invoice_retry_interval_seconds=invoice_retry_interval_seconds,
            invoice_max_attempts=invoice_max_attempts,
            notifications_enabled=notifications_enabled,
            mailgun_api_key=mailgun_api_key,
            mailgun_domain=mailgun_domain,
            mailgun_sender=mailgun_sender,
            mailgun_base_url=mailgun_base_url,
            api_timeout_seconds=api_timeout_seconds,
            worker_poll_seconds=worker_poll_seconds,
            rollover_interval_seconds=rollover_interval_seconds,
        )
