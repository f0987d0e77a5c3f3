import os
from dataclasses import dataclass, field
from typing import Optional


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: list[str]) -> list[str]:
    v = os.getenv(name)
    if not v:
        return list(default)
    return [item.strip() for item in v.split(",") if item.strip()]


def _get_database_url() -> str:
    return os.getenv("DATABASE_URL", "postgresql://spireapp@localhost/timetracking_main")


@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    database_url: str = "postgresql://spireapp@localhost/timetracking_main"

    time_entries_table: str = "time_entries_jobs"
    users_table: str = "time_entries_users"

    spire_base_url: str = "https://localhost:10880"
    spire_company: str = "inspirehealth"
    spire_auth: str = ""
    spire_timeout_seconds: float = 45.0
    spire_retries: int = 2
    spire_retry_delay_seconds: float = 2.0
    # Spire LAN installs commonly ship self-signed certificates.
    spire_verify_tls: bool = True

    # "open": allow the request on a valid token when the user recheck cannot reach the DB.
    # "closed": answer 503 instead.
    auth_recheck_policy: str = "open"
    admin_api_key: Optional[str] = None

    allowed_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        policy = os.getenv("AUTH_RECHECK_POLICY", "open").strip().lower()
        if policy not in {"open", "closed"}:
            policy = "open"

        return cls(
            environment=os.getenv("ENV", "development").lower(),
            database_url=_get_database_url(),
            time_entries_table=os.getenv("TIME_ENTRIES_TABLE", "time_entries_jobs"),
            users_table=os.getenv("USERS_TABLE", "time_entries_users"),
            spire_base_url=os.getenv("SPIRE_BASE_URL", "https://localhost:10880").rstrip("/"),
            spire_company=os.getenv("SPIRE_COMPANY", "inspirehealth"),
            spire_auth=os.getenv("SPIRE_AUTH", ""),
            spire_timeout_seconds=_env_float("SPIRE_TIMEOUT_SECONDS", 45.0),
            spire_retries=_env_int("SPIRE_RETRIES", 2),
            spire_retry_delay_seconds=_env_float("SPIRE_RETRY_DELAY_SECONDS", 2.0),
            spire_verify_tls=_env_bool("SPIRE_VERIFY_TLS", True),
            auth_recheck_policy=policy,
            admin_api_key=os.getenv("ADMIN_API_KEY") or None,
            allowed_origins=_env_list("ALLOWED_ORIGINS", ["http://localhost:3000"]),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def is_dev(self) -> bool:
        return self.environment in {"dev", "development", "local", "test"}
