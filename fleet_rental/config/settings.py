from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def find_env_file() -> str:
    env_file = ".env" if Path("/.dockerenv").exists() else ".env.local"

    current_path = Path.cwd()

    for path in [current_path] + list(current_path.parents):
        env_path = path / env_file
        if env_path.exists():
            return str(env_path)

    return env_file


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=find_env_file(),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = "postgresql+psycopg2://app:app@db:5432/rental"
    create_schema: bool = False  # create tables on startup (dev/test only)

    # External services
    directory_base: str = "http://fleet-directory:3629"
    storage_base: str = "http://object-storage:3630"
    http_timeout_sec: float = 1.5

    # Circuit Breaker settings
    cb_directory_fail_max: int = 5
    cb_directory_reset_timeout: int = 30  # seconds
    cb_storage_fail_max: int = 3
    cb_storage_reset_timeout: int = 60  # seconds

    # Fee policies cache
    fee_policy_ttl_sec: int = 600  # 10 minutes

    # Handover rules
    min_pickup_photos: int = 3
    min_reject_reason_len: int = 5
    min_return_photos: int = 1

    # Default fee policy (used when the policy service is unreachable)
    late_grace_min: int = 0
    late_fee_unit_min: int = 60
    late_fee_multiplier: float = 1.0
    recharge_fee_per_percent: int = 0

    # Pricing
    tax_rate: float = 0.0  # fraction of base + insurance

    # Settlement
    allow_partial_cash: bool = True

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
