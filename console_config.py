"""
Pricing console configuration.

Values come from the environment (optionally a .env file). Everything that
needs configuration takes a ConsoleConfig explicitly so tests can pin values
without touching process-wide state.
"""
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from pricing_engine import ENGINE_VERSION
from pricing_validation import DEFAULT_POLICY, ValidationPolicy

CONSOLE_VERSION = "1.1.0"


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_string(name) or default)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env_string(name) or default)
    except ValueError:
        return default


@dataclass(frozen=True)
class ConsoleConfig:
    engine_version: str = ENGINE_VERSION
    console_version: str = CONSOLE_VERSION

    erp_url: Optional[str] = None
    erp_api_key: Optional[str] = None
    erp_api_secret: Optional[str] = None
    request_timeout: float = 30.0
    probe_timeout: float = 5.0
    warehouse: str = "Stores"
    selling_price_list: str = "Standard Selling"
    buying_price_list: str = "Standard Buying"
    gst_field: str = "gst_rate"

    snapshot_source: str = "fixture"
    fixture_path: str = "fixtures/console_items.json"
    data_dir: str = "data"
    pull_cooldown_minutes: int = 5
    batch_url: Optional[str] = None

    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    notify_in_background: bool = False

    policy: ValidationPolicy = field(default_factory=lambda: DEFAULT_POLICY)
    log_level: str = "INFO"

    @property
    def erp_configured(self) -> bool:
        return bool(self.erp_url and self.erp_api_key and self.erp_api_secret)

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "ConsoleConfig":
        if dotenv:
            load_dotenv()
        erp_url = _env_string("ERPNEXT_URL")
        policy = ValidationPolicy(
            jump_warn=_env_float("CONSOLE_JUMP_WARN_PCT", DEFAULT_POLICY.jump_warn),
            jump_block=_env_float("CONSOLE_JUMP_BLOCK_PCT", DEFAULT_POLICY.jump_block),
            low_margin_warn=_env_float("CONSOLE_LOW_MARGIN_PCT", DEFAULT_POLICY.low_margin_warn),
            high_margin_warn=_env_float("CONSOLE_HIGH_MARGIN_PCT", DEFAULT_POLICY.high_margin_warn),
            max_margin=_env_float("CONSOLE_MAX_MARGIN_PCT", DEFAULT_POLICY.max_margin),
        )
        return cls(
            erp_url=erp_url.rstrip("/") if erp_url else None,
            erp_api_key=_env_string("ERPNEXT_API_KEY"),
            erp_api_secret=_env_string("ERPNEXT_API_SECRET"),
            request_timeout=_env_float("CONSOLE_REQUEST_TIMEOUT", 30.0),
            probe_timeout=_env_float("CONSOLE_PROBE_TIMEOUT", 5.0),
            warehouse=_env_string("CONSOLE_WAREHOUSE", "Stores"),
            selling_price_list=_env_string("CONSOLE_SELLING_PRICE_LIST", "Standard Selling"),
            buying_price_list=_env_string("CONSOLE_BUYING_PRICE_LIST", "Standard Buying"),
            gst_field=_env_string("CONSOLE_GST_FIELD", "gst_rate"),
            snapshot_source=(_env_string("CONSOLE_SNAPSHOT_SOURCE") or ("erp" if erp_url else "fixture")).lower(),
            fixture_path=_env_string("CONSOLE_FIXTURE_PATH", "fixtures/console_items.json"),
            data_dir=_env_string("CONSOLE_DATA_DIR", "data"),
            pull_cooldown_minutes=_env_int("CONSOLE_PULL_COOLDOWN_MINUTES", 5),
            batch_url=_env_string("CONSOLE_BATCH_URL"),
            telegram_token=_env_string("TELEGRAM_ALERT_BOT_TOKEN"),
            telegram_chat_id=_env_string("TELEGRAM_DELIVERY_CHAT_ID") or _env_string("TELEGRAM_CHAT_ID"),
            notify_in_background=_env_string("CONSOLE_NOTIFY_BACKGROUND", "1") == "1",
            policy=policy,
            log_level=(_env_string("CONSOLE_LOG_LEVEL") or "INFO").upper(),
        )
