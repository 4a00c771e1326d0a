import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

def env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return int(v)

def env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v


def env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v.strip() == '':
        return default
    v = v.strip().lower()
    if v in ('1','true','yes','y','on'): return True
    if v in ('0','false','no','n','off'): return False
    return default


def env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def env_list(name: str, sep: str = "|") -> List[str]:
    v = os.getenv(name)
    if v is None:
        return []
    return [part.strip() for part in v.split(sep) if part.strip()]


DEFAULT_REDEEM_URL = "https://wos-giftcode.centurygame.com/"


class Settings(BaseModel):
    discord_token: str = ""
    command_prefix: str = "!"

    # Roster storage: Google Sheets when sheet_id is set, local JSON otherwise.
    sheet_id: str = ""
    google_service_account_file: str = ""
    google_client_email: str = ""
    google_private_key: str = ""
    roster_path: str = "roster.json"

    redeem_url: str = DEFAULT_REDEEM_URL
    headless: bool = True
    pool_capacity: int = Field(default=5, ge=1)
    batch_size: int = Field(default=0, ge=0)  # 0 = no batch barrier
    max_attempts: int = Field(default=5, ge=1)
    initial_delay_sec: float = Field(default=1.0, ge=0)
    login_timeout_ms: int = Field(default=5000, ge=1)
    navigation_timeout_ms: int = Field(default=30000, ge=1)
    abort_on_terminal: bool = False
    extra_terminal_phrases: List[str] = Field(default_factory=list)

    log_level: str = "INFO"
    log_file: str = "log.txt"  # empty disables file logging
    log_file_level: str = "DEBUG"
    log_max_bytes: int = Field(default=5_000_000, ge=0)
    log_backups: int = Field(default=2, ge=0)

    message_limit: int = Field(default=2000, ge=100)
    port: int = 8080
    keepalive_enabled: bool = True

    def private_key(self) -> Optional[str]:
        """Service account key with literal '\\n' sequences turned into newlines."""
        if not self.google_private_key:
            return None
        return self.google_private_key.replace("\\n", "\n")


def load_settings() -> Settings:
    """Build Settings from the environment (and .env)."""
    return Settings(
        discord_token=env_str("DISCORD_TOKEN", env_str("DISCORD_BOT_TOKEN", "")),
        command_prefix=env_str("COMMAND_PREFIX", "!"),
        sheet_id=env_str("SHEET_ID", ""),
        google_service_account_file=env_str("GOOGLE_SERVICE_ACCOUNT_FILE", ""),
        google_client_email=env_str("GOOGLE_CLIENT_EMAIL", ""),
        google_private_key=env_str("GOOGLE_PRIVATE_KEY", ""),
        roster_path=env_str("ROSTER_PATH", "roster.json"),
        redeem_url=env_str("REDEEM_URL", DEFAULT_REDEEM_URL),
        headless=env_bool("HEADLESS", True),
        pool_capacity=env_int("POOL_CAPACITY", 5),
        batch_size=env_int("BATCH_SIZE", 0),
        max_attempts=env_int("MAX_ATTEMPTS", 5),
        initial_delay_sec=env_float("INITIAL_DELAY_SEC", 1.0),
        login_timeout_ms=env_int("LOGIN_TIMEOUT_MS", 5000),
        navigation_timeout_ms=env_int("NAVIGATION_TIMEOUT_MS", 30000),
        abort_on_terminal=env_bool("ABORT_ON_TERMINAL", False),
        extra_terminal_phrases=env_list("EXTRA_TERMINAL_PHRASES"),
        log_level=env_str("LOG_LEVEL", "INFO").upper(),
        log_file=os.getenv("LOG_FILE", "log.txt").strip(),
        log_file_level=env_str("LOG_FILE_LEVEL", "DEBUG").upper(),
        log_max_bytes=env_int("LOG_MAX_BYTES", 5_000_000),
        log_backups=env_int("LOG_BACKUPS", 2),
        message_limit=env_int("MESSAGE_LIMIT", 2000),
        port=env_int("PORT", 8080),
        keepalive_enabled=env_bool("KEEPALIVE_ENABLED", True),
    )
