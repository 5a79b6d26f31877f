"""Config management for tasks-oauth-proxy."""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


CONFIG_DIR = Path.home() / ".tasks-oauth-proxy"
TOKEN_STORE_FILE = CONFIG_DIR / "tokens.json"
DEFAULT_SCOPES = "https://www.googleapis.com/auth/tasks"


class ConfigError(Exception):
    """Required settings are missing."""


def load_env() -> None:
    """Load .env (local override) or the bundled .env.public defaults."""
    env_file = Path(".env")
    if env_file.exists():
        load_dotenv(env_file)
        return
    public_env = Path(__file__).parent / ".env.public"
    if public_env.exists():
        load_dotenv(public_env)


class Config:
    """Configuration container."""

    def __init__(self, data: dict = None):
        self.data = data or {}

    @property
    def google_client_id(self) -> Optional[str]:
        return self.data.get("GOOGLE_CLIENT_ID") or None

    @property
    def google_client_secret(self) -> Optional[str]:
        return self.data.get("GOOGLE_CLIENT_SECRET") or None

    @property
    def google_refresh_token(self) -> Optional[str]:
        """Fallback credential for sessions that present no bearer token."""
        return self.data.get("GOOGLE_REFRESH_TOKEN") or None

    @property
    def server_url(self) -> str:
        return (self.data.get("OAUTH_SERVER_URL") or "").rstrip("/")

    @property
    def host(self) -> str:
        return self.data.get("HOST") or "0.0.0.0"

    @property
    def port(self) -> int:
        return int(self.data.get("PORT") or 21184)

    @property
    def enable_oauth(self) -> bool:
        return str(self.data.get("ENABLE_OAUTH", "true")).lower() == "true"

    @property
    def token_store_path(self) -> Path:
        path = self.data.get("TOKEN_STORE_PATH")
        return Path(path).expanduser() if path else TOKEN_STORE_FILE

    @property
    def scopes(self) -> list[str]:
        return (self.data.get("GOOGLE_SCOPES") or DEFAULT_SCOPES).split()

    @property
    def log_level(self) -> str:
        return (self.data.get("LOG_LEVEL") or "INFO").upper()

    @property
    def log_format(self) -> str:
        return (self.data.get("LOG_FORMAT") or "plain").lower()

    @property
    def supabase_url(self) -> Optional[str]:
        return self.data.get("SUPABASE_URL") or None

    @property
    def supabase_key(self) -> Optional[str]:
        return self.data.get("SUPABASE_KEY") or None

    def missing(self) -> list[str]:
        """Names of required settings that are not set."""
        required = ["GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET"]
        if self.enable_oauth:
            required.append("OAUTH_SERVER_URL")
        else:
            # without OAuth every session runs on the server's own credential
            required.append("GOOGLE_REFRESH_TOKEN")
        return [name for name in required if not self.data.get(name)]

    def validate(self) -> None:
        missing = self.missing()
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")


def load_config(env: dict = None) -> Config:
    """Build config from the environment (after loading .env files)."""
    if env is None:
        load_env()
        env = dict(os.environ)
    return Config(env)
