from pathlib import Path
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _normalize_base_url(v: str, field: str) -> str:
    """
    Base URLs must be absolute http(s) URLs.

    Normalization:
      - strip whitespace
      - strip trailing slash
      - require http/https
      - require hostname
      - lowercase hostname

    The path is preserved (a server may live under a prefix), query and
    fragment are dropped.
    """
    v = (v or "").strip().rstrip("/")
    p = urlparse(v)

    if p.scheme not in ("http", "https"):
        raise ValueError(f"{field} must start with http:// or https://")

    if not p.hostname:
        raise ValueError(f"{field} must include a hostname")

    netloc = p.hostname.lower()
    if p.port:
        netloc = f"{netloc}:{p.port}"

    return urlunparse((p.scheme, netloc, p.path.rstrip("/"), "", "", ""))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    HOST: str = "127.0.0.1"
    PORT: int = 8080
    LOG_LEVEL: str = "INFO"

    # issuer (this server), audience (resource server) and the relying client
    AUTHORIZATION_SERVER_BASE_URL: str = "http://127.0.0.1:8080"
    RESOURCE_SERVER_BASE_URL: str = "http://127.0.0.1:8081"
    CLIENT_BASE_URL: str = "http://127.0.0.1:3000"

    # signal-cli REST API (https://github.com/bbernhard/signal-cli-rest-api)
    SIGNAL_SERVICE_BASE_URL: str = "http://127.0.0.1:8082"
    SIGNAL_TIMEOUT_SECONDS: float = 10.0
    FROM_NUMBER: str = ""
    DEVICE_NAME: str = "signal-auth"

    CHALLENGE_CODE_LENGTH: int = 6
    CHALLENGE_TTL_SECONDS: int = 300
    ACCESS_TOKEN_TTL_SECONDS: int = 4 * 3600

    # only disable for plain-http local development
    COOKIE_SECURE: bool = True

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: Path = Path(__file__).resolve().parent.parent / "audit"

    @field_validator(
        "AUTHORIZATION_SERVER_BASE_URL",
        "RESOURCE_SERVER_BASE_URL",
        "CLIENT_BASE_URL",
        "SIGNAL_SERVICE_BASE_URL",
    )
    @classmethod
    def normalize_base_url(cls, v: str, info) -> str:
        return _normalize_base_url(v, info.field_name)

    @field_validator("CHALLENGE_CODE_LENGTH")
    @classmethod
    def check_code_length(cls, v: int) -> int:
        if not 4 <= v <= 12:
            raise ValueError("CHALLENGE_CODE_LENGTH must be between 4 and 12")
        return v

    @field_validator("ACCESS_TOKEN_TTL_SECONDS", "CHALLENGE_TTL_SECONDS")
    @classmethod
    def check_positive_ttl(cls, v: int, info) -> int:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "").strip().upper() or "INFO"

    @property
    def issuer(self) -> str:
        return self.AUTHORIZATION_SERVER_BASE_URL

    @property
    def audience(self) -> str:
        return self.RESOURCE_SERVER_BASE_URL


settings = Settings()
