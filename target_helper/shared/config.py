# Configuration loader with environment variable support
# YAML file (config/<env>.yaml) for structure, environment for deployment secrets

import logging
import re
from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, Field, validator
from pydantic_settings import BaseSettings

from .models import TargetBaseModel

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse a duration such as "1h", "30m", "45s", "250ms" or a bare number.

    Bare numbers are seconds.

    Returns:
        Duration in seconds
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[(unit or "s").lower()]


class AppConfig(BaseModel):
    name: str = "target-helper"
    version: str = "1.4.0"


class OadaConfig(BaseModel):
    scheme: str = "https"
    concurrency: int = Field(default=1, gt=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    watch_poll_interval_seconds: float = Field(default=2.0, gt=0)
    watch_max_poll_failures: int = Field(default=10, gt=0)
    verify_tls: bool = True


class TimeoutsConfig(BaseModel):
    """Per job category timeouts, armed when target reports 'identifying'"""

    pdf: float = Field(default=3600.0)
    asn: float = Field(default=3600.0)

    @validator("pdf", "asn", pre=True)
    def parse_durations(cls, v):
        return parse_duration(v)


class SignerConfig(BaseModel):
    name: str = "Test signer"
    url: str = "https://oatscenter.org"


class SigningConfig(BaseModel):
    signature_type: str = "transcription"
    private_jwk: str = "./keys/private_key.jwk"
    signer: SignerConfig = Field(default_factory=SignerConfig)
    trusted_kids: List[str] = Field(default_factory=list)

    @validator("signature_type")
    def validate_signature_type(cls, v):
        if not v or not v.strip():
            raise ValueError("signature_type must not be empty")
        return v


class ReaperConfig(BaseModel):
    enabled: bool = True
    interval_seconds: float = Field(default=600.0, gt=0)


class MaskRule(BaseModel):
    """
    Field masking applied to share jobs for partners whose key contains
    partner_pattern.
    """

    partner_pattern: str
    keys_to_mask: List[str] = Field(default_factory=lambda: ["location"])
    generate_pdf_for: List[str] = Field(default_factory=list)


class SharingConfig(BaseModel):
    mask_rules: List[MaskRule] = Field(
        default_factory=lambda: [
            MaskRule(
                partner_pattern="REDDYRAW",
                keys_to_mask=["location"],
                generate_pdf_for=["fsqa-audits", "cois"],
            )
        ]
    )


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9464, gt=0)


class Config(TargetBaseModel):
    """Main configuration model"""

    app: AppConfig = Field(default_factory=AppConfig)
    oada: OadaConfig = Field(default_factory=OadaConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    signing: SigningConfig = Field(default_factory=SigningConfig)
    trading_partners_enabled: bool = True
    reaper: ReaperConfig = Field(default_factory=ReaperConfig)
    sharing: SharingConfig = Field(default_factory=SharingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


class Settings(BaseSettings):
    """Environment-based settings"""

    # Environment
    env: str = Field(default="development", alias="ENV")
    config_path: Optional[str] = Field(default=None, alias="CONFIG_PATH")

    # OADA connection
    oada_domain: str = Field(default="proxy", alias="DOMAIN")
    oada_token: str = Field(default="god-proxy", alias="TOKEN")

    # Overrides signing.private_jwk from the YAML file
    signing_private_jwk: Optional[str] = Field(
        default=None, alias="SIGNING_PRIVATE_JWK"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    @property
    def tokens(self) -> List[str]:
        # TOKEN may be a comma separated list
        return [t.strip() for t in self.oada_token.split(",") if t.strip()]

    @property
    def token(self) -> str:
        return self.tokens[0]

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra environment variables


def _resolve_config_path(settings: Settings) -> Path:
    if settings.config_path:
        return Path(settings.config_path)
    return Path(__file__).parent.parent.parent / "config" / f"{settings.env}.yaml"


def load_config() -> tuple[Config, Settings]:
    """
    Load configuration from YAML file and environment variables.

    Returns:
        tuple: (Config, Settings) - YAML config and environment settings

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    settings = Settings()
    config_path = _resolve_config_path(settings)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from: {config_path}")

    with open(config_path, "r") as f:
        config_dict = yaml.safe_load(f) or {}

    config = Config(**config_dict)
    if settings.signing_private_jwk:
        config.signing.private_jwk = settings.signing_private_jwk

    validate_config_at_startup(config, settings)

    return config, settings


def validate_config_at_startup(config: Config, settings: Settings) -> None:
    """
    Validate critical configuration at startup. Fail fast on invalid values.

    Raises:
        ValueError: If critical validation fails
    """
    logger.info(
        "Target helper configuration loaded: domain=%s concurrency=%s "
        "pdf_timeout=%ss asn_timeout=%ss signature_type=%s",
        settings.oada_domain,
        config.oada.concurrency,
        config.timeouts.pdf,
        config.timeouts.asn,
        config.signing.signature_type,
    )

    for name in ("pdf", "asn"):
        seconds = getattr(config.timeouts, name)
        if seconds <= 0:
            raise ValueError(f"timeouts.{name} must be positive, got {seconds}")

    if not settings.tokens:
        raise ValueError("TOKEN must provide at least one OADA token")

    if not config.signing.private_jwk:
        raise ValueError("signing.private_jwk is required")

    logger.info("Configuration validation successful")


# Global config instances (loaded once at startup)
_config: Optional[Config] = None
_settings: Optional[Settings] = None


def get_config() -> Config:
    """Get the global Config instance"""
    global _config
    if _config is None:
        _config, _ = load_config()
    return _config


def get_settings() -> Settings:
    """Get the global Settings instance"""
    global _settings
    if _settings is None:
        _, _settings = load_config()
    return _settings


def init_config() -> tuple[Config, Settings]:
    """Initialize and cache global config instances"""
    global _config, _settings
    _config, _settings = load_config()
    return _config, _settings


def reload_config() -> tuple[Config, Settings]:
    """Force reload of config/settings from disk and environment."""
    global _config, _settings
    _config, _settings = load_config()
    return _config, _settings
