"""Configuration service for the credit ledger.
Loads configuration from environment variables, AWS Secrets Manager, and a secrets file.
"""

import logging
import os
from pathlib import Path
from typing import Any, cast

import boto3
import yaml
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_TRUTHY = ("true", "1", "t", "yes")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in _TRUTHY


def _env_optional(name: str) -> str | None:
    value = os.getenv(name)
    return value if value not in (None, "") else None


class StripeSection(BaseModel):
    api_key: str = ""
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300


class CreditsSection(BaseModel):
    snapshot_max_age_seconds: int = 300
    cache_ttl_seconds: float = 5.0
    default_grant_days: int = 365
    default_extension_days: int = 180
    low_balance_thresholds: list[int] = Field(default_factory=lambda: [10, 5, 0])
    history_page_limit: int = 50
    export_row_limit: int = 5000
    webhook_timeout_seconds: float = 10.0


class SweeperSection(BaseModel):
    enabled: bool = True
    interval_seconds: int = 86400
    initial_delay_seconds: int = 60
    batch_size: int = 500


class AuthSection(BaseModel):
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_audience: str | None = "authenticated"
    admin_role: str = "admin"
    internal_api_token: str = ""


class FeatureFlags(BaseModel):
    credits_api: bool = True
    stripe_webhook: bool = True
    admin_api: bool = True


class ConfigService:
    """Service for loading and accessing application configuration.
    Combines environment variables, AWS Secrets Manager, and secrets from YAML file.
    """

    stripe: StripeSection
    credits: CreditsSection
    sweeper: SweeperSection
    auth: AuthSection
    features: FeatureFlags

    def __init__(self, overrides: dict[str, Any] | None = None) -> None:
        self._config: dict[str, Any] = {}
        self._secrets: dict[str, Any] = {}
        self._aws_secrets: dict[str, Any] = {}
        self._overrides: dict[str, Any] = dict(overrides or {})

        self._env = os.getenv("APP_ENV", "local")

        self._load_env_file()
        self._load_env_vars()
        self._load_aws_secrets()
        self._load_secrets()

        self.stripe = StripeSection(**self._section("stripe", StripeSection))
        self.credits = CreditsSection(**self._section("credits", CreditsSection))
        self.sweeper = SweeperSection(**self._section("sweeper", SweeperSection))
        self.auth = AuthSection(**self._section("auth", AuthSection))
        self.features = FeatureFlags(**self._section("features", FeatureFlags))

    def _section(self, prefix: str, model: type[BaseModel]) -> dict[str, Any]:
        """Collects ``prefix.<field>`` values that are set anywhere in the config chain."""
        values: dict[str, Any] = {}
        for field in model.model_fields:
            value = self.get(f"{prefix}.{field}")
            if value is not None:
                values[field] = value
        return values

    def _load_env_file(self) -> None:
        """Load the appropriate .env file based on environment"""
        base_dir = Path(__file__).resolve().parent.parent.parent

        env_files_to_try: list[Path] = []
        if self._env == "local":
            env_files_to_try.append(base_dir / ".env.local")
        else:
            env_files_to_try.append(base_dir / f".env.{self._env}")
        env_files_to_try.append(base_dir / ".env")

        for env_file in env_files_to_try:
            if env_file.exists():
                logger.info(f"Loading environment from {env_file}")
                _ = load_dotenv(env_file)
                return

        logger.debug("No environment file found. Using process environment only.")

    def _load_env_vars(self) -> None:
        """Load configuration from environment variables"""
        config: dict[str, Any] = {
            "app_env": self._env,
            "debug": _env_flag("DEBUG", "False"),
            "api_prefix": os.getenv("API_PREFIX", "/api/v1"),
            "project_name": os.getenv("PROJECT_NAME", "Credit Ledger"),
            "cors_origins": os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(","),
            "port": int(os.getenv("PORT", "8000")),
            "host": os.getenv("HOST", "0.0.0.0"),
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "stripe.api_key": _env_optional("STRIPE_SECRET_KEY"),
            "stripe.webhook_secret": _env_optional("STRIPE_WEBHOOK_SECRET"),
            "stripe.webhook_tolerance_seconds": _env_optional("STRIPE_WEBHOOK_TOLERANCE_SECONDS"),
            "auth.jwt_secret": _env_optional("AUTH_JWT_SECRET"),
            "auth.jwt_audience": _env_optional("AUTH_JWT_AUDIENCE"),
            "auth.internal_api_token": _env_optional("INTERNAL_API_TOKEN"),
            "credits.default_extension_days": _env_optional("CREDITS_DEFAULT_EXTENSION_DAYS"),
            "credits.webhook_timeout_seconds": _env_optional("CREDITS_WEBHOOK_TIMEOUT_SECONDS"),
            "sweeper.enabled": _env_optional("SWEEPER_ENABLED"),
            "sweeper.interval_seconds": _env_optional("SWEEPER_INTERVAL_SECONDS"),
            "features.credits_api": _env_optional("ENABLE_CREDITS_API"),
            "features.stripe_webhook": _env_optional("ENABLE_STRIPE_WEBHOOK"),
            "features.admin_api": _env_optional("ENABLE_ADMIN_API"),
        }
        # Unset variables fall through to the secrets sources
        self._config = {key: value for key, value in config.items() if value is not None}

    def _load_aws_secrets(self) -> None:
        """Load secrets from AWS Secrets Manager if configured"""
        if self._env in ("local", "test", "testing"):
            logger.debug(f"APP_ENV={self._env}. Skipping AWS Secrets Manager.")
            return

        if not _env_flag("USE_AWS_SECRET_MANAGER", "true"):
            logger.info("AWS Secrets Manager disabled (USE_AWS_SECRET_MANAGER=false).")
            return

        secret_name = os.getenv("AWS_SECRETS_MANAGER_SECRET_NAME") or f"{self._env}_credit_ledger"
        region_name = os.getenv("AWS_DEFAULT_REGION", "us-east-1")

        try:
            client = boto3.Session().client(service_name="secretsmanager", region_name=region_name)  # type: ignore[misc]
            logger.info(f"Loading secrets from AWS Secrets Manager: {secret_name}")
            response: dict[str, Any] = client.get_secret_value(SecretId=secret_name)  # type: ignore[assignment]
            secrets_data: Any = yaml.safe_load(cast(str, response["SecretString"]))
            self._aws_secrets = cast(dict[str, Any], secrets_data) if secrets_data else {}
            logger.info("Loaded secrets from AWS Secrets Manager")
        except ClientError as e:
            error_code = cast(dict[str, Any], e.response).get("Error", {}).get("Code", "Unknown")
            logger.exception(f"Error loading secret {secret_name} from AWS Secrets Manager ({error_code})")
        except BotoCoreError:
            logger.exception("AWS Secrets Manager is unreachable or credentials are missing.")
        except yaml.YAMLError:
            logger.exception("Failed to parse secrets from AWS Secrets Manager. Expected YAML format.")

    def _load_secrets(self) -> None:
        """Load secrets from YAML file"""
        base_dir = Path(__file__).resolve().parent.parent.parent
        secrets_files_to_try = [base_dir / f"secrets.{self._env}.yaml", base_dir / "secrets.yaml"]

        secrets_file = next((path for path in secrets_files_to_try if path.exists()), None)
        if secrets_file is None:
            logger.debug("No secrets file found. Using default values.")
            self._secrets = {}
            return

        try:
            with open(secrets_file) as f:
                self._secrets = yaml.safe_load(f) or {}
            logger.info(f"Loaded secrets from {secrets_file}")
        except (OSError, yaml.YAMLError):
            logger.exception(f"Error loading secrets file {secrets_file}")
            self._secrets = {}

    @staticmethod
    def _lookup(source: dict[str, Any], key: str) -> tuple[bool, Any]:
        if key in source:
            return True, source[key]
        value: Any = source
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = cast(Any, value[part])
            else:
                return False, None
        return True, value

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by key (dotted keys address nested secrets).
        Priority order:
        1. Explicit overrides
        2. Environment variables (from _config dict)
        3. AWS Secrets Manager
        4. Local secrets file
        5. Direct environment variable lookup (os.getenv)
        6. Default value
        """
        for source in (self._overrides, self._config, self._aws_secrets, self._secrets):
            found, value = self._lookup(source, key)
            if found:
                return value

        env_value = os.getenv(key)
        if env_value is not None:
            return env_value

        return default

    def get_database_url(self) -> str:
        """Get database URL from the environment or secrets, or construct it from components."""
        db_url = self.get("database.url") or os.getenv("DATABASE_URL")
        if db_url:
            return str(db_url)

        username = self.get("database.username", "postgres")
        password = self.get("database.password", "postgres")
        host = self.get("database.host", "localhost")
        port = self.get("database.port", 5432)
        name = self.get("database.name", "credit_ledger")
        return f"postgresql+asyncpg://{username}:{password}@{host}:{port}/{name}"

    def is_production(self) -> bool:
        return self._env.lower() == "production"

    def is_testing(self) -> bool:
        return self._env.lower() in ("test", "testing")

    def get_environment(self) -> str:
        return self._env


class Settings(BaseSettings):
    """Process-level settings read straight from the environment."""

    model_config = SettingsConfigDict(env_file_encoding="utf-8", case_sensitive=True, extra="ignore")

    PROJECT_NAME: str = "Credit Ledger"
    API_V1_STR: str = "/api/v1"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"
    LOG_LEVEL: str = "INFO"

    @property
    def BACKEND_CORS_ORIGINS(self) -> list[str]:
        """Returns the CORS origins as a list"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


settings = Settings()
