"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
"""

import logging
import os
from functools import lru_cache
from typing import Literal, cast

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from .env file
load_dotenv()

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class EngineConfig(BaseModel):
    """Evaluation engine configuration."""

    max_concurrent_fetches: int = Field(
        default=10, gt=0, description="Maximum number of in-flight fact source requests"
    )
    fetch_timeout_seconds: float = Field(
        default=30.0, gt=0.0, description="Deadline for a single fact source request"
    )
    failure_policy: Literal["abort", "empty"] = Field(
        default="abort",
        description="On a contract violation: abort the call or treat the subtree as empty",
    )


class ReportConfig(BaseModel):
    """Window widths and thresholds used by the bundled report catalogues."""

    breastfeeding_window_months: int = Field(
        default=18, ge=0, description="Breastfeeding evidence window before the viral load date"
    )
    pregnancy_window_months: int = Field(
        default=9, ge=0, description="Pregnancy evidence window before the viral load date"
    )
    viral_load_lookback_months: int = Field(
        default=12, ge=0, description="Lookback from the end date for the anchoring viral load"
    )
    suppression_threshold: float = Field(
        default=1000.0,
        gt=0.0,
        description="Viral load (copies/ml) below which a patient is suppressed",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(default="INFO", description="Logging level")
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    engine: EngineConfig = Field(default_factory=EngineConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> LogLevel:
        v = val.strip().upper()
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        return cast(LogLevel, v if v in valid else "INFO")

    def _policy_to_literal(val: str) -> Literal["abort", "empty"]:
        return "empty" if val.strip().lower() == "empty" else "abort"

    # Detect environment
    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    engine_config = EngineConfig(
        max_concurrent_fetches=int(os.getenv("ENGINE_MAX_CONCURRENT_FETCHES", "10")),
        fetch_timeout_seconds=float(os.getenv("ENGINE_FETCH_TIMEOUT_SECONDS", "30.0")),
        failure_policy=_policy_to_literal(os.getenv("ENGINE_FAILURE_POLICY", "abort")),
    )

    report_config = ReportConfig(
        breastfeeding_window_months=int(os.getenv("BREASTFEEDING_WINDOW_MONTHS", "18")),
        pregnancy_window_months=int(os.getenv("PREGNANCY_WINDOW_MONTHS", "9")),
        viral_load_lookback_months=int(os.getenv("VIRAL_LOAD_LOOKBACK_MONTHS", "12")),
        suppression_threshold=float(os.getenv("VL_SUPPRESSION_THRESHOLD", "1000")),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        engine=engine_config,
        report=report_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure structlog on top of the stdlib logging machinery."""
    config = config or LoggingConfig()
    renderer = (
        structlog.dev.ConsoleRenderer()
        if config.format == "console"
        else structlog.processors.JSONRenderer()
    )
    logging.basicConfig(format="%(message)s", level=getattr(logging, config.level))
    logging.getLogger().setLevel(getattr(logging, config.level))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Configuration validation and helpers
def validate_config() -> None:
    """Validate configuration at startup."""
    try:
        config = get_config()
        print(f"✅ Configuration loaded for {config.environment} environment")
        print(f"✅ Failure policy: {config.engine.failure_policy}")
    except Exception as e:
        print(f"❌ Configuration validation failed: {e}")
        raise


# Development helpers
def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\n🔧 CONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\n⚙️  ENGINE CONFIGURATION")
    print(f"Max Concurrent Fetches: {config.engine.max_concurrent_fetches}")
    print(f"Fetch Timeout: {config.engine.fetch_timeout_seconds}s")
    print(f"Failure Policy: {config.engine.failure_policy}")

    print("\n📋 REPORT CONFIGURATION")
    print(f"Breastfeeding Window: {config.report.breastfeeding_window_months} months")
    print(f"Pregnancy Window: {config.report.pregnancy_window_months} months")
    print(f"Viral Load Lookback: {config.report.viral_load_lookback_months} months")
    print(f"Suppression Threshold: {config.report.suppression_threshold:g} copies/ml")


if __name__ == "__main__":
    # Test configuration loading
    validate_config()
    print_config_summary()
