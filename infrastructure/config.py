"""
ENGINE CONFIGURATION
Loads `.cardlogic/engine.yaml` with environment overrides.

Environment Variables:
    CARDLOGIC_SOLVER_TIMEOUT: solver timeout in seconds (0 disables it)
    CARDLOGIC_CACHE_SIZE: number of cached solve results
    CARDLOGIC_LOG_LEVEL: logging level name for the entry point
"""
import logging
import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("EngineConfig")

DEFAULT_CONFIG_PATH = ".cardlogic/engine.yaml"

ENV_OVERRIDES = {
    "CARDLOGIC_SOLVER_TIMEOUT": "solver_timeout_seconds",
    "CARDLOGIC_CACHE_SIZE": "solve_cache_entries",
    "CARDLOGIC_LOG_LEVEL": "log_level",
}


class EngineConfig(BaseModel):
    solver_timeout_seconds: Optional[float] = Field(
        default=30.0,
        description="Seconds before a solve is cancelled; None waits forever"
    )
    solve_cache_entries: int = Field(default=64, ge=0)
    message_limit: int = Field(default=20, ge=0)
    error_log_dir: Optional[str] = Field(
        default=None,
        description="Directory for JSONL error records; None disables the error log"
    )
    log_level: str = "INFO"

    @field_validator("solver_timeout_seconds")
    @classmethod
    def _no_zero_timeout(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            return None
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        value = value.upper()
        if not isinstance(logging.getLevelName(value), int):
            raise ValueError(f"Unknown log level: {value}")
        return value

    @classmethod
    def load(cls, config_path: str = DEFAULT_CONFIG_PATH, environ: Optional[Dict[str, str]] = None) -> "EngineConfig":
        """
        Load configuration from YAML, falling back to defaults.

        Args:
            config_path: Path to configuration file
            environ: Environment mapping (defaults to os.environ)
        """
        try:
            with open(config_path, "r") as f:
                data: Dict[str, Any] = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning(f"Config not found: {config_path}. Using defaults.")
            data = {}

        environ = os.environ if environ is None else environ
        for variable, key in ENV_OVERRIDES.items():
            if environ.get(variable):
                logger.info(f"{variable} environment variable set: '{environ[variable]}'")
                data[key] = environ[variable]

        return cls.model_validate(data)
