"""
Runtime configuration for the orchestration system.

Values are plain dicts, resolved from DEFAULT_CONFIG, then the process
environment (a local .env file is loaded first), then explicit overrides.
"""
import os
import logging
from typing import Dict, Any, Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG: Dict[str, Any] = {
    "openai_api_key": None,
    "model": "gpt-4o-mini",
    "planning_temperature": 0.3,
    "planning_max_tokens": 2000,
    "kafka_servers": None,
    "kafka_topic": "workflow_events",
    "approval_timeout_seconds": 300.0,
    "log_level": "INFO",
}

# Environment variable -> (config key, parser)
ENV_OVERRIDES = {
    "OPENAI_API_KEY": ("openai_api_key", str),
    "ORCHESTRATION_MODEL": ("model", str),
    "ORCHESTRATION_KAFKA_SERVERS": ("kafka_servers", str),
    "ORCHESTRATION_KAFKA_TOPIC": ("kafka_topic", str),
    "ORCHESTRATION_APPROVAL_TIMEOUT": ("approval_timeout_seconds", float),
    "ORCHESTRATION_LOG_LEVEL": ("log_level", str),
}


def load_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build the effective configuration"""
    config = dict(DEFAULT_CONFIG)

    for env_name, (key, parser) in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw:
            try:
                config[key] = parser(raw)
            except ValueError:
                raise ValueError(f"Invalid value for {env_name}: {raw!r}")

    if overrides:
        config.update(overrides)

    return config


def configure_logging(level: str = "INFO"):
    """Set up root logging for the API process"""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
