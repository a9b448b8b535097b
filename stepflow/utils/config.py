"""
Runtime settings: YAML config file and logging setup

The file holds five optional sections (logging, engine, events, capability,
outputs). Pipeline definitions live in their own files and are loaded by
stepflow.pipeline.definition_loader.
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from stepflow.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/config.yaml"
CONFIG_PATH_ENV = "STEPFLOW_CONFIG"
KNOWN_SECTIONS = ("logging", "engine", "events", "capability", "outputs")

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Read the settings file.

    The path is taken from the argument, then $STEPFLOW_CONFIG, then
    config/config.yaml. An empty file yields {}.

    Raises:
        FileNotFoundError: No file at the chosen path
        ConfigurationError: Invalid YAML, or a top level that is not a mapping
    """
    path = Path(config_path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}", errors=[str(e)]) from e

    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ConfigurationError(
            f"Config file {path} must contain a mapping of sections",
            errors=[f"top level is {type(config).__name__}"],
        )

    unknown = sorted(str(name) for name in config if name not in KNOWN_SECTIONS)
    if unknown:
        logger.warning(f"Ignoring unknown config sections in {path}: {', '.join(unknown)}")

    logger.info(f"Configuration loaded from {path}")
    return config


def get_section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return a config section, treating a missing or null section as empty."""
    return (config or {}).get(name) or {}


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "logger": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def build_handlers(log_config: Dict[str, Any]) -> List[logging.Handler]:
    """Console handler, plus a file handler when ``logging.file`` is set."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    log_file = log_config.get("file")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    if str(log_config.get("format", "text")).lower() == "json":
        formatter = JsonLineFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(config: Dict[str, Any]):
    """
    Configure the root logger from the ``logging`` section

    Keys: level (default INFO), format (text or json), file (optional path)
    """
    log_config = get_section(config, "logging")
    level = str(log_config.get("level", "INFO")).upper()

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        handlers=build_handlers(log_config),
        force=True,
    )

    logger.info(f"Logging configured: level={level}, format={log_config.get('format', 'text')}")
