"""Configuration handling for the Cursor bridge."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config.yaml")

# Environment variable -> settings field.
ENV_OVERRIDES = {
    "HOST": "host",
    "PORT": "port",
    "CURSOR_BASE_URL": "base_url",
    "CURSOR_CLIENT_VERSION": "client_version",
    "CURSOR_TIMEZONE": "timezone",
    "CURSOR_CHECKSUM": "checksum",
    "x-cursor-checksum": "checksum",
    "LOG_LEVEL": "log_level",
    "LOG_FILE": "log_file",
    "ACCESS_LOG": "access_log",
    "MAX_BODY_SIZE": "max_body_size",
}


class Settings(BaseModel):
    """
    Process-wide settings. Built once at startup and passed into every
    component; instances are frozen.
    """

    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = 3010

    base_url: str = "https://api2.cursor.sh"
    client_version: str = "0.45.3"
    timezone: str = "Asia/Hong_Kong"
    ghost_mode: bool = False
    checksum: Optional[str] = None

    connect_timeout: float = 5.0
    read_timeout: float = 30.0
    feature_check: bool = True
    feature_check_timeout: float = 5.0

    instruction: str = ""
    project_path: str = "/path/to/project"
    stream_unsupported_prefixes: List[str] = ["o1-"]
    max_frame_size: int = 4 * 1024 * 1024
    max_body_size: int = 50 * 1024 * 1024
    disconnect_poll_interval: float = 0.5

    log_level: str = "INFO"
    log_file: Optional[str] = None
    access_log: bool = True

    @property
    def chat_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/aiserver.v1.AiService/StreamChat"

    @property
    def feature_check_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/aiserver.v1.AiService/CheckFeatureStatus"


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text())
    except FileNotFoundError:
        logger.info(f"No configuration file at {path}, using defaults")
        return {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading {path}: {str(e)}")
        return {}

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.error(f"Ignoring {path}: top level must be a mapping")
        return {}
    logger.info(f"Successfully loaded configuration from {path}")
    return data


def _env_overrides(environ) -> Dict[str, str]:
    overrides = {}
    for env_name, field in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            overrides[field] = value
    return overrides


def load_config(path: Optional[Path] = None, environ=None) -> Settings:
    """
    Load settings from config.yaml and the environment.

    Order of precedence (highest first): environment variables, the YAML file,
    built-in defaults. A `.env` file in the working directory is loaded first.
    An invalid file or invalid value is logged and the defaults are used.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    if path is None:
        path = Path(environ.get("CURSORBRIDGE_CONFIG", DEFAULT_CONFIG_PATH))

    values = _read_yaml(Path(path))
    values.update(_env_overrides(environ))

    try:
        return Settings(**values)
    except ValidationError as e:
        logger.error(f"Invalid configuration, using defaults: {str(e)}")
        return Settings()


def configure_logging(settings: Settings) -> None:
    """Set up root logging and the optional log file."""
    logging.basicConfig(level=settings.log_level.upper())

    if settings.log_file:
        log_path = Path(settings.log_file)
        os.makedirs(log_path.parent, exist_ok=True)
        file_handler = logging.FileHandler(str(log_path), mode="a")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
        )
        logging.getLogger("cursorbridge").addHandler(file_handler)
