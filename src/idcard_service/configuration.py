from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from omegaconf import MISSING, DictConfig, OmegaConf
from omegaconf.errors import OmegaConfBaseException

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_NAME = "studentidreq"

DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:8080",
    "https://sonaadmin-idcard-portal.netlify.app",
]

# env var -> config key
_ENV_KEYS = {
    "MONGO_URI": "mongo_uri",
    "MONGO_DB_NAME": "database_name",
    "HOST": "host",
    "PORT": "port",
    "ALLOWED_ORIGINS": "allowed_origins",
    "USE_TRANSACTIONS": "use_transactions",
    "REJECT_DUPLICATE_ACCEPTS": "reject_duplicate_accepts",
    "LOG_LEVEL": "log_level",
}


class ConfigurationError(RuntimeError):
    """Raised when the service configuration is incomplete or malformed."""


@dataclass
class ServiceConfig:
    mongo_uri: str = MISSING
    database_name: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 5000
    allowed_origins: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    allowed_methods: List[str] = field(default_factory=lambda: ["GET", "POST", "PATCH", "DELETE"])
    server_selection_timeout_ms: int = 5000
    socket_timeout_ms: int = 45000
    max_pool_size: int = 10
    use_transactions: bool = False
    reject_duplicate_accepts: bool = False
    log_level: str = "INFO"


def _env_overrides(environ: Dict[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_name, key in _ENV_KEYS.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        if key == "allowed_origins":
            overrides[key] = [origin.strip() for origin in raw.split(",") if origin.strip()]
        else:
            # OmegaConf converts strings for typed int/bool fields on merge
            overrides[key] = raw
    return overrides


def load_config(
    config_path: Optional[Path] = None,
    environ: Optional[Dict[str, str]] = None,
    use_dotenv: bool = True,
) -> DictConfig:
    """
    Build the service configuration.

    Values are layered: ServiceConfig defaults, then an optional YAML file
    (``config_path`` or the ``IDCARD_CONFIG`` env var), then environment
    variables. Mandatory values that are still missing raise ConfigurationError.

    Args:
        config_path: Optional YAML file with overrides
        environ: Environment mapping to read from (defaults to os.environ)
        use_dotenv: Load a ``.env`` file into os.environ first

    Returns:
        A read-only DictConfig typed by ServiceConfig
    """
    if use_dotenv:
        load_dotenv()
    if environ is None:
        environ = dict(os.environ)

    base = OmegaConf.structured(ServiceConfig)
    layers = [base]

    file_path = config_path or (Path(environ["IDCARD_CONFIG"]) if environ.get("IDCARD_CONFIG") else None)
    if file_path is not None:
        if not file_path.exists():
            raise ConfigurationError(f"Config file not found at {file_path}")
        logger.info(f"Loading configuration overrides from {file_path}")
        layers.append(OmegaConf.load(file_path))

    layers.append(OmegaConf.create(_env_overrides(environ)))

    try:
        config = OmegaConf.merge(*layers)
    except OmegaConfBaseException as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    missing = sorted(OmegaConf.missing_keys(config))
    if missing:
        raise ConfigurationError(
            f"Missing required configuration: {', '.join(missing)} (set MONGO_URI in the environment or .env file)"
        )

    OmegaConf.set_readonly(config, True)
    return config  # type: ignore[return-value]
