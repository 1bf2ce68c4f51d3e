"""
Bridge configuration and logging.

Settings come from three layers, later ones winning:
built-in defaults, an optional JSON config file, then the environment
(a ``.env`` file is loaded first through python-dotenv).
"""

import json
import logging
import os
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from dotenv import load_dotenv

from .errors import InvalidArgumentError

ENGINES = ("stub", "daemon")
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


@dataclass
class BridgeSettings:
    data_dir: str = str(Path.home() / "i2pd")
    engine: str = "stub"
    i2pd_binary: str = "i2pd"
    certificates_bundle: Optional[str] = None
    grace_period_s: float = 60.0
    terminate_timeout_s: float = 30.0
    background_allowance_s: float = 30.0
    i2pcontrol_address: str = "127.0.0.1"
    i2pcontrol_port: int = 7650
    i2pcontrol_password: str = "itoopie"
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


ENV_KEYS = {
    "data_dir": "I2PD_BRIDGE_DATA_DIR",
    "engine": "I2PD_BRIDGE_ENGINE",
    "i2pd_binary": "I2PD_BINARY",
    "certificates_bundle": "I2PD_BRIDGE_CERTS_BUNDLE",
    "grace_period_s": "I2PD_BRIDGE_GRACE_S",
    "terminate_timeout_s": "I2PD_BRIDGE_TERMINATE_TIMEOUT_S",
    "background_allowance_s": "I2PD_BRIDGE_BACKGROUND_S",
    "i2pcontrol_address": "I2PCONTROL_ADDRESS",
    "i2pcontrol_port": "I2PCONTROL_PORT",
    "i2pcontrol_password": "I2PCONTROL_PASSWORD",
    "log_level": "I2PD_BRIDGE_LOG_LEVEL",
    "log_file": "I2PD_BRIDGE_LOG_FILE",
}


def _to_float(key: str, value: Any) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"{key} must be a number, got {value!r}") from None
    if out < 0:
        raise InvalidArgumentError(f"{key} must not be negative")
    return out


def _to_port(key: str, value: Any) -> int:
    try:
        out = int(value)
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"{key} must be an integer, got {value!r}") from None
    if not 1 <= out <= 65535:
        raise InvalidArgumentError(f"{key} must be within 1-65535")
    return out


CONVERTERS: Dict[str, Callable[[str, Any], Any]] = {
    "grace_period_s": _to_float,
    "terminate_timeout_s": _to_float,
    "background_allowance_s": _to_float,
    "i2pcontrol_port": _to_port,
}


def load_config_file(path: Union[str, Path]) -> dict:
    path = Path(path)
    if not path.exists():
        return {}
    try:
        cfg = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise InvalidArgumentError(f"cannot read config {path}: {exc}") from exc
    if not isinstance(cfg, dict):
        raise InvalidArgumentError(f"config {path} must hold a JSON object")
    return cfg


def load_settings(
    config_path: Optional[Union[str, Path]] = None,
    env_file: Optional[Union[str, Path]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> BridgeSettings:
    if environ is None:
        if env_file:
            load_dotenv(env_file, override=False)
        else:
            load_dotenv(override=False)
        environ = dict(os.environ)

    cfg = load_config_file(config_path) if config_path else {}
    defaults = BridgeSettings().as_dict()
    for key, value in defaults.items():
        cfg.setdefault(key, value)
    for key, env_name in ENV_KEYS.items():
        if environ.get(env_name):
            cfg[key] = environ[env_name]

    values = {}
    for key in defaults:
        value = cfg[key]
        convert = CONVERTERS.get(key)
        values[key] = convert(key, value) if convert else value

    settings = BridgeSettings(**values)
    settings.engine = str(settings.engine).lower()
    if settings.engine not in ENGINES:
        raise InvalidArgumentError(f"engine must be one of {', '.join(ENGINES)}")
    settings.log_level = str(settings.log_level).upper()
    if not isinstance(logging.getLevelName(settings.log_level), int):
        raise InvalidArgumentError(f"unknown log level {settings.log_level!r}")
    return settings


def setup_logging(settings: BridgeSettings) -> logging.Logger:
    """Configure the ``i2pd_bridge`` logger tree; stdout stays free for the wire protocol."""
    logger = logging.getLogger("i2pd_bridge")
    if not logger.handlers:
        if settings.log_file:
            log_path = Path(settings.log_file).expanduser()
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handler: logging.Handler = logging.FileHandler(log_path, encoding="utf-8")
        else:
            handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(settings.log_level)
    return logger
