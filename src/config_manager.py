#!/usr/bin/env python3
"""
Configuration Manager for the ERC20 balance monitor

Each setting is resolved from, in order:
1. Command line flags
2. Environment variables (a .env file in the working directory is loaded)
3. The active profile of an optional JSON config file, with ${VAR} substitution
4. Built-in defaults
"""

import json
import math
import os
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from dotenv import find_dotenv, load_dotenv
from eth_utils import is_hex_address, to_checksum_address


DEFAULT_CONFIG_FILE = "config.json"


class ConfigurationError(ValueError):
    """Invalid or incomplete configuration; fatal at startup"""
    pass


_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)')


def parse_duration(value: Any) -> float:
    """Parse a duration like ``3s``, ``1m30s`` or ``500ms`` (or a bare number of seconds) into seconds"""
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip()
    if not text:
        raise ConfigurationError("Invalid duration: empty string")
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ConfigurationError(f"Invalid duration: {text!r}")
    return total


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ConfigurationError(f"Invalid boolean: {value!r}")


def parse_list(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        items = []
        for item in value:
            items.extend(parse_list(item))
        return tuple(items)
    return tuple(part.strip() for part in str(value).split(",") if part.strip())


def _parse_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid number: {value!r}") from None


def _parse_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid integer: {value!r}") from None


@dataclass(frozen=True)
class Setting:
    name: str
    env_var: str
    default: Any
    parse: Callable[[Any], Any]


SETTINGS: List[Setting] = [
    Setting("node", "EVM_RPC_URL", "https://rpc.merlinchain.io/", parse_list),
    Setting("token", "TOKEN_ADDRESS", "0x967aEC3276b63c5E2262da9641DB9dbeBB07dC0d", str),
    Setting("addr", "ACCOUNT_ADDRESS", "0x25aB3Efd52e6470681CE037cD546Dc60726948D3", str),
    Setting("addr_name", "ACCOUNT_ALIAS", "Meson", str),
    Setting("threshold", "BALANCE_THRESHOLD", 2000.0, _parse_float),
    Setting("interval", "POLL_INTERVAL", "3s", parse_duration),
    Setting("ding_token", "DING_TOKEN", "", str),
    Setting("mute", "MUTE_DING", False, parse_bool),
    Setting("precision", "AMOUNT_PRECISION", 2, _parse_int),
    Setting("rpc_timeout", "RPC_TIMEOUT", "10s", parse_duration),
    Setting("webhook_timeout", "WEBHOOK_TIMEOUT", "10s", parse_duration),
    Setting("webhook_url", "DINGTALK_ROBOT_URL", "https://oapi.dingtalk.com/robot/send", str),
    Setting("at_all", "DING_AT_ALL", True, parse_bool),
    Setting("at_mobiles", "DING_AT_MOBILES", (), parse_list),
]


@dataclass(frozen=True)
class MonitorConfig:
    node_urls: Tuple[str, ...]
    token_address: str
    account_address: str
    account_alias: str
    threshold: float
    interval_s: float
    ding_token: str
    mute: bool
    precision: int = 2
    rpc_timeout_s: float = 10.0
    webhook_timeout_s: float = 10.0
    webhook_url: str = "https://oapi.dingtalk.com/robot/send"
    at_all: bool = True
    at_mobiles: Tuple[str, ...] = ()
    profile: Optional[str] = None


def _is_http_url(s: str) -> bool:
    return isinstance(s, str) and s.startswith(('http://', 'https://'))


def _checksum(field_name: str, value: str) -> str:
    if not is_hex_address(value):
        raise ConfigurationError(f"{field_name} must be a valid Ethereum address (0x...), got {value!r}")
    return to_checksum_address(value)


def validate_config(config: MonitorConfig) -> List[str]:
    """Return a list of problems with ``config``; empty when valid"""
    errors = []

    if not config.node_urls:
        errors.append("At least one node RPC URL is required")
    for url in config.node_urls:
        if not _is_http_url(url):
            errors.append(f"Node RPC URL must be an HTTP/HTTPS URL: {url}")

    for field_name, value in (("token", config.token_address), ("addr", config.account_address)):
        if not is_hex_address(value):
            errors.append(f"{field_name} must be a valid Ethereum address (0x...), got {value!r}")

    if not math.isfinite(config.threshold):
        errors.append(f"threshold must be a finite number, got {config.threshold}")
    for label, seconds in (("interval", config.interval_s),
                           ("rpc timeout", config.rpc_timeout_s),
                           ("webhook timeout", config.webhook_timeout_s)):
        if not math.isfinite(seconds) or seconds <= 0:
            errors.append(f"{label} must be a positive finite duration, got {seconds}s")
    if not 0 <= config.precision <= 36:
        errors.append(f"precision must be between 0 and 36, got {config.precision}")

    if not config.mute and not config.ding_token:
        errors.append("dingToken shouldn't be empty when mute isn't true")
    if not config.mute and not _is_http_url(config.webhook_url):
        errors.append(f"webhook URL must be an HTTP/HTTPS URL: {config.webhook_url}")

    return errors


class ConfigManager:
    """Resolves MonitorConfig from flags, environment, config profile and defaults"""

    def __init__(self, config_file: Optional[str] = None, config_name_override: Optional[str] = None,
                 environ: Optional[Mapping[str, str]] = None):
        self.environ = os.environ if environ is None else environ
        self.config_file = config_file
        self._config_name_override = config_name_override
        self._config_data: Dict[str, Any] = {}
        self._active_config_name: Optional[str] = None
        self._active_config: Dict[str, Any] = {}
        self._load_config()
        self._load_active_config()

    def _config_path(self) -> Optional[Path]:
        if self.config_file:
            return Path(self.config_file)
        default_path = Path(DEFAULT_CONFIG_FILE)
        if default_path.exists():
            return default_path
        return None

    def _load_config(self):
        """Load the JSON config file if one is given or present"""
        config_path = self._config_path()
        if config_path is None:
            return

        try:
            with open(config_path, 'r') as f:
                content = self._substitute_env_vars(f.read())
            self._config_data = json.loads(content)
        except FileNotFoundError:
            raise ConfigurationError(f"Config file {config_path} not found")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in config file {config_path}: {e}")

    def _substitute_env_vars(self, content: str) -> str:
        """Substitute ${VAR} patterns with environment variables"""
        def replace_var(match):
            var_name = match.group(1)
            env_value = self.environ.get(var_name)
            if env_value is None:
                raise ConfigurationError(f"Environment variable {var_name} is not set")
            return env_value

        # pattern to match ${VAR_NAME}
        pattern = r'\$\{([A-Z_][A-Z0-9_]*)\}'
        return re.sub(pattern, replace_var, content)

    def _load_active_config(self):
        """Pick the active profile from the override, ACTIVE_CONFIG, or the first profile"""
        configs = self.get_available_configs()
        if not configs:
            if self._config_name_override:
                raise ConfigurationError(
                    f"Config profile '{self._config_name_override}' requested but no config file profiles are loaded"
                )
            return

        self._active_config_name = self._config_name_override or self.environ.get('ACTIVE_CONFIG')
        if not self._active_config_name:
            self._active_config_name = next(iter(configs))

        if self._active_config_name not in configs:
            available = list(configs.keys())
            raise ConfigurationError(f"Active config '{self._active_config_name}' not found. Available: {available}")

        self._active_config = dict(configs[self._active_config_name])

    def get_available_configs(self) -> Dict[str, Any]:
        """Get all available configuration profiles"""
        return self._config_data.get("configs", {})

    def get_active_config_name(self) -> Optional[str]:
        return self._active_config_name

    def _resolve_setting(self, setting: Setting, overrides: Mapping[str, Any]) -> Any:
        value = overrides.get(setting.name)
        if value is None or value == [] or value == ():
            value = self.environ.get(setting.env_var)
        if value is None:
            value = self._active_config.get(setting.name)
        if value is None:
            value = setting.default
        return setting.parse(value)

    def resolve(self, overrides: Optional[Mapping[str, Any]] = None) -> MonitorConfig:
        """Resolve and validate the monitor configuration; raises ConfigurationError"""
        overrides = overrides or {}
        values = {s.name: self._resolve_setting(s, overrides) for s in SETTINGS}

        config = MonitorConfig(
            node_urls=values["node"],
            token_address=values["token"],
            account_address=values["addr"],
            account_alias=values["addr_name"],
            threshold=values["threshold"],
            interval_s=values["interval"],
            ding_token=values["ding_token"],
            mute=values["mute"],
            precision=values["precision"],
            rpc_timeout_s=values["rpc_timeout"],
            webhook_timeout_s=values["webhook_timeout"],
            webhook_url=values["webhook_url"],
            at_all=values["at_all"],
            at_mobiles=values["at_mobiles"],
            profile=self._active_config_name,
        )

        errors = validate_config(config)
        if errors:
            raise ConfigurationError("; ".join(errors))

        # addresses are normalized only once they are known to be valid
        return replace(
            config,
            token_address=_checksum("token", config.token_address),
            account_address=_checksum("addr", config.account_address),
        )


def load_env_file() -> None:
    """Load a .env file from the working directory, if any"""
    env_path = find_dotenv(usecwd=True)
    if env_path:
        load_dotenv(env_path)
