"""Configuration loader for display-link."""

from __future__ import annotations

import configparser
import logging
import math
from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from . import constants

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class DisplayConfig:
    """Display preferences persisted under the ``[display]`` section."""

    ws_url: str = ""
    sse_url: str = ""
    brightness_mode: str = constants.DEFAULT_BRIGHTNESS_MODE
    alert_threshold_watts: float = constants.DEFAULT_ALERT_THRESHOLD_WATTS
    client_name: str = constants.DEFAULT_CLIENT_NAME

    def as_dict(self) -> Dict[str, Any]:
        return {
            "wsUrl": self.ws_url,
            "sseUrl": self.sse_url,
            "brightnessMode": self.brightness_mode,
            "alertThresholdWatts": self.alert_threshold_watts,
            "clientName": self.client_name,
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "DisplayConfig":
        """Build from the camelCase record form, substituting defaults for bad fields."""

        defaults = cls()
        return cls(
            ws_url=_clean_url(payload.get("wsUrl")),
            sse_url=_clean_url(payload.get("sseUrl")),
            brightness_mode=_coerce_brightness(payload.get("brightnessMode")),
            alert_threshold_watts=_coerce_threshold(payload.get("alertThresholdWatts")),
            client_name=_clean_text(payload.get("clientName")) or defaults.client_name,
        )


@dataclass(slots=True)
class RelayConfig:
    host: str = constants.DEFAULT_RELAY_HOST
    port: int = constants.DEFAULT_RELAY_PORT
    heartbeat_seconds: float = 30.0


@dataclass(slots=True)
class ResilienceConfig:
    ws_reconnect_initial_seconds: float = 1.0
    ws_reconnect_growth: float = 1.5
    ws_reconnect_max_seconds: float = 30.0
    ws_max_reconnect_attempts: int = 20
    sse_reconnect_seconds: float = 5.0
    open_timeout_seconds: float = 10.0
    ws_heartbeat_seconds: float = 30.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class AppConfig:
    display: DisplayConfig
    relay: RelayConfig
    resilience: ResilienceConfig
    logging: LoggingConfig
    raw: ConfigParser = field(repr=False)
    path: Path


def _clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _clean_url(value: Any) -> str:
    return _clean_text(value)


def _coerce_brightness(value: Any) -> str:
    mode = _clean_text(value).lower()
    if mode in constants.BRIGHTNESS_MODES:
        return mode
    if mode:
        LOGGER.warning("Unknown brightness mode %r; using %s", value, constants.DEFAULT_BRIGHTNESS_MODE)
    return constants.DEFAULT_BRIGHTNESS_MODE


def _coerce_threshold(value: Any) -> float:
    if isinstance(value, bool):
        return constants.DEFAULT_ALERT_THRESHOLD_WATTS
    try:
        threshold = float(value)
    except (TypeError, ValueError):
        return constants.DEFAULT_ALERT_THRESHOLD_WATTS
    if not math.isfinite(threshold) or threshold <= 0:
        return constants.DEFAULT_ALERT_THRESHOLD_WATTS
    return threshold


def _defaults() -> Dict[str, Dict[str, str]]:
    display = DisplayConfig()
    relay = RelayConfig()
    resilience = ResilienceConfig()
    return {
        constants.DISPLAY_SECTION: {
            "ws_url": display.ws_url,
            "sse_url": display.sse_url,
            "brightness_mode": display.brightness_mode,
            "alert_threshold_watts": str(display.alert_threshold_watts),
            "client_name": display.client_name,
        },
        "relay": {
            "host": relay.host,
            "port": str(relay.port),
            "heartbeat_seconds": str(relay.heartbeat_seconds),
        },
        "resilience": {
            "ws_reconnect_initial_seconds": str(resilience.ws_reconnect_initial_seconds),
            "ws_reconnect_growth": str(resilience.ws_reconnect_growth),
            "ws_reconnect_max_seconds": str(resilience.ws_reconnect_max_seconds),
            "ws_max_reconnect_attempts": str(resilience.ws_max_reconnect_attempts),
            "sse_reconnect_seconds": str(resilience.sse_reconnect_seconds),
            "open_timeout_seconds": str(resilience.open_timeout_seconds),
            "ws_heartbeat_seconds": str(resilience.ws_heartbeat_seconds),
        },
        "logging": {
            "level": "INFO",
            "path": str(constants.DEFAULT_LOG_PATH),
            "log_network": "false",
        },
    }


def _read_parser(config_path: Path) -> ConfigParser:
    parser = ConfigParser(interpolation=None)
    parser.read_dict(_defaults())

    if not config_path.exists():
        return parser

    try:
        parser.read(config_path, encoding="utf-8")
    except (configparser.Error, UnicodeDecodeError, OSError) as exc:
        LOGGER.warning(
            "Configuration at %s is unreadable (%s); using defaults", config_path, exc
        )
        parser = ConfigParser(interpolation=None)
        parser.read_dict(_defaults())
    return parser


def _get_float(parser: ConfigParser, section: str, option: str, default: float) -> float:
    try:
        return parser.getfloat(section, option, fallback=default)
    except ValueError:
        LOGGER.warning("Invalid value for [%s] %s; using %s", section, option, default)
        return default


def _get_int(parser: ConfigParser, section: str, option: str, default: int) -> int:
    try:
        return parser.getint(section, option, fallback=default)
    except ValueError:
        LOGGER.warning("Invalid value for [%s] %s; using %s", section, option, default)
        return default


def _get_bool(parser: ConfigParser, section: str, option: str, default: bool) -> bool:
    try:
        return parser.getboolean(section, option, fallback=default)
    except ValueError:
        LOGGER.warning("Invalid value for [%s] %s; using %s", section, option, default)
        return default


def _display_from_parser(parser: ConfigParser) -> DisplayConfig:
    section = parser[constants.DISPLAY_SECTION]
    return DisplayConfig.from_mapping(
        {
            "wsUrl": section.get("ws_url", ""),
            "sseUrl": section.get("sse_url", ""),
            "brightnessMode": section.get("brightness_mode", ""),
            "alertThresholdWatts": section.get("alert_threshold_watts", ""),
            "clientName": section.get("client_name", ""),
        }
    )


def _write_display_section(parser: ConfigParser, display: DisplayConfig) -> None:
    if not parser.has_section(constants.DISPLAY_SECTION):
        parser.add_section(constants.DISPLAY_SECTION)
    section = parser[constants.DISPLAY_SECTION]
    section["ws_url"] = display.ws_url
    section["sse_url"] = display.sse_url
    section["brightness_mode"] = display.brightness_mode
    section["alert_threshold_watts"] = str(display.alert_threshold_watts)
    section["client_name"] = display.client_name


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = _read_parser(config_path)

    relay_defaults = RelayConfig()
    relay = RelayConfig(
        host=parser.get("relay", "host", fallback=relay_defaults.host),
        port=_get_int(parser, "relay", "port", relay_defaults.port),
        heartbeat_seconds=max(
            0.0,
            _get_float(parser, "relay", "heartbeat_seconds", relay_defaults.heartbeat_seconds),
        ),
    )

    resilience_defaults = ResilienceConfig()
    resilience = ResilienceConfig(
        ws_reconnect_initial_seconds=max(
            0.0,
            _get_float(
                parser,
                "resilience",
                "ws_reconnect_initial_seconds",
                resilience_defaults.ws_reconnect_initial_seconds,
            ),
        ),
        ws_reconnect_growth=max(
            1.0,
            _get_float(
                parser,
                "resilience",
                "ws_reconnect_growth",
                resilience_defaults.ws_reconnect_growth,
            ),
        ),
        ws_reconnect_max_seconds=max(
            0.0,
            _get_float(
                parser,
                "resilience",
                "ws_reconnect_max_seconds",
                resilience_defaults.ws_reconnect_max_seconds,
            ),
        ),
        ws_max_reconnect_attempts=max(
            0,
            _get_int(
                parser,
                "resilience",
                "ws_max_reconnect_attempts",
                resilience_defaults.ws_max_reconnect_attempts,
            ),
        ),
        sse_reconnect_seconds=max(
            0.0,
            _get_float(
                parser,
                "resilience",
                "sse_reconnect_seconds",
                resilience_defaults.sse_reconnect_seconds,
            ),
        ),
        open_timeout_seconds=max(
            0.1,
            _get_float(
                parser,
                "resilience",
                "open_timeout_seconds",
                resilience_defaults.open_timeout_seconds,
            ),
        ),
        ws_heartbeat_seconds=max(
            0.0,
            _get_float(
                parser,
                "resilience",
                "ws_heartbeat_seconds",
                resilience_defaults.ws_heartbeat_seconds,
            ),
        ),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=_get_bool(parser, "logging", "log_network", False),
    )

    return AppConfig(
        display=_display_from_parser(parser),
        relay=relay,
        resilience=resilience,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def save_config(config: AppConfig) -> None:
    """Persist the current configuration to disk."""

    _write_display_section(config.raw, config.display)
    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)


class FileDisplayConfigStore:
    """Stores the display record in the ``[display]`` section of a config file.

    Other sections of the file are preserved on save.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or constants.DEFAULT_CONFIG_PATH

    def load(self) -> DisplayConfig:
        return _display_from_parser(_read_parser(self.path))

    def save(self, config: DisplayConfig) -> None:
        parser = _read_parser(self.path)
        _write_display_section(parser, config)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as stream:
            parser.write(stream)
        LOGGER.debug("Saved display configuration to %s", self.path)
