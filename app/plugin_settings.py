import os
import json
import logging
import configparser
from dataclasses import dataclass
from typing import Optional

import settings


class SettingsError(Exception):
    """Data source instance settings cannot be used."""


@dataclass
class PluginSettings:
    path: str = settings.OPENWEATHER_FORECAST_URL
    api_key: str = ""
    health_check_city: str = settings.HEALTH_CHECK_CITY
    forecast_log_dir: Optional[str] = None
    timeout: float = settings.REQUEST_TIMEOUT


def _json_object(raw, name):
    """jsonData may arrive already decoded or as the raw JSON text."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise SettingsError(f"{name}: {e}")
    if not isinstance(raw, dict):
        raise SettingsError(f"{name}: expected an object, got {type(raw).__name__}")
    return raw


def _timeout(value):
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        raise SettingsError(f"timeout: invalid value {value!r}")
    if timeout <= 0:
        raise SettingsError(f"timeout: must be positive, got {value!r}")
    return timeout


def load_plugin_settings(instance_settings):
    """
    Build PluginSettings from Grafana data source instance settings.

    Reads 'jsonData' (path, healthCheckCity, forecastLogDir, timeout) and the
    API key from 'decryptedSecureJsonData'.
    """
    json_data = _json_object(instance_settings.get("jsonData"), "jsonData")
    secure = instance_settings.get("decryptedSecureJsonData") or {}

    plugin_settings = PluginSettings()
    path = json_data.get("path") or json_data.get("url")
    if path:
        plugin_settings.path = path
    plugin_settings.api_key = secure.get("apiKey", "") or ""
    if "healthCheckCity" in json_data:
        plugin_settings.health_check_city = json_data["healthCheckCity"] or ""
    plugin_settings.forecast_log_dir = json_data.get("forecastLogDir") or None
    if json_data.get("timeout") is not None:
        plugin_settings.timeout = _timeout(json_data["timeout"])
    return plugin_settings


def _load_config(file_path):
    """Load provisioning defaults from an INI file."""
    config = configparser.ConfigParser()
    loaded = config.read(file_path)
    if loaded:
        logging.info(f"CONFIG   : Configuration file '{file_path}' loaded.")
    else:
        logging.warning(f"CONFIG   : Configuration file '{file_path}' not found, using defaults.")
    return config


def load_default_settings(file_path=settings.DATASOURCE_CONFIG):
    """
    Instance settings for requests that carry none, shaped like the ones
    Grafana sends so they go through load_plugin_settings as well.
    """
    config = _load_config(file_path)
    section = config[settings.CONFIG_SECTION] if config.has_section(settings.CONFIG_SECTION) else {}

    def option(name):
        value = section.get(name)
        return value.strip('"\'') if value is not None else None

    json_data = {}
    if option("path"):
        json_data["path"] = option("path")
    if option("health_check_city") is not None:
        json_data["healthCheckCity"] = option("health_check_city")
    if option("forecast_log_dir"):
        json_data["forecastLogDir"] = option("forecast_log_dir")
    if option("timeout"):
        json_data["timeout"] = option("timeout")

    api_key = option("api_key") or os.environ.get("OPENWEATHER_API_KEY", "")

    return {
        "uid": "default",
        "updated": 0,
        "jsonData": json_data,
        "decryptedSecureJsonData": {"apiKey": api_key},
    }
