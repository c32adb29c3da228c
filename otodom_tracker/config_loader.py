"""Configuration loader for the Otodom district price tracker."""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, uses default locations.

    Returns:
        Dictionary with configuration values.
    """
    # Load environment variables first
    load_dotenv()

    if config_path is None:
        locations = [
            Path("config.yaml"),
            Path("config.yml"),
            Path(__file__).resolve().parent.parent / "config.yaml",
            Path.home() / ".otodom_tracker" / "config.yaml",
        ]
        for loc in locations:
            if loc.exists():
                config_path = str(loc)
                break

    if config_path is None or not Path(config_path).exists():
        raise FileNotFoundError("Configuration file not found. Please provide config.yaml")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    return _substitute_env_vars(config)


def _substitute_env_vars(obj: Any) -> Any:
    """Recursively substitute environment variables in config.

    Supports syntax: ${VAR_NAME} or ${VAR_NAME:default_value}
    """
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        return _substitute_env_string(obj)
    else:
        return obj


def _substitute_env_string(value: str) -> str:
    def replace(match):
        var_expr = match.group(1)
        if ":" in var_expr:
            var_name, default = var_expr.split(":", 1)
            return os.getenv(var_name, default)
        return os.getenv(var_expr, match.group(0))

    return _ENV_PATTERN.sub(replace, value)


def get_scraping_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Get scraping configuration."""
    return config.get("scraping", {}) or {}


def get_browser_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Get browser session configuration."""
    return config.get("browser", {}) or {}


def get_queue_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Get task queue configuration."""
    return config.get("queue", {}) or {}


def get_storage_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Get storage configuration."""
    return config.get("storage", {}) or {}


def get_cities_config(config: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Get city -> {name, districts} mapping."""
    return config.get("cities", {}) or {}


def get_city_districts(config: Dict[str, Any], city: str) -> Dict[str, str]:
    """Return district name -> search slug for one city.

    Raises:
        KeyError: If the city is not configured.
    """
    cities = get_cities_config(config)
    if city not in cities:
        raise KeyError(f"Unknown city: {city}")
    return dict(cities[city].get("districts", {}) or {})


def select_districts(config: Dict[str, Any], city: str, names: Optional[List[str]] = None) -> Dict[str, str]:
    """Filter a city's districts down to ``names`` (all when empty), keeping config order."""
    districts = get_city_districts(config, city)
    if not names:
        return districts
    wanted = {name.strip().lower() for name in names}
    selected = {name: slug for name, slug in districts.items() if name.lower() in wanted or slug in wanted}
    missing = wanted - {name.lower() for name in selected} - set(selected.values())
    if missing:
        raise KeyError(f"Unknown district(s) for {city}: {', '.join(sorted(missing))}")
    return selected


def ensure_directories(config: Dict[str, Any]):
    """Ensure all required directories exist."""
    storage = get_storage_config(config)

    sqlite_path = storage.get("sqlite", {}).get("database_path", "data/otodom_tracker.db")
    Path(sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    csv_path = storage.get("exports", {}).get("csv_path", "data/exports/csv")
    Path(csv_path).mkdir(parents=True, exist_ok=True)

    log_path = config.get("logging", {}).get("file", "data/logs/otodom_tracker.log")
    Path(log_path).parent.mkdir(parents=True, exist_ok=True)
