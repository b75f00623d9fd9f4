import json
import sys
import logging
from pathlib import Path
from typing import Dict, Any, Optional
import os

logger = logging.getLogger(__name__)

APP_DIR_NAME = 'KeyAggregator'


def get_app_data_dir():
    """Returns the directory for application data (config, logs, key cache)"""
    if getattr(sys, 'frozen', False):
        # Frozen build: per-user data directory
        if os.name == 'nt':  # Windows
            appdata_dir = Path(os.getenv('LOCALAPPDATA', Path.home() / 'AppData' / 'Local'))
            app_data_dir = appdata_dir / APP_DIR_NAME
        else:  # Linux/Mac
            app_data_dir = Path.home() / '.config' / APP_DIR_NAME.lower()
    else:
        # Dev mode
        app_data_dir = Path(__file__).parent.parent / 'app_data'

    app_data_dir.mkdir(parents=True, exist_ok=True)
    return app_data_dir


class ConfigManager:
    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else self._get_config_path()
        self.config = self._load_config()

    def _get_config_path(self) -> Path:
        """Returns the path of the config file"""
        return get_app_data_dir() / 'config.json'

    def _get_default_config(self) -> dict:
        """Returns the default configuration"""
        return {
            'proxy': {
                'host': '127.0.0.1',
                'port': 5100,
                'upstream_url': 'https://api.daidaibird.top',
                'max_attempts': 3,
                'connect_timeout': 10,
                'read_timeout': 300,
                'connection_limit': 100,
                'max_concurrent_requests': 50,
            },

            'management': {
                'host': '127.0.0.1',
                'port': 5101,
            },

            'keys': {
                'failure_threshold': 3,
                'cache_file': '.keys-cache.json',  # relative to the config directory
            },

            'logging': {
                'level': 'INFO',
                'max_bytes': 5 * 1024 * 1024,
                'backup_count': 5,
            }
        }

    def _load_config(self) -> Dict[str, Any]:
        """Loads the config file and merges it over the defaults"""
        default_config = self._get_default_config()

        try:
            if self.config_path.exists():
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded_config = json.load(f)
                    return self._deep_merge(default_config, loaded_config)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load config {self.config_path}: {e}")

        return default_config

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Recursive dictionary merge"""
        result = base.copy()

        for key, value in update.items():
            if (key in result and
                    isinstance(result[key], dict) and
                    isinstance(value, dict)):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def save(self) -> bool:
        """Writes the configuration to disk"""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=2, ensure_ascii=False)
            logger.info("Configuration saved")
            return True
        except OSError as e:
            logger.error(f"Failed to save config: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """Reads a value by dotted key, e.g. ``proxy.port``"""
        value = self.config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any, save: bool = False) -> bool:
        """Sets a value by dotted key"""
        keys = key.split('.')
        config_ref = self.config

        for k in keys[:-1]:
            if k not in config_ref or not isinstance(config_ref[k], dict):
                config_ref[k] = {}
            config_ref = config_ref[k]

        config_ref[keys[-1]] = value

        if save:
            return self.save()
        return True

    def get_proxy_config(self) -> Dict[str, Any]:
        """Returns the proxy surface settings"""
        return self.get('proxy', {})

    def get_management_config(self) -> Dict[str, Any]:
        """Returns the control surface settings"""
        return self.get('management', {})

    def get_keys_cache_path(self) -> Path:
        """Absolute path of the key cache file"""
        cache_file = Path(self.get('keys.cache_file', '.keys-cache.json'))
        if cache_file.is_absolute():
            return cache_file
        return self.config_path.parent / cache_file


_config_instance = None


def get_config() -> ConfigManager:
    """Returns the process-wide ConfigManager"""
    global _config_instance
    if _config_instance is None:
        _config_instance = ConfigManager()
    return _config_instance
