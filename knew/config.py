"""
Configuration management for KNEW.
"""
import os
import copy
import json
import logging
import yaml
from pathlib import Path
from typing import Any, Dict, Optional
from dotenv import load_dotenv

from knew.errors import ConfigError

# Load environment variables from .env file
load_dotenv()

# Configure logging
logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CONFIG = {
    "rate_limiting": {
        "window_seconds": 60,
        "sweep_interval_seconds": 300,
        "default": {"user_limit": 10, "ip_limit": 20},
        "endpoints": {
            "fetch-news": {"user_limit": 5, "ip_limit": 20},
            "analyze-news": {"user_limit": 20, "ip_limit": 40},
            "translate-article": {"user_limit": 20, "ip_limit": 40},
            "ai-search-news": {"user_limit": 8, "ip_limit": 20},
            "fetch-related-news": {"user_limit": 10, "ip_limit": 25},
            "fetch-personalized-feed": {"user_limit": 10, "ip_limit": 20},
            "generate-daily-newspaper": {"user_limit": 10, "ip_limit": 20},
        }
    },
    "cache": {
        "news_ttl_seconds": 600,
        "max_entries": 100,
        "analysis_memory_ttl_seconds": 86400,
        "analysis_ttl_seconds": 604800,
        "analysis_failure_ttl_seconds": 3600,
        "model_version": "gemini_2.5_flash_v1",
        "directory": "cache"
    },
    "recovery": {
        "max_retries": 6,
        "base_delay_seconds": 1,
        "max_delay_seconds": 32,
        "poll_interval_seconds": 1,
        "queue_file": "cache/recovery_queue.json"
    },
    "feed": {
        "page_size": 20,
        "cache_ttl_seconds": 600
    },
    "analysis": {
        "viewport_margin": 200
    },
    "upstream": {
        "worldnews_url": "https://api.worldnewsapi.com",
        "gateway_url": "https://ai.gateway.lovable.dev/v1",
        "model": "google/gemini-2.5-flash",
        "timeout_seconds": 30
    }
}


class Config:
    """
    Configuration manager for KNEW.
    """
    def __init__(self, config_path: Optional[str] = None, env_prefix: str = 'KNEW_'):
        """
        Initialize the Config.

        Args:
            config_path: Path to the configuration file
            env_prefix: Prefix of environment variables that override file settings
        """
        self.config_path = config_path
        self.env_prefix = env_prefix
        self.config = self._load_config()

    def _load_config(self) -> Dict:
        """
        Load configuration from file or use defaults.

        Returns:
            Configuration dictionary
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path:
            try:
                user_config = self._read_file(Path(self.config_path))
                if user_config:
                    self._update_dict(config, user_config)
            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.error(f"Error loading config from {self.config_path}: {e}")
                logger.warning("Using default configuration")

        # Override with environment variables
        self._override_from_env(config, self.env_prefix)

        return config

    def _read_file(self, path: Path) -> Optional[Dict]:
        if not path.exists():
            logger.warning(f"Config file {path} not found")
            return None
        if path.suffix.lower() in ['.yaml', '.yml']:
            with open(path, 'r') as f:
                return yaml.safe_load(f)
        if path.suffix.lower() == '.json':
            with open(path, 'r') as f:
                return json.load(f)
        raise ValueError(f"Unsupported config file format: {path.suffix}")

    def _update_dict(self, target: Dict, source: Dict) -> None:
        """
        Recursively update a dictionary.

        Args:
            target: Target dictionary to update
            source: Source dictionary with new values
        """
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._update_dict(target[key], value)
            else:
                target[key] = value

    def _override_from_env(self, config: Dict, prefix: str) -> None:
        """
        Override configuration with environment variables.

        ``KNEW_CACHE_NEWS_TTL_SECONDS=300`` lands on ``cache.news_ttl_seconds``:
        the first segment picks the section and the remaining segments are
        matched greedily against the keys that already exist there.

        Args:
            config: Configuration dictionary to update
            prefix: Prefix for environment variables
        """
        for key, value in os.environ.items():
            if not key.startswith(prefix) or key == f"{prefix}CONFIG_PATH":
                continue

            parts = key[len(prefix):].lower().split('_')
            current = config
            while parts:
                # Prefer the longest run of segments that names an existing key
                for size in range(len(parts), 0, -1):
                    candidate = '_'.join(parts[:size])
                    if candidate in current:
                        break
                else:
                    size = 1
                    candidate = parts[0]

                parts = parts[size:]
                if not parts:
                    current[candidate] = self._parse_value(value)
                    break
                if not isinstance(current.get(candidate), dict):
                    current[candidate] = {}
                current = current[candidate]

    @staticmethod
    def _parse_value(value: str) -> Any:
        try:
            # Try to parse as JSON
            return json.loads(value)
        except json.JSONDecodeError:
            # If not valid JSON, use as string
            return value

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Dot-separated key path (e.g., 'cache.news_ttl_seconds')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        current = self.config

        for part in key.split('.'):
            if not isinstance(current, dict) or part not in current:
                return default
            current = current[part]

        return current

    def require(self, key: str) -> Any:
        """Like get(), but a missing key is a ConfigError."""
        value = self.get(key)
        if value is None:
            raise ConfigError(f"Missing configuration value: {key}")
        return value

    def save(self, path: Optional[str] = None) -> bool:
        """
        Save the current configuration to a file.

        Args:
            path: Path to save the configuration to

        Returns:
            True if successful, False otherwise
        """
        save_path = path or self.config_path
        if not save_path:
            logger.error("No path specified for saving configuration")
            return False

        try:
            path = Path(save_path)
            if path.suffix.lower() in ['.yaml', '.yml']:
                with open(path, 'w') as f:
                    yaml.dump(self.config, f, default_flow_style=False)
            elif path.suffix.lower() == '.json':
                with open(path, 'w') as f:
                    json.dump(self.config, f, indent=2)
            else:
                raise ValueError(f"Unsupported config file format: {path.suffix}")

            return True
        except (OSError, ValueError) as e:
            logger.error(f"Error saving config to {save_path}: {e}")
            return False


# Global configuration instance
config = Config(os.getenv('KNEW_CONFIG_PATH'))

def get_config(key: str, default: Any = None) -> Any:
    """
    Get a configuration value.

    Args:
        key: Dot-separated key path (e.g., 'feed.page_size')
        default: Default value if key not found

    Returns:
        Configuration value
    """
    return config.get(key, default)
