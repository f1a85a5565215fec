"""
podsplit Configuration Management

Layered configuration: built-in defaults, the user config file, a project
config file found by walking up from the working directory, an explicit
``--config`` file, and ``PODSPLIT_*`` environment overrides.

Usage:
    from podsplit.config import load_config

    config = load_config(Path("run.yaml"))
    batch_size = config.get("split.batch_size")
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .errors import ConfigError


ENV_PREFIX = "PODSPLIT_"


# =============================================================================
# Configuration Paths
# =============================================================================

def get_user_config_dir() -> Path:
    """Get user configuration directory."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / "podsplit"
    return Path.home() / ".config" / "podsplit"


def get_user_config_path() -> Path:
    """Get path to user configuration file."""
    return get_user_config_dir() / "config.yaml"


# =============================================================================
# Default Configuration
# =============================================================================

DEFAULT_CONFIG = {
    "version": "1.0",

    # Deduplicating chunk partitioner
    "split": {
        "batch_size": 1000000,
        "output_dir": "chunks",
        "timeout": 600,
        "strict": False,
        "workers": 1,
        "keep_temp": False,
    },

    # External binaries
    "tools": {
        "pod5": "pod5",
        "dorado": "dorado",
        "samtools": "samtools",
    },

    # Per-chunk modification basecalling
    "basecalling": {
        "model": "dna_r10.4.1_e8.2_400bps_sup@v5.2.0",
        "models_directory": None,
        "modified_bases": ["6mA"],
        "device": "cuda:all",
        "no_trim": True,
        "output_suffix": "sup_6mA",
        "min_reads": 100000,
        "min_bytes": 100000000,
    },

    # BAM -> FASTQ conversion
    "fastq": {
        "tags": ["MM", "ML"],
        "workers": 4,
    },

    # SLURM array job defaults
    "slurm": {
        "account": None,
        "partition": "ampere",
        "gres": "gpu:4",
        "cpus": 64,
        "mem": "200G",
        "time": "24:00:00",
        "concurrency": 1,
    },
}


# =============================================================================
# Configuration Class
# =============================================================================

class Config:
    """
    Configuration manager with dot-notation access and layered config support.

    Lookup order for ``get("split.batch_size")``:
    1. Environment variable ``PODSPLIT_SPLIT_BATCH_SIZE``
    2. Values set or merged into this instance
    3. Defaults
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        defaults: Optional[Dict[str, Any]] = None
    ):
        self._defaults = defaults if defaults is not None else copy.deepcopy(DEFAULT_CONFIG)
        self._config = config or {}
        self._cache: Dict[str, Any] = {}

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Dot-separated key (e.g., "split.timeout")
            default: Default value if key not found
        """
        env_key = f"{ENV_PREFIX}{key.upper().replace('.', '_')}"
        env_value = os.environ.get(env_key)
        if env_value is not None:
            return self._parse_env_value(env_value)

        if key in self._cache:
            return self._cache[key]

        value = self._get_nested(self._config, key)
        if value is not None:
            self._cache[key] = value
            return value

        value = self._get_nested(self._defaults, key)
        if value is not None:
            self._cache[key] = value
            return value

        return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value using dot notation."""
        self._set_nested(self._config, key, value)
        self._cache[key] = value

    def update(self, config: Dict[str, Any]) -> None:
        """Update configuration with dictionary."""
        self._deep_merge(self._config, config)
        self._cache.clear()

    def to_dict(self) -> Dict[str, Any]:
        """Get full configuration as dictionary."""
        result = copy.deepcopy(self._defaults)
        self._deep_merge(result, copy.deepcopy(self._config))
        return result

    def _get_nested(self, data: Dict, key: str) -> Any:
        """Get nested value using dot notation."""
        current = data
        for part in key.split("."):
            if not isinstance(current, dict) or part not in current:
                return None
            current = current[part]
        return current

    def _set_nested(self, data: Dict, key: str, value: Any) -> None:
        """Set nested value using dot notation."""
        parts = key.split(".")
        current = data
        for part in parts[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]
        current[parts[-1]] = value

    def _parse_env_value(self, value: str) -> Any:
        """Parse environment variable value to appropriate type."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        if "," in value:
            return [v.strip() for v in value.split(",")]

        return value

    def _deep_merge(self, base: Dict, override: Dict) -> None:
        """Deep merge override into base."""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def __getitem__(self, key: str) -> Any:
        return self.get(key)

    def __setitem__(self, key: str, value: Any) -> None:
        self.set(key, value)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


# =============================================================================
# Configuration Loading
# =============================================================================

def load_yaml_file(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping; a missing file is an empty mapping."""
    path = Path(path)
    if not path.exists():
        return {}

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Cannot parse configuration file: {path}",
            config_file=str(path),
            cause=e,
        ) from e

    if not isinstance(data, dict):
        raise ConfigError(
            f"Configuration file must contain a mapping: {path}",
            config_file=str(path),
        )
    return data


PROJECT_CONFIG_NAMES = [
    "podsplit.yaml",
    "podsplit.yml",
    ".podsplit.yaml",
]


def find_project_config(start_path: Optional[Path] = None) -> Optional[Path]:
    """Find project configuration file by searching up directory tree."""
    current = Path(start_path).resolve() if start_path else Path.cwd()

    while True:
        for name in PROJECT_CONFIG_NAMES:
            config_path = current / name
            if config_path.exists():
                return config_path
        if current == current.parent:
            return None
        current = current.parent


def load_config(
    path: Optional[Union[str, Path]] = None,
    project_path: Optional[Path] = None,
) -> Config:
    """
    Build a Config from the user file, the project file and an explicit file.

    Args:
        path: Explicit config file, merged last; must exist if given
        project_path: Directory to start the project config search from
    """
    config = Config(config=load_yaml_file(get_user_config_path()))

    project_file = find_project_config(project_path)
    if project_file:
        config.update(load_yaml_file(project_file))

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(
                f"Configuration file not found: {path}",
                config_file=str(path),
            )
        config.update(load_yaml_file(path))

    return config


# =============================================================================
# Environment Detection
# =============================================================================

def get_slurm_info() -> Optional[Dict[str, str]]:
    """Get SLURM job information if available."""
    if not os.environ.get("SLURM_JOB_ID"):
        return None

    return {
        "job_id": os.environ.get("SLURM_JOB_ID", ""),
        "array_job_id": os.environ.get("SLURM_ARRAY_JOB_ID", ""),
        "array_task_id": os.environ.get("SLURM_ARRAY_TASK_ID", ""),
        "job_name": os.environ.get("SLURM_JOB_NAME", ""),
        "partition": os.environ.get("SLURM_JOB_PARTITION", ""),
        "nodes": os.environ.get("SLURM_JOB_NODELIST", ""),
        "cpus": os.environ.get("SLURM_CPUS_PER_TASK", ""),
        "gpus": os.environ.get("SLURM_GPUS", ""),
    }
