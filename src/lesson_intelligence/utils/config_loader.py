"""Configuration loading and validation for the lesson intelligence system.

This module provides utilities to load system configuration from YAML files,
resolve relative paths to absolute paths based on project root, and validate
stage tuning, retry budgets and filesystem locations.

Typical usage example:
    config = Config.load()
    errors = Config.validate(config)
    if errors:
        raise ConfigurationError(f"Configuration invalid: {errors}")
"""

import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models.data_structures import Stage


class SystemConfig:
    """Container for system configuration parameters.

    Attributes:
        paths: Dictionary containing filesystem paths (data_dir, blob_dir).
        database: Dictionary containing database configuration (path, etc.).
        storage: Dictionary containing blob store configuration.
        pipeline: Dictionary containing stage, retry and lease configuration.
        rasterization: Dictionary containing PDF rendering configuration.
        llm: Dictionary containing LLM provider configuration.
        speech: Dictionary containing speech synthesis configuration.
        logging: Dictionary containing logging configuration.
    """

    REQUIRED_SECTIONS = [
        "paths",
        "database",
        "storage",
        "pipeline",
        "rasterization",
        "llm",
        "logging",
    ]

    def __init__(self, **config_dict: Dict[str, Any]) -> None:
        """Initialize SystemConfig from configuration dictionary.

        Args:
            **config_dict: Configuration dictionary with the sections listed
                in REQUIRED_SECTIONS; 'speech' is optional.

        Raises:
            KeyError: If any required configuration section is missing.
        """
        missing_keys = [
            key for key in self.REQUIRED_SECTIONS if key not in config_dict
        ]
        if missing_keys:
            raise KeyError(f"Missing required configuration sections: {missing_keys}")

        self.paths: Dict[str, str] = config_dict["paths"]
        self.database: Dict[str, Any] = config_dict["database"]
        self.storage: Dict[str, Any] = config_dict["storage"]
        self.pipeline: Dict[str, Any] = config_dict["pipeline"]
        self.rasterization: Dict[str, Any] = config_dict["rasterization"]
        self.llm: Dict[str, Any] = config_dict["llm"]
        self.speech: Dict[str, Any] = config_dict.get("speech") or {}
        self.logging: Dict[str, Any] = config_dict["logging"]

    def get(self, section: str, default: Any = None) -> Any:
        """Return a configuration section by name, or `default`."""
        return getattr(self, section, default)

    def stage_settings(self, stage: Stage) -> Dict[str, Any]:
        """Return the tuning block of one stage (may be empty)."""
        return (self.pipeline.get("stages") or {}).get(stage.value) or {}


class Config:
    """Static utility class for loading and validating configuration files."""

    # Configuration keys that contain relative paths
    # These will be automatically resolved to absolute paths during loading
    _RELATIVE_PATH_KEYS = [
        "paths.data_dir",
        "paths.blob_dir",
        "database.path",
        "logging.log_dir",
    ]

    @staticmethod
    def default_project_root() -> Path:
        """Project root, four levels up from this file (src layout)."""
        return Path(__file__).resolve().parent.parent.parent.parent

    @staticmethod
    def _resolve_nested_path(
        config_dict: Dict[str, Any], key_path: str, project_root: Path
    ) -> None:
        """Resolve a nested config path to absolute path in-place.

        Args:
            config_dict: Configuration dictionary to modify in-place.
            key_path: Dot-separated path to the key (e.g., "paths.data_dir").
            project_root: Project root directory for resolving relative paths.

        Raises:
            KeyError: If any key in the path doesn't exist in config_dict.
        """
        keys = key_path.split(".")
        current = config_dict

        for key in keys[:-1]:
            current = current[key]

        final_key = keys[-1]
        current[final_key] = str(project_root / current[final_key])

    @staticmethod
    def load(
        config_path: Optional[str] = "config/pipeline_config.yaml",
        project_root: Optional[Path] = None,
    ) -> SystemConfig:
        """Load system configuration from a YAML file.

        Reads configuration from the specified YAML file and resolves all
        relative paths in _RELATIVE_PATH_KEYS against the project root.

        Args:
            config_path: Path to the configuration YAML file, absolute or
                relative to the project root.
            project_root: Directory used to resolve relative paths. Defaults
                to the repository root.

        Returns:
            SystemConfig object containing the loaded and resolved configuration.

        Raises:
            FileNotFoundError: If the configuration file does not exist.
            yaml.YAMLError: If the configuration file is not valid YAML.
            KeyError: If required configuration keys are missing.
            ValueError: If the configuration file doesn't contain a dictionary.
        """
        if project_root is None:
            project_root = Config.default_project_root()
        project_root = Path(project_root)

        config_file_path = Path(config_path)
        if not config_file_path.is_absolute():
            config_file_path = project_root / config_file_path

        if not config_file_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_file_path}")

        try:
            with open(config_file_path, "r", encoding="utf-8") as f:
                config_dict = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(
                f"Failed to parse configuration file: {config_file_path}"
            ) from e

        if not isinstance(config_dict, dict):
            raise ValueError("Configuration file must contain a YAML dictionary")

        for path_key in Config._RELATIVE_PATH_KEYS:
            try:
                Config._resolve_nested_path(config_dict, path_key, project_root)
            except KeyError as e:
                raise KeyError(
                    f"Missing required configuration path: {path_key}"
                ) from e

        return SystemConfig(**config_dict)

    @staticmethod
    def validate(config: SystemConfig) -> List[str]:
        """Validate stage tuning, retry budget, providers and paths.

        Args:
            config: SystemConfig object to validate.

        Returns:
            List of error messages. Empty list if the configuration is valid.
        """
        errors: List[str] = []
        known_stages = {stage.value for stage in Stage}

        stages = config.pipeline.get("stages") or {}
        for name, settings in stages.items():
            if name not in known_stages:
                errors.append(f"Unknown stage in pipeline.stages: {name}")
                continue
            settings = settings or {}
            for key in ("batch_size", "max_concurrency"):
                value = settings.get(key, 1)
                if not isinstance(value, int) or value < 1:
                    errors.append(
                        f"pipeline.stages.{name}.{key} must be a positive integer, "
                        f"got {value!r}"
                    )

        retry = config.pipeline.get("retry") or {}
        max_attempts = retry.get("max_attempts", 1)
        if not isinstance(max_attempts, int) or max_attempts < 1:
            errors.append(
                f"pipeline.retry.max_attempts must be >= 1, got {max_attempts!r}"
            )
        for key in ("initial_delay_seconds", "max_delay_seconds"):
            value = retry.get(key, 0)
            if not isinstance(value, (int, float)) or value < 0:
                errors.append(f"pipeline.retry.{key} must be >= 0, got {value!r}")
        backoff = retry.get("backoff_base", 2.0)
        if not isinstance(backoff, (int, float)) or backoff < 1:
            errors.append(f"pipeline.retry.backoff_base must be >= 1, got {backoff!r}")
        jitter = retry.get("jitter", 0.0)
        if not isinstance(jitter, (int, float)) or not 0 <= jitter <= 1:
            errors.append(f"pipeline.retry.jitter must be in [0, 1], got {jitter!r}")

        primary = config.llm.get("primary_provider") or {}
        if not primary.get("name"):
            errors.append("llm.primary_provider.name is required")
        if not primary.get("api_key_env"):
            errors.append("llm.primary_provider.api_key_env is required")

        dpi = config.rasterization.get("dpi", 144)
        if not isinstance(dpi, int) or not 36 <= dpi <= 600:
            errors.append(f"rasterization.dpi must be in [36, 600], got {dpi!r}")

        # Format: (config_key, path_value, should_be_dir)
        paths_to_check = [
            ("paths.data_dir", config.paths.get("data_dir"), True),
            ("paths.blob_dir", config.paths.get("blob_dir"), True),
            ("logging.log_dir", config.logging.get("log_dir"), True),
            ("database.path", config.database.get("path"), False),
        ]
        for path_key, path_value, should_be_dir in paths_to_check:
            if not path_value:
                errors.append(f"Missing path for {path_key}")
                continue
            path_obj = Path(path_value)
            # Directories and the database file are created on first use
            if not path_obj.exists():
                continue
            if should_be_dir and not path_obj.is_dir():
                errors.append(
                    f"Expected directory for {path_key}, but found file: {path_value}"
                )
            elif not should_be_dir and path_obj.is_dir():
                errors.append(
                    f"Expected file for {path_key}, but found directory: {path_value}"
                )

        return errors
