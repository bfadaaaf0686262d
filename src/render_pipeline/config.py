import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from pydantic import ValidationError

from .models import PipelineSettings

DEFAULT_CONFIG_PATH = Path("config/default.yaml")

# Environment variable -> dotted settings path
ENV_VARS = {
    "RENDER_QUEUE_URL": "queue.url",
    "RENDER_QUEUE_NAME": "queue.name",
    "DATABASE_URL": "store.database_url",
    "FFMPEG_PATH": "encoder.ffmpeg_path",
    "ENCODER_TIMEOUT_S": "encoder.global_timeout_s",
    "ENCODER_NO_PROGRESS_TIMEOUT_S": "encoder.no_progress_timeout_s",
    "RENDER_WORK_DIR": "encoder.work_dir",
    "WATERMARK_PATH": "effects.watermark_path",
    "STORAGE_BACKEND": "storage.backend",
    "OUTPUT_DIR": "storage.output_dir",
    "OUTPUT_BASE_URL": "storage.base_url",
    "S3_BUCKET": "storage.bucket",
    "S3_PREFIX": "storage.prefix",
    "S3_REGION": "storage.region",
    "S3_ENDPOINT_URL": "storage.endpoint_url",
    "S3_PUBLIC_BASE_URL": "storage.public_base_url",
    "MAX_RETRIES": "worker.max_retries",
    "RENDER_WORKERS": "worker.workers",
    "RETRY_BACKOFF_S": "worker.retry_backoff_s",
    "LOG_LEVEL": "log_level",
}


class ConfigError(Exception):
    """Malformed configuration. Fatal at startup, never a per-job failure."""


def get_config_value(config: Union[PipelineSettings, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: PipelineSettings model or dict
        path: Dot-separated path like "worker.max_retries"
        default: Default value if not found
    """
    if isinstance(config, PipelineSettings):
        config = config.model_dump()

    value = config
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def set_path(data: Dict[str, Any], path: str, value: Any) -> None:
    keys = path.split(".")
    node = data
    for key in keys[:-1]:
        node = node.setdefault(key, {})
    node[keys[-1]] = value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at top level")
    return data


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Collect settings from environment variables (empty values are ignored)."""
    data: Dict[str, Any] = {}
    for var, path in ENV_VARS.items():
        value = environ.get(var)
        if value is None or value.strip() == "":
            continue
        value = value.strip()
        if var == "LOG_LEVEL":
            value = value.upper()
        set_path(data, path, value)
    return data


def load_settings(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    config_path: Optional[Path] = None,
) -> PipelineSettings:
    """
    Resolve settings: Defaults < YAML < Environment < overrides.

    Validation happens here, once. Any malformed value raises ConfigError.
    Overrides use dotted paths, e.g. {"worker.workers": 4}; None values are skipped.
    """
    environ = os.environ if environ is None else environ

    if config_path is None:
        config_path = Path(environ.get("RENDER_CONFIG") or DEFAULT_CONFIG_PATH)

    data = load_yaml(config_path)
    data = merge_dicts(data, env_overrides(environ))

    for path, value in (overrides or {}).items():
        if value is not None:
            set_path(data, path, value)

    try:
        return PipelineSettings.from_dict(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
