"""
Settings loading for the document AI backend.

Defaults live in ``config/config.yaml`` next to this module. At runtime they
are merged with environment variables (a ``.env`` file is honoured) and with
explicit overrides handed to :func:`load_settings`, in that order.

The step tables under ``pipeline.steps`` are validated here so that a
misconfigured deployment fails at startup instead of producing jobs whose
progress never reaches 100.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .errors import ConfigurationError

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:5]]

CONFIG_PATH = next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)
if CONFIG_PATH is None:  # pragma: no cover - fail fast in misconfigured environments
    raise FileNotFoundError("Default config.yaml could not be located; reinstall docai-backend with its package data.")

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "DOCAI_ENVIRONMENT": "app.environment",
    "DOCAI_DATABASE": "storage.database",
    "DOCAI_UPLOAD_DIR": "storage.upload_dir",
    "S3_BUCKET_NAME": "storage.s3_bucket",
    "JWT_SECRET": "auth.jwt_secret",
    "JWT_REFRESH_SECRET": "auth.jwt_refresh_secret",
    "FIREBASE_PROJECT_ID": "auth.firebase_project_id",
    "FIREBASE_CREDENTIALS_PATH": "auth.firebase_credentials_path",
    "GEMINI_API_KEY": "provider.api_key",
    "LOG_LEVEL": "logging.level",
    "DOCAI_MAX_WORKERS": "jobs.max_workers",
}

JOB_KINDS = ("process", "question_generation")


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def get_default_config_container(resolve: bool = False) -> Dict[str, Any]:
    config = _load_default_config()
    return OmegaConf.to_container(config, resolve=resolve, enum_to_str=True)  # type: ignore[return-value]


def _environment_overrides(environ: Mapping[str, str]) -> DictConfig:
    overrides = OmegaConf.create({})
    for variable, key in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value:
            OmegaConf.update(overrides, key, value, force_add=True)
    return overrides


def validate_step_tables(config: DictConfig) -> None:
    """Every job kind must declare a non-empty step table whose weights sum to 100."""
    steps = config.pipeline.steps
    for kind in JOB_KINDS:
        table: Optional[List[Any]] = steps.get(kind)
        if not table:
            raise ConfigurationError(f"No pipeline steps declared for job kind '{kind}'")

        features = [entry.feature for entry in table]
        if len(set(features)) != len(features):
            raise ConfigurationError(f"Duplicate step features declared for job kind '{kind}'")

        for entry in table:
            if int(entry.progress) < 0 or float(entry.duration) < 0:
                raise ConfigurationError(f"Step '{entry.name}' of '{kind}' has a negative weight or duration")

        total = sum(int(entry.progress) for entry in table)
        if total != 100:
            raise ConfigurationError(f"Step weights for job kind '{kind}' sum to {total}, expected 100")


def load_settings(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> DictConfig:
    """
    Build the runtime configuration.

    Args:
        overrides: Nested mapping merged last (used by tests and embedding code)
        environ: Environment to read overrides from (default: ``os.environ``)

    Returns:
        A read-only DictConfig in struct mode

    Raises:
        ConfigurationError: If a step table is invalid
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    base = OmegaConf.create(get_default_config_container(resolve=False))
    OmegaConf.set_struct(base, True)

    merged = OmegaConf.merge(base, _environment_overrides(environ), OmegaConf.create(overrides or {}))
    validate_step_tables(merged)
    OmegaConf.set_readonly(merged, True)
    return merged


def configure_logging(settings: DictConfig) -> None:
    logging.basicConfig(level=str(settings.logging.level).upper(), format=settings.logging.format)
