from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "config.yaml"

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "ARCSYNC_SERVER_NAME": "server_name",
    "ARCSYNC_LOG_LEVEL": "log_level",
    "ARCSYNC_DATABASE_PATH": "database_path",
    "ARCSYNC_STORAGE_BACKEND": "storage.backend",
    "ARCSYNC_STORAGE_PATH": "storage.local_path",
    "S3_BUCKET_NAME": "storage.s3_bucket",
    "ARCSYNC_S3_PREFIX": "storage.s3_prefix",
    "ARCSYNC_OCR_COMMAND": "ocr.command",
    "ARCSYNC_OCR_LANGUAGES": "ocr.languages",
    "ARCSYNC_RECOVER_JOBS": "jobs.recover_on_startup",
    "ARCSYNC_WARMUP_ENABLED": "warmup.enabled",
}

_BOOLEAN_KEYS = {"jobs.recover_on_startup", "warmup.enabled"}


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Collect configuration overrides from environment variables.

    Values from a ``.env`` file in the working directory are loaded first and
    never replace variables that are already set.

    Returns:
        A nested dictionary suitable for ``make_runtime_config``
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    overrides: Dict[str, Any] = {}
    for env_name, dotted_key in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        value: Any = _parse_bool(raw) if dotted_key in _BOOLEAN_KEYS else raw
        node = overrides
        *parents, leaf = dotted_key.split(".")
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value
    return overrides


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Merge overrides onto the packaged defaults.

    The defaults are put in struct mode, so an override naming a key that
    does not exist in ``config.yaml`` raises instead of being silently kept.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    cli_config = OmegaConf.create(overrides or {})
    merged = DictConfig(OmegaConf.merge(base, cli_config))
    return merged
