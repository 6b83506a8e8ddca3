"""
Config Loader
=============

Loads ``AggregatorConfig`` from YAML files (sync + async).

Resolution:
- No path → built-in defaults
- Path given → the file must exist; an empty file means defaults
- ``LOGLEVEL`` in the environment overrides ``log_level``
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import aiofiles
import structlog
import yaml

from subagent_aggregator.core.domain.config_schema import (
    AggregatorConfig,
    ConfigValidationError,
    validate_aggregator_config,
)
from subagent_aggregator.core.domain.errors import ConfigError

logger = structlog.get_logger(__name__)

LOGLEVEL_ENV = "LOGLEVEL"


def load_aggregator_config(
    path: str | Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> AggregatorConfig:
    """Load the aggregator configuration.

    Args:
        path: YAML file to read. None returns the defaults.
        env: Environment to read overrides from (defaults to ``os.environ``).

    Returns:
        Validated configuration.

    Raises:
        ConfigError: The file does not exist or is not valid YAML.
        ConfigValidationError: The content does not match the schema.
    """
    if path is None:
        return _build({}, None, env)

    config_file = _resolve(path)
    with open(config_file, encoding="utf-8") as f:
        raw = f.read()
    return _build(_parse_yaml(raw, config_file), config_file, env)


async def aload_aggregator_config(
    path: str | Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> AggregatorConfig:
    """Load the aggregator configuration without blocking the event loop.

    Same semantics as :func:`load_aggregator_config`, reading via ``aiofiles``.
    """
    if path is None:
        return _build({}, None, env)

    config_file = _resolve(path)
    async with aiofiles.open(config_file, encoding="utf-8") as f:
        raw = await f.read()
    return _build(_parse_yaml(raw, config_file), config_file, env)


def _resolve(path: str | Path) -> Path:
    config_file = Path(path)
    if not config_file.exists():
        raise ConfigError(
            f"Aggregator config not found: {config_file}",
            details={"path": str(config_file)},
        )
    return config_file


def _parse_yaml(raw: str, config_file: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigError(
            f"Invalid YAML in {config_file}: {exc}",
            details={"path": str(config_file)},
        ) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigValidationError(
            f"Expected a mapping at the top level, got {type(data).__name__}",
            file_path=config_file,
        )
    return data


def _build(
    data: dict[str, Any],
    config_file: Path | None,
    env: Mapping[str, str] | None,
) -> AggregatorConfig:
    environ = os.environ if env is None else env
    level = environ.get(LOGLEVEL_ENV)
    if level:
        data = {**data, "log_level": level}

    config = validate_aggregator_config(data, file_path=config_file)
    logger.debug(
        "config_loader.loaded",
        path=str(config_file) if config_file else None,
        fallback_topics=config.fallback_topics,
        log_level=config.log_level,
    )
    return config
