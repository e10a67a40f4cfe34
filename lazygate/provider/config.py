"""
Global provider configuration loading.

Providers are declared in a TOML document (CONFIG_DIR/_global.toml by
default), one table per provider, iterated in declaration order:

    [providers.openrouter]
    discovery_type = "remote"
    api_base = "https://openrouter.ai/api/v1"
    api_key = "..."

    [providers.local]
    discovery_type = "local"
    binary_path = "/usr/local/bin/llama-server"
    args = ["--ctx-size", "8192"]

    [providers.local.quantization]
    precision = "Q4_K_M"
    tiebreak_strategy = "popular"

Unlike routes, a bad provider definition is never skipped: an unknown
discovery_type, a missing api_base/binary_path or an unknown key makes
the whole document invalid and raises ConfigError. A missing file is
replaced by an empty default document.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Union

from pydantic import ValidationError

from lazygate.logging_config import logger
from lazygate.models import GlobalConfig
from lazygate.routing.exceptions import ConfigError
from lazygate.storage.route_store import write_toml_atomic


def _ensure_default(path: Path) -> None:
    logger.info("Global provider config %s not found; creating empty default", path)
    try:
        write_toml_atomic(path, {"providers": {}})
    except OSError as exc:
        raise ConfigError(f"Cannot create default provider config at {path}: {exc}") from exc


def load_global_config(path: Union[str, Path]) -> GlobalConfig:
    """
    Parse and validate the global provider configuration.
    """
    path = Path(path)
    if not path.exists():
        _ensure_default(path)

    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Provider config {path} is not valid TOML: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read provider config {path}: {exc}") from exc

    try:
        config = GlobalConfig.model_validate(data)
    except ValidationError as exc:
        logger.error("Provider config %s failed validation: %s", path, exc)
        raise ConfigError(f"Provider config {path} is invalid: {exc}") from exc

    logger.debug(
        "Loaded %d providers from %s: %s",
        len(config.providers),
        path,
        ", ".join(config.providers),
    )
    return config


class GlobalConfigLoader:
    """
    Callable that re-reads the global config from a fixed path.

    The resolver calls it once per resolution attempt so edits (for
    example rotated api keys) apply without restarting the gateway.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def __call__(self) -> GlobalConfig:
        return load_global_config(self.path)


__all__ = ["GlobalConfigLoader", "load_global_config"]
