"""
Persisted route storage.

One TOML document per model lives directly under the storage root:

    <CONFIG_DIR>/<storage key>.toml

The storage key is the model name percent-encoded into a single path
component, so `Qwen/Qwen2.5-7B` is stored as `Qwen%2FQwen2.5-7B.toml`.
Names starting with "_" are reserved for special files such as the
global provider config, and dot-files are in-flight temporary writes;
neither is ever reported as a model.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote, unquote

import tomli_w
from pydantic import ValidationError

from lazygate.logging_config import logger
from lazygate.models import ModelRoute
from lazygate.routing.exceptions import InvalidPersistedState, SecurityRejection


ROUTE_SUFFIX = ".toml"
RESERVED_PREFIX = "_"


def secure_path(base: Union[str, os.PathLike], name: str) -> str:
    """
    Join `name` onto `base` such that the result can never leave `base`.

    Parent-directory segments are collapsed against a virtual root before
    joining, so "../etc/passwd" maps to "<base>/etc/passwd" instead of
    escaping. Names that collapse to nothing are rejected.
    """
    if not name or "\x00" in name:
        raise SecurityRejection("empty or NUL-containing path component")

    base_abs = os.path.abspath(base)
    relative = os.path.normpath("/" + name.replace("\\", "/")).lstrip("/")
    if not relative or relative == ".":
        raise SecurityRejection("path collapses to the storage root")

    candidate = os.path.join(base_abs, relative)
    if os.path.commonpath([base_abs, candidate]) != base_abs:
        raise SecurityRejection("path escapes the storage root")
    return candidate


def storage_key(model_name: str) -> str:
    """
    Return the filesystem-safe, reversible key for a model name.
    """
    if not model_name or "\x00" in model_name:
        raise SecurityRejection("empty or NUL-containing model name")
    key = quote(model_name, safe="")
    if key in (".", ".."):
        raise SecurityRejection("model name is a relative path")
    # Leading "_" and "." name the provider document and temp files.
    if key.startswith(RESERVED_PREFIX):
        key = "%5F" + key[1:]
    elif key.startswith("."):
        key = "%2E" + key[1:]
    return key


def write_toml_atomic(path: Path, data: Dict[str, Any]) -> None:
    """
    Serialise `data` to `path` through a temporary sibling and os.replace.

    Readers either see the previous complete document or the new one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    try:
        with os.fdopen(fd, "wb") as fh:
            tomli_w.dump(data, fh)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


class RouteStore:
    """
    Read/write persisted ModelRoute records under a fixed storage root.
    """

    def __init__(self, root: Union[str, os.PathLike]) -> None:
        self.root = Path(os.path.abspath(root))

    def path_for(self, model_name: str) -> Path:
        return Path(secure_path(self.root, storage_key(model_name) + ROUTE_SUFFIX))

    def exists(self, model_name: str) -> bool:
        return self.path_for(model_name).is_file()

    def load(self, model_name: str) -> Optional[ModelRoute]:
        """
        Return the persisted route, None when absent.

        Raises InvalidPersistedState when the file exists but is not a
        valid route document.
        """
        path = self.path_for(model_name)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("route_store: failed reading route for %r: %s", model_name, exc)
            raise InvalidPersistedState(
                f"Persisted route for {model_name!r} cannot be read"
            ) from exc

        try:
            data = tomllib.loads(raw)
        except tomllib.TOMLDecodeError as exc:
            raise InvalidPersistedState(
                f"Persisted route for {model_name!r} is not valid TOML",
                details={"error": str(exc)},
            ) from exc

        try:
            return ModelRoute.model_validate(data)
        except ValidationError as exc:
            raise InvalidPersistedState(
                f"Persisted route for {model_name!r} is malformed",
                details={
                    "errors": [
                        {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
                        for err in exc.errors()
                    ]
                },
            ) from exc

    def save(self, model_name: str, route: ModelRoute) -> Path:
        path = self.path_for(model_name)
        write_toml_atomic(path, route.model_dump(mode="json", exclude_none=True))
        logger.info("route_store: persisted route for %r (provider=%r)", model_name, route.provider)
        return path

    def delete(self, model_name: str) -> bool:
        path = self.path_for(model_name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("route_store: removed route for %r", model_name)
        return True

    def list_models(self) -> List[str]:
        """
        Model names that currently have a persisted route, sorted.
        """
        if not self.root.is_dir():
            return []
        names: List[str] = []
        for entry in self.root.iterdir():
            name = entry.name
            if not entry.is_file() or not name.endswith(ROUTE_SUFFIX):
                continue
            if name.startswith((RESERVED_PREFIX, ".")):
                continue
            names.append(unquote(name[: -len(ROUTE_SUFFIX)]))
        return sorted(names)


__all__ = ["RouteStore", "secure_path", "storage_key", "write_toml_atomic"]
