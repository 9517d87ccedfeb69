"""Load and save the telecode JSON config file."""

import re
from pathlib import Path
from typing import Any, Callable

from loguru import logger
from pydantic import ValidationError

from telecode.config.schema import Config
from telecode.utils.helpers import read_json_file, write_json_file

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def get_config_path() -> Path:
    return Path.home() / ".telecode" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Build the runtime config.

    Keys in the file are camelCase (``botToken``, ``serverUrl``) and win over
    ``TELECODE_*`` environment variables. A missing or broken file is not
    fatal: the settings then come from the environment and defaults only.
    """
    path = config_path or get_config_path()
    data = read_json_file(path, default=None)
    if data is None:
        return Config()
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {path}: top-level value must be an object")
        return Config()
    try:
        return Config(**convert_keys(data))
    except ValidationError as e:
        logger.warning(f"Invalid config in {path}, falling back to environment: {e}")
        return Config()


def save_config(config: Config, config_path: Path | None = None) -> Path:
    """Write ``config`` as camelCase JSON, readable by the owner only."""
    path = config_path or get_config_path()
    write_json_file(path, convert_to_camel(config.model_dump()))
    path.chmod(0o600)
    return path


def _rename_keys(data: Any, rename: Callable[[str], str]) -> Any:
    if isinstance(data, dict):
        return {rename(key): _rename_keys(value, rename) for key, value in data.items()}
    if isinstance(data, list):
        return [_rename_keys(item, rename) for item in data]
    return data


def convert_keys(data: Any) -> Any:
    """camelCase keys -> snake_case, recursively."""
    return _rename_keys(data, camel_to_snake)


def convert_to_camel(data: Any) -> Any:
    """snake_case keys -> camelCase, recursively."""
    return _rename_keys(data, snake_to_camel)


def camel_to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)
