"""Environment variable utilities.

Expands ${VAR_NAME} references in configuration values so secrets such as
provider credentials and the fixity service token can stay out of YAML.

Uses python-dotenv for .env file loading.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional, Union

from dotenv import load_dotenv

__all__ = ["expand_env_vars", "expand_options", "load_env_file"]

# ${VAR_NAME}, ${VAR_NAME:-default} or $VAR_NAME
ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def load_env_file(
    path: Optional[Union[str, Path]] = None,
    *,
    override: bool = False,
) -> bool:
    """Load environment variables from a .env file.

    Args:
        path: Path to .env file. If None, python-dotenv searches the current
              directory and its parents.
        override: If True, override existing environment variables.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    return load_dotenv(dotenv_path=path, override=override)


def expand_env_vars(value: str, *, strict: bool = False) -> str:
    """Expand environment variables in a string.

    Args:
        value: String potentially containing env var references
        strict: If True, raise KeyError for missing variables

    Returns:
        String with environment variables expanded. Unset variables take
        their ``:-`` default when one is given and are otherwise left
        untouched unless ``strict`` is set.

    Example:
        >>> os.environ["CHECK_PLEASE_TOKEN"] = "secret"
        >>> expand_env_vars("${CHECK_PLEASE_TOKEN}")
        'secret'
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1) or match.group(3)
        default = match.group(2)
        env_value = os.environ.get(var_name)
        if env_value is None:
            if default is not None:
                return default
            if strict:
                raise KeyError(f"Environment variable not set: {var_name}")
            return str(match.group(0))
        return env_value

    return ENV_VAR_PATTERN.sub(replacer, value)


def expand_options(options: Any, *, strict: bool = False) -> Any:
    """Recursively expand environment variables in a loaded YAML document.

    Walks dicts and lists of any depth; only string values are expanded.

    Example:
        >>> os.environ["AWS_BUCKET"] = "preservation-bucket"
        >>> expand_options({"storage_providers": [{"container_name": "${AWS_BUCKET}"}]})
        {'storage_providers': [{'container_name': 'preservation-bucket'}]}
    """
    if isinstance(options, str):
        return expand_env_vars(options, strict=strict)
    if isinstance(options, dict):
        return {key: expand_options(value, strict=strict) for key, value in options.items()}
    if isinstance(options, list):
        return [expand_options(item, strict=strict) for item in options]
    return options
