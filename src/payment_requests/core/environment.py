"""
Environment layering for the payment request service.

Settings come from three places: the process environment, an optional
``.env`` file and explicit overrides. The result is a read-only
:class:`ServiceEnvironment` consumed by
:class:`payment_requests.core.config.ServiceConfig`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, MutableMapping, Optional

from .errors import ConfigError

__all__ = [
    "ENV_PREFIX",
    "ServiceEnvironment",
    "build_environment",
    "load_env_file",
]

ENV_PREFIX = "PAYREQ_"


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    # unquoted values may carry a trailing " # comment"
    marker = value.find(" #")
    return value[:marker].rstrip() if marker >= 0 else value


def _parse_env_file(path: Path) -> Dict[str, str]:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        logging.debug("No env file at %s", path)
        return {}

    entries: Dict[str, str] = {}
    for number, raw_line in enumerate(lines, start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            logging.warning("%s:%d: ignoring line without KEY=VALUE", path, number)
            continue
        entries[key] = _unquote(value.strip())
    return entries


def load_env_file(
    path: str = ".env",
    *,
    environ: Optional[MutableMapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Copy the entries of ``path`` into ``environ`` without clobbering keys
    that are already set, and return the merged mapping.
    """
    target: MutableMapping[str, str] = environ if environ is not None else os.environ
    for key, value in _parse_env_file(Path(path)).items():
        target.setdefault(key, value)
    return dict(target)


@dataclass(frozen=True)
class ServiceEnvironment:
    """
    A resolved set of environment variables. Empty strings read as unset.
    """

    variables: Mapping[str, str]

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.variables.get(key)
        if value is None or value == "":
            return default
        return value

    def require(self, key: str) -> str:
        value = self.get(key)
        if value is None:
            raise ConfigError(f"{key} must be provided")
        return value

    def scoped(self, prefix: str = ENV_PREFIX) -> "ServiceEnvironment":
        """Only the variables named ``prefix*``."""
        return ServiceEnvironment({k: v for k, v in self.variables.items() if k.startswith(prefix)})

    def unknown_keys(self, known: Iterable[str]) -> List[str]:
        return sorted(set(self.variables) - set(known))


def build_environment(
    *,
    env_file: Optional[str] = ".env",
    base: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, str]] = None,
) -> ServiceEnvironment:
    """
    Merge ``base`` (defaults to :data:`os.environ`), the ``env_file`` entries
    and ``overrides``. Values already present in ``base`` beat the file;
    ``overrides`` beat everything. Pass ``env_file=None`` to skip the file.
    """
    merged: Dict[str, str] = dict(os.environ if base is None else base)
    if env_file is not None:
        for key, value in _parse_env_file(Path(env_file)).items():
            merged.setdefault(key, value)
    merged.update(overrides or {})
    return ServiceEnvironment(variables=merged)
