"""Version reported by the health endpoint, the admin API and the gateway handshake.

Release builds may stamp ``EXTBRIDGE_BUILD_VERSION`` / ``EXTBRIDGE_BUILD_DATE``;
otherwise the version comes from the installed package metadata.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from importlib import metadata
from typing import Final, Mapping

_DIST_NAME: Final[str] = "extbridge"
_UNKNOWN: Final[str] = "unknown"


@dataclass(frozen=True, slots=True)
class BuildInfo:
    version: str
    build_date: str


def load_build_info(environ: Mapping[str, str] | None = None) -> BuildInfo:
    env = os.environ if environ is None else environ
    version = env.get("EXTBRIDGE_BUILD_VERSION")
    if not version:
        try:
            version = metadata.version(_DIST_NAME)
        except metadata.PackageNotFoundError:
            version = "0.0.0+local"
    return BuildInfo(version=version, build_date=env.get("EXTBRIDGE_BUILD_DATE") or _UNKNOWN)


BUILD_INFO: Final[BuildInfo] = load_build_info()
