from __future__ import annotations

import os
import subprocess
from functools import lru_cache

from ..config import settings

PACKAGE_VERSION = "0.1.0"


def _resolve_git_sha() -> str:
    sha = os.getenv("GIT_SHA")
    if sha:
        return sha
    try:
        return (
            subprocess.check_output(["git", "rev-parse", "--short", "HEAD"], stderr=subprocess.DEVNULL)
            .decode("utf-8")
            .strip()
        )
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


@lru_cache
def get_version_info() -> dict[str, str]:
    return {
        "version": PACKAGE_VERSION,
        "git_sha": _resolve_git_sha(),
        "env": settings.app_env,
    }
