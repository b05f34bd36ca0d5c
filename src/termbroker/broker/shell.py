"""Interactive shell resolution.

Picks the shell a new session runs by probing a priority-ordered list of
candidates for the host's OS family.
"""

from __future__ import annotations

import logging
import os
import shutil
from typing import Literal, Mapping

logger = logging.getLogger(__name__)

OSFamily = Literal["posix", "windows"]

POSIX_FALLBACKS = (
    "/bin/bash",
    "/usr/bin/bash",
    "/bin/zsh",
    "/usr/bin/zsh",
    "/bin/sh",
)

WINDOWS_FALLBACKS = (
    "powershell.exe",
    "pwsh.exe",
    "cmd.exe",
)


def host_os_family() -> OSFamily:
    return "windows" if os.name == "nt" else "posix"


def shell_candidates(
    os_family: OSFamily | None = None,
    default_shell: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> list[str]:
    """Return the ordered, de-duplicated shell candidates for an OS family.

    The configured default comes first, then the user's own shell from the
    environment ($SHELL, or %COMSPEC% on Windows), then the fixed fallbacks.
    """
    family = os_family or host_os_family()
    env = os.environ if environ is None else environ

    if family == "windows":
        user_shell = env.get("COMSPEC")
        fallbacks = WINDOWS_FALLBACKS
    else:
        user_shell = env.get("SHELL")
        fallbacks = POSIX_FALLBACKS

    candidates: list[str] = []
    for candidate in (default_shell, user_shell, *fallbacks):
        if candidate and candidate not in candidates:
            candidates.append(candidate)
    return candidates


def _is_executable(candidate: str) -> bool:
    if os.path.isabs(candidate):
        return os.path.isfile(candidate) and os.access(candidate, os.X_OK)
    return shutil.which(candidate) is not None


def resolve_shell(
    os_family: OSFamily | None = None,
    *,
    default_shell: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Resolve the shell to spawn for a new session.

    Returns the first candidate that exists as an executable. When none
    does, the last fallback is returned anyway so that the failure shows
    up once, at spawn time, as a SpawnError.
    """
    family = os_family or host_os_family()
    candidates = shell_candidates(family, default_shell, environ)
    for candidate in candidates:
        if _is_executable(candidate):
            logger.debug("Resolved shell %s", candidate)
            return candidate

    fallback = WINDOWS_FALLBACKS[-1] if family == "windows" else POSIX_FALLBACKS[-1]
    logger.warning(
        "No shell found among %s, falling back to %s", candidates, fallback
    )
    return fallback
