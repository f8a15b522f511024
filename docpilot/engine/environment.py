"""Environment and executable resolution for the claude CLI.

Hosts such as editors and launch agents start with a minimal environment,
so PATH and credentials exported in the user's shell profile are missing.
``ShellEnvironmentProvider`` rebuilds the login-shell environment by
sourcing the profile files in a throwaway shell and dumping ``env``.
Tests use ``StaticEnvironmentProvider`` so they never depend on the host
shell configuration.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/zsh"
SHELL_ENV_TIMEOUT_SECONDS = 5.0
SHELL_ENV_MAX_BYTES = 10 * 1024 * 1024

_SENSITIVE_MARKERS = ("KEY", "TOKEN", "SECRET", "PASSWORD")
_IMPORTANT_VARS = ("PATH", "HOME", "SHELL", "USER", "ANTHROPIC_API_KEY")

_COMMON_INSTALL_DIRS = (
    "/usr/local/bin",
    "/usr/bin",
    "~/.local/bin",
    "~/bin",
    "~/.bun/bin",
)


def mask_env_value(key: str, value: str) -> str:
    """Mask credentials before they reach a log line."""
    if any(marker in key.upper() for marker in _SENSITIVE_MARKERS):
        return f"{value[:8]}..." if value else ""
    return value


def parse_env_output(output: str) -> dict[str, str]:
    """Parse ``env`` output into a mapping. Split on the first ``=``."""
    env: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if not sep or not key:
            continue
        env[key] = value
    return env


def build_source_command(shell: str) -> list[str]:
    """Return argv that sources the shell's profile files and prints env."""
    name = os.path.basename(shell)
    if "zsh" in name:
        script = "source ~/.zprofile 2>/dev/null; source ~/.zshrc 2>/dev/null; env"
        return [shell, "-c", script]
    if "bash" in name:
        script = (
            "source ~/.bash_profile 2>/dev/null; "
            "source ~/.bashrc 2>/dev/null; env"
        )
        return [shell, "-c", script]
    return [shell, "-l", "-i", "-c", "env"]


class EnvironmentProvider(abc.ABC):
    """Supplies the environment mapping for the child process."""

    @abc.abstractmethod
    def load(self) -> dict[str, str]:
        """Return a fresh environment mapping. Must not raise."""


class StaticEnvironmentProvider(EnvironmentProvider):
    """Fixed mapping, for tests and embedding hosts that already know the env."""

    def __init__(self, env: dict[str, str]) -> None:
        self._env = dict(env)

    def load(self) -> dict[str, str]:
        return dict(self._env)


class ShellEnvironmentProvider(EnvironmentProvider):
    """Reconstructs the interactive login-shell environment.

    Falls back to a copy of ``os.environ`` on any failure: missing shell,
    timeout, oversized output or a non-zero exit.
    """

    def __init__(
        self,
        shell: str | None = None,
        *,
        timeout: float = SHELL_ENV_TIMEOUT_SECONDS,
        max_bytes: int = SHELL_ENV_MAX_BYTES,
    ) -> None:
        self._shell = shell
        self._timeout = timeout
        self._max_bytes = max_bytes

    @property
    def shell(self) -> str:
        return self._shell or os.environ.get("SHELL") or DEFAULT_SHELL

    def load(self) -> dict[str, str]:
        shell = self.shell
        cmd = build_source_command(shell)
        logger.debug("Loading environment from shell %s", shell)
        started = time.monotonic()
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                timeout=self._timeout,
                check=False,
                stdin=subprocess.DEVNULL,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning(
                "Failed to load shell environment from %s (%s); "
                "falling back to process environment",
                shell, exc,
            )
            return dict(os.environ)

        if proc.returncode != 0:
            logger.warning(
                "Shell %s exited with %d while loading environment; "
                "falling back to process environment",
                shell, proc.returncode,
            )
            return dict(os.environ)
        # Checked after capture; the timeout is what bounds how much is read.
        if len(proc.stdout) > self._max_bytes:
            logger.warning(
                "Shell environment output exceeded %d bytes; "
                "falling back to process environment",
                self._max_bytes,
            )
            return dict(os.environ)

        env = parse_env_output(proc.stdout.decode("utf-8", errors="replace"))
        if not env:
            logger.warning("Shell %s printed no environment; using process env", shell)
            return dict(os.environ)

        logger.debug(
            "Shell environment loaded in %.0fms: %d variables",
            (time.monotonic() - started) * 1000, len(env),
        )
        self._log_differences(env)
        return env

    @staticmethod
    def _log_differences(env: dict[str, str]) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        for key in _IMPORTANT_VARS:
            if key in env:
                logger.debug("  %s=%s", key, mask_env_value(key, env[key]))
        only_shell = sorted(set(env) - set(os.environ))
        only_process = sorted(set(os.environ) - set(env))
        if only_shell:
            logger.debug(
                "Variables only in shell (%d): %s",
                len(only_shell), ", ".join(only_shell[:10]),
            )
        if only_process:
            logger.debug(
                "Variables only in process env (%d): %s",
                len(only_process), ", ".join(only_process[:10]),
            )


def expand_home(path: str, env: dict[str, str] | None = None) -> str:
    """Expand a leading ``~`` using HOME from *env* when available."""
    if not path.startswith("~"):
        return path
    home = (env or {}).get("HOME") or str(Path.home())
    return home + path[1:]


def resolve_executable(path: str, env: dict[str, str]) -> str:
    """Resolve *path* to an executable file.

    Absolute paths are returned as-is after ``~`` expansion. Bare names are
    searched in each directory of ``env["PATH"]``. When nothing matches
    the expanded string comes back unchanged so the spawn call can still
    try its own lookup and report the failure.
    """
    resolved = expand_home(path, env)
    if os.path.isabs(resolved):
        return resolved
    for directory in env.get("PATH", "").split(os.pathsep):
        if not directory:
            continue
        candidate = os.path.join(directory, resolved)
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    return resolved


def detect_executable_path(env: dict[str, str] | None = None) -> str | None:
    """Locate an installed claude CLI, or None."""
    env = env if env is not None else dict(os.environ)
    found = shutil.which("claude", path=env.get("PATH"))
    if found:
        return found
    for directory in _COMMON_INSTALL_DIRS:
        candidate = os.path.join(expand_home(directory, env), "claude")
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    return None


@dataclass
class InstallationCheck:
    success: bool
    version: str = ""
    error: str | None = None


async def check_installation(
    path: str,
    env: dict[str, str],
    timeout: float = SHELL_ENV_TIMEOUT_SECONDS,
) -> InstallationCheck:
    """Run ``<path> --version`` to verify the CLI is usable."""
    executable = resolve_executable(path or "claude", env)
    try:
        proc = await asyncio.create_subprocess_exec(
            executable, "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except OSError as exc:
        return InstallationCheck(success=False, error=str(exc))

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return InstallationCheck(
            success=False, error=f"{executable} --version timed out",
        )

    if proc.returncode != 0:
        return InstallationCheck(
            success=False,
            error=stderr.decode("utf-8", errors="replace").strip()
            or f"exit code {proc.returncode}",
        )
    return InstallationCheck(
        success=True, version=stdout.decode("utf-8", errors="replace").strip(),
    )
