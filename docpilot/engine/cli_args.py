"""Argument list for the claude CLI."""
from __future__ import annotations

from .config import RunnerSettings

STREAM_JSON_ARGS = (
    "--print",
    "--verbose",
    "--output-format", "stream-json",
    "--input-format", "stream-json",
    "--replay-user-messages",
    "--include-partial-messages",
)


def build_args(
    settings: RunnerSettings,
    session_id: str | None,
    root_dir: str | None,
    bypass_permissions: bool = False,
    model_override: str | None = None,
) -> list[str]:
    args = list(STREAM_JSON_ARGS)

    if session_id:
        args.extend(["--resume", session_id])

    if settings.permissionless_mode or bypass_permissions:
        args.extend(["--permission-mode", "bypassPermissions"])

    if settings.allow_workspace_access and root_dir:
        args.extend(["--add-dir", root_dir])

    # Per-request override beats the configured alias.
    model = model_override or settings.model_alias
    if model:
        args.extend(["--model", model])

    return args
