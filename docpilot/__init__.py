"""docpilot: drive the Claude Code CLI to edit or discuss a document."""

__version__ = "0.3.0"
