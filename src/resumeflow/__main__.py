"""Allow ``python -m resumeflow`` (used by the restart-resume hooks)."""

from .cli import main_cli

main_cli()
