"""Command-line interface components."""

from .main import create_cli
from .types import CLIContext, CommandResult, OutputFormat

__all__ = [
    "CommandResult",
    "CLIContext",
    "OutputFormat",
    "create_cli",
]
