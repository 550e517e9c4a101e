"""Command-line interface and its plain-text renderer."""

from shipgate.ui.cli import CLIError, build_parser, run_cli
from shipgate.ui.render import CLIRenderer, create_renderer

__all__ = ["CLIError", "CLIRenderer", "build_parser", "create_renderer", "run_cli"]
