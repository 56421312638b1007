"""Grow robot bodies from graph grammars and find gaits for them with MPPI."""

from rich.console import Console

console = Console()

__all__ = ["console"]
__version__ = "0.1.0"
