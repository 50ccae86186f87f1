"""Command line interfaces for repugnant-pickle."""

from .dump import main as dump_main
from .dump_torch import main as dump_torch_main

__all__ = ["dump_main", "dump_torch_main"]
