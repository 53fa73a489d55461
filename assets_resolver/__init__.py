"""Assets resolver MCP server package."""

from .config import Config, load_config
from .logging import configure_logging
from .resolver import Resolver
from .server import SERVER, main

__all__ = [
    "Config",
    "load_config",
    "configure_logging",
    "Resolver",
    "SERVER",
    "main",
]
