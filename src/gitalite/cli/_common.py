"""Shared utilities for the CLI command modules.

Provides the Rich console, the ``--config`` option and config loading.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from .. import CONFIG_PATH
from ..config import WikiConfig, load_config
from ..errors import ConfigError

console = Console()

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

config_option = click.option(
    "--config",
    "config_path",
    default=CONFIG_PATH,
    show_default=True,
    type=click.Path(dir_okay=False),
    help="Path to the wiki's YAML config (or set GITALITE_CONFIG).",
)


def load_or_exit(config_path: str) -> WikiConfig:
    """Load the config, printing the error and exiting 1 on failure."""
    try:
        return load_config(Path(config_path))
    except ConfigError as exc:
        console.print(f"[bold red]Config error:[/] {exc}")
        sys.exit(1)


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure console and optional file logging on the root logger."""
    formatter = logging.Formatter(LOG_FORMAT)
    root = logging.getLogger()

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    root.addHandler(stream)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    root.setLevel(getattr(logging, level.upper(), logging.INFO))
