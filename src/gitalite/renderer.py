"""
Document renderer. Turns stored page sources into HTML.

The wiki only depends on the ``Renderer`` protocol. ``PandocRenderer``
implements it by piping the source through a ``pandoc`` subprocess.

Pages may open with a TOML front-matter block between ``---`` lines::

    ---
    title = "Reading list"
    categories = ["books"]
    ---
    # body starts here
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import tomllib
from pathlib import PurePosixPath
from typing import Optional, Protocol

from pydantic import BaseModel, Field
from pydantic import ValidationError as ModelValidationError

from .errors import RenderError

logger = logging.getLogger("gitalite.renderer")

FRONT_MATTER_DELIMITER = "---"

VALID_FORMATS: dict[str, str] = {
    "markdown": "Markdown",
    "rst": "reStructuredText",
    "html": "HTML",
    "latex": "LaTeX",
    "mediawiki": "MediaWiki",
    "textile": "Textile",
    "org": "Emacs Org-Mode",
    "opml": "OPML",
    "docx": ".docx",
    "haddock": "Haddock",
    "epub": "EPUB",
    "docbook": "DocBook",
    "t2t": "txt2tags",
    "twiki": "TWiki",
}

_EXTENSION_FORMATS = {
    ".md": "markdown",
    ".markdown": "markdown",
    ".txt": "markdown",
    ".rst": "rst",
    ".html": "html",
    ".htm": "html",
    ".tex": "latex",
    ".wiki": "mediawiki",
    ".textile": "textile",
    ".org": "org",
    ".opml": "opml",
    ".docx": "docx",
    ".hs": "haddock",
    ".epub": "epub",
    ".dbk": "docbook",
    ".t2t": "t2t",
    ".twiki": "twiki",
}

# formats pandoc reads as zip containers rather than text
_BINARY_FORMATS = {"docx", "epub"}


class Renderer(Protocol):
    """What the HTTP surface needs from a renderer."""

    def render(self, format: str, data: bytes) -> bytes: ...

    def supports(self, format: str) -> bool: ...


class FrontMatter(BaseModel):
    """Metadata a page may declare above its body."""

    title: Optional[str] = None
    categories: list[str] = Field(default_factory=list)


def format_for_path(path: str) -> str:
    """Pandoc input format for a page path (markdown when unknown)."""
    return _EXTENSION_FORMATS.get(PurePosixPath(path).suffix.lower(), "markdown")


def split_front_matter(text: str) -> tuple[FrontMatter, str]:
    """Separate a leading ``---`` TOML block from the page body.

    Returns:
        (front matter, body). Pages without a block get an empty
        FrontMatter and their text unchanged.

    Raises:
        RenderError: If the block is present but not valid TOML.
    """
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != FRONT_MATTER_DELIMITER:
        return FrontMatter(), text

    for i in range(1, len(lines)):
        if lines[i].strip() == FRONT_MATTER_DELIMITER:
            raw = "".join(lines[1:i])
            body = "".join(lines[i + 1:])
            break
    else:
        return FrontMatter(), text

    try:
        return FrontMatter(**tomllib.loads(raw)), body
    except (tomllib.TOMLDecodeError, ModelValidationError) as exc:
        raise RenderError(f"invalid front matter: {exc}") from exc


class PandocRenderer:
    """Renders documents with the ``pandoc`` executable.

    Args:
        pandoc_path: Executable name or path.
        timeout: Seconds allowed per conversion.
    """

    def __init__(self, pandoc_path: str = "pandoc", timeout: float = 20.0) -> None:
        self.pandoc_path = pandoc_path
        self.timeout = timeout

    def available(self) -> bool:
        return shutil.which(self.pandoc_path) is not None

    def supports(self, format: str) -> bool:
        return format in VALID_FORMATS

    def render(self, format: str, data: bytes) -> bytes:
        """Convert ``data`` from ``format`` to an HTML fragment.

        Raises:
            RenderError: Unknown format, missing pandoc, timeout, or a
                non-zero exit.
        """
        if not self.supports(format):
            raise RenderError(f"unsupported format: {format}")

        cmd = [self.pandoc_path, "-f", format, "-t", "html5"]
        if format not in _BINARY_FORMATS:
            cmd.append("--katex")

        try:
            result = subprocess.run(
                cmd,
                input=data,
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise RenderError(f"pandoc not found: {self.pandoc_path}") from exc
        except subprocess.TimeoutExpired as exc:
            logger.warning("pandoc timed out after %.1fs rendering %s", self.timeout, format)
            raise RenderError(f"rendering timed out after {self.timeout}s") from exc

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", "replace").strip()
            logger.warning("pandoc failed (%d): %s", result.returncode, stderr)
            raise RenderError(stderr or f"pandoc exited {result.returncode}")

        return result.stdout

    def self_test(self) -> None:
        """Render a known heading and compare, as a startup check.

        Raises:
            RenderError: If pandoc is missing or produces unexpected output.
        """
        html = self.render("markdown", b"# Hello, world!").decode("utf-8").strip()
        expected = '<h1 id="hello-world">Hello, world!</h1>'
        if html != expected:
            raise RenderError(f"unexpected pandoc output: {html!r}")
        logger.info("pandoc self-test passed (%s)", self.pandoc_path)
