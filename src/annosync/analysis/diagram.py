"""Infrastructure diagram tool.

The tool prints a graph description; the only part we interpret is the
``image="..."`` attribute of nodes, which points at icon files that must
be rewritten before the description can be displayed.
"""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path

from ..errors import AnalysisError

logger = logging.getLogger(__name__)

IMAGE_PATTERN = re.compile(r'image="(.*?)"')
DEFAULT_ARGS = ("generate", "--clean=false", "--hcl")


def extract_image_paths(text: str) -> list[str]:
    return IMAGE_PATTERN.findall(text)


def rewrite_image_paths(text: str, rewrite: Callable[[str], str]) -> str:
    """Replace every image path in *text* with ``rewrite(path)``."""
    return IMAGE_PATTERN.sub(lambda m: f'image="{rewrite(m.group(1))}"', text)


def run_diagram_tool(
    executable: str,
    directory: Path | str,
    timeout: float = 120,
    args: Sequence[str] = DEFAULT_ARGS,
) -> str:
    """Run the diagram tool on *directory* and return its output.

    Raises:
        AnalysisError: If the tool is missing, times out, or fails.
    """
    command = [executable, *args, str(directory)]
    logger.info("Generating diagram: %s", " ".join(command))
    try:
        completed = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as exc:
        raise AnalysisError(f"Diagram tool not installed: {executable}") from exc
    except subprocess.TimeoutExpired as exc:
        raise AnalysisError(f"Diagram tool timed out after {timeout}s") from exc
    if completed.returncode != 0:
        raise AnalysisError(
            f"Diagram tool exited with {completed.returncode}: "
            f"{completed.stderr.strip()}"
        )
    return completed.stdout
