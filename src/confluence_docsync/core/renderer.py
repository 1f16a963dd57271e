"""Mermaid diagram rendering through the ``mmdc`` command-line tool."""

import logging
import shutil
import subprocess
import tempfile
from pathlib import Path

from ..errors import RenderError

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("png", "svg")


class MermaidCliRenderer:
    """Render Mermaid source to image bytes with ``@mermaid-js/mermaid-cli``.

    Satisfies the ``DiagramRenderer`` protocol.

    Args:
        executable: Name or path of the ``mmdc`` binary.
        timeout: Seconds before a render is abandoned.
        background: Background colour passed to ``mmdc -b``.
    """

    def __init__(
        self,
        executable: str = "mmdc",
        timeout: float = 60.0,
        background: str = "white",
    ):
        self.executable = executable
        self.timeout = timeout
        self.background = background

    def is_available(self) -> bool:
        """True if the executable can be found on PATH."""
        return shutil.which(self.executable) is not None

    def render(self, source: str, fmt: str = "png") -> bytes:
        """
        Render *source* and return the image bytes.

        Raises:
            RenderError: If the format is unsupported, the tool is missing,
                times out, exits non-zero, or produces no output.
        """
        if fmt not in SUPPORTED_FORMATS:
            raise RenderError(f"Unsupported diagram format '{fmt}'")

        with tempfile.TemporaryDirectory(prefix="docsync-mmd-") as tmp:
            input_path = Path(tmp) / "diagram.mmd"
            output_path = Path(tmp) / f"diagram.{fmt}"
            input_path.write_text(source, encoding="utf-8")
            cmd = [
                self.executable,
                "-i",
                str(input_path),
                "-o",
                str(output_path),
                "-b",
                self.background,
            ]
            logger.debug("Running %s", " ".join(cmd))
            try:
                proc = subprocess.run(  # noqa: S603
                    cmd,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                    check=False,
                )
            except FileNotFoundError as e:
                raise RenderError(
                    f"Diagram renderer '{self.executable}' not found"
                ) from e
            except subprocess.TimeoutExpired as e:
                raise RenderError(
                    f"Diagram rendering timed out after {self.timeout}s"
                ) from e

            if proc.returncode != 0:
                detail = (proc.stderr or proc.stdout or "").strip()
                raise RenderError(
                    f"Diagram renderer exited with {proc.returncode}: {detail[:300]}"
                )
            if not output_path.exists() or output_path.stat().st_size == 0:
                raise RenderError("Diagram renderer produced no output")
            return output_path.read_bytes()
