"""OpenSCAD to STL conversion."""

import asyncio
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

from cuid2 import cuid_wrapper

from shapesmith.config import Settings
from shapesmith.errors import CompileError
from shapesmith.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()

# Whole fenced blocks, opening fence at line start; group 1 is the language tag
FENCED_BLOCK_PATTERN = re.compile(r"^```([\w+-]*)[ \t]*\n([\s\S]*?)\n```", re.MULTILINE)
OPENSCAD_LANGUAGES = ("openscad", "scad", "")


def extract_openscad_code(text: str) -> str | None:
    """Return the first fenced OpenSCAD program in ``text``, if any.

    Blocks tagged with another language are skipped, as are empty blocks.
    """
    for match in FENCED_BLOCK_PATTERN.finditer(text):
        if match.group(1).lower() not in OPENSCAD_LANGUAGES:
            continue
        code = match.group(2).strip()
        if code:
            return code
    return None


@dataclass
class GeometryArtifact:
    """Files and output of a single compilation."""

    program: str
    scad_path: Path
    stl_path: Path
    mesh: str = ""


class OpenSCADCompiler:
    """Runs the OpenSCAD executable on a program and returns the ASCII STL.

    Every call gets its own temporary directory with cuid-based file names;
    the directory is removed on every exit path, including timeouts.
    """

    def __init__(self, executable: str = "openscad", timeout: float = 30.0, temp_root: str | None = None):
        """Initialize the compiler.

        Args:
            executable: OpenSCAD binary name or path
            timeout: Seconds before the compiler process is killed
            temp_root: Parent directory for per-call temp directories
        """
        self.executable = executable
        self.timeout = timeout
        self.temp_root = temp_root

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenSCADCompiler":
        """Build a compiler from application settings."""
        return cls(executable=settings.openscad_bin, timeout=settings.openscad_timeout)

    async def compile(self, program: str) -> str:
        """Compile an OpenSCAD program to ASCII STL text.

        Raises:
            CompileError: On a missing executable, non-zero exit, timeout or empty output
        """
        if not program.strip():
            raise CompileError("OpenSCAD program is empty")

        token = cuid()
        with tempfile.TemporaryDirectory(prefix="shapesmith_", dir=self.temp_root) as workdir:
            artifact = GeometryArtifact(
                program=program,
                scad_path=Path(workdir) / f"model_{token}.scad",
                stl_path=Path(workdir) / f"model_{token}.stl",
            )
            artifact.scad_path.write_text(program, encoding="utf-8")

            await self._run(artifact)

            if not artifact.stl_path.exists():
                raise CompileError("OpenSCAD finished without writing an STL file")

            artifact.mesh = artifact.stl_path.read_text(encoding="utf-8", errors="replace")

        if not artifact.mesh.strip():
            raise CompileError("OpenSCAD produced an empty mesh")

        logger.info(f"Generated STL: {len(artifact.mesh)} bytes")
        return artifact.mesh

    async def _run(self, artifact: GeometryArtifact) -> None:
        logger.debug(f"Running {self.executable} on {artifact.scad_path}")
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                "-o",
                str(artifact.stl_path),
                str(artifact.scad_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise CompileError(f"OpenSCAD executable not found: {self.executable}") from e

        try:
            output, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise CompileError(f"OpenSCAD timed out after {self.timeout:g} seconds") from e

        if process.returncode != 0:
            message = output.decode(errors="replace").strip()
            raise CompileError(f"OpenSCAD exited with status {process.returncode}: {message}")
