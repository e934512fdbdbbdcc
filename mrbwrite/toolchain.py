# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Host-side mruby tools.

Thin wrappers around the ``mrbc`` compiler and the ``mruby`` interpreter
executables. Both run in a scratch directory and report failures in
their result objects instead of raising.
"""

import logging
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def hex_dump(data: bytes) -> str:
    """Format bytes as space-separated two-digit hex."""
    return " ".join(f"{b:02x}" for b in data)


@dataclass
class CompileResult:
    bytecode: Optional[bytes] = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.bytecode is not None


@dataclass
class RunResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class MrbcCompiler:
    """Compile Ruby source to mruby bytecode with ``mrbc``."""

    def __init__(self, executable: str = "mrbc"):
        self.executable = executable

    def compile(self, source: str) -> CompileResult:
        """
        Compile Ruby source text.

        Args:
            source: Ruby source code

        Returns:
            CompileResult with bytecode, or an error message
        """
        if not source.strip():
            return CompileResult(error="Source code is empty.")

        with tempfile.TemporaryDirectory(prefix="mrbwrite-") as tmp:
            src = Path(tmp) / "input.rb"
            out = Path(tmp) / "output.mrb"
            src.write_text(source, encoding="utf-8")
            cmd = [self.executable, "-o", str(out), str(src)]
            logger.debug("Running %s", " ".join(cmd))
            try:
                result = subprocess.run(cmd, capture_output=True, text=True)
            except OSError as e:
                return CompileResult(error=f"Compile error: {e}")

            if result.returncode != 0:
                detail = (result.stderr or result.stdout).strip()
                message = f"Compile failed (exit code {result.returncode})."
                return CompileResult(error=f"{message}\n{detail}" if detail else message)
            return CompileResult(bytecode=out.read_bytes())

    def compile_file(self, path: Path) -> CompileResult:
        return self.compile(Path(path).read_text(encoding="utf-8"))


class MrubyRunner:
    """Run mruby bytecode on the host with ``mruby -b``."""

    def __init__(self, executable: str = "mruby"):
        self.executable = executable

    def run(self, bytecode: bytes) -> RunResult:
        if not bytecode:
            return RunResult(returncode=1, stderr="No compiled bytecode.")

        with tempfile.TemporaryDirectory(prefix="mrbwrite-") as tmp:
            path = Path(tmp) / "output.mrb"
            path.write_bytes(bytecode)
            try:
                result = subprocess.run(
                    [self.executable, "-b", str(path)],
                    capture_output=True,
                    text=True,
                )
            except OSError as e:
                return RunResult(returncode=1, stderr=str(e))
        return RunResult(result.returncode, result.stdout, result.stderr)
