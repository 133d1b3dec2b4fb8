from __future__ import annotations

import os
import shlex
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .config import TransformConfig


class TransformError(RuntimeError):
    pass


@dataclass(slots=True, frozen=True)
class TransformResult:
    ok: bool
    output: Path
    error: str | None = None


class TransformRunner:
    """Runs the configured external command for one file of the working directory."""

    def __init__(self, transform_config: TransformConfig, source_dir: Path, output_dir: Path) -> None:
        self.transform_config = transform_config
        self.source_dir = source_dir
        self.output_dir = output_dir
        self.argv_template = shlex.split(transform_config.command_template)
        if not self.argv_template:
            raise TransformError("transform command template is empty")
        # Fail on unknown placeholders now rather than once per file inside the workers.
        self.build_command("example.txt")
        self.active: subprocess.Popen[bytes] | None = None

    def output_path(self, name: str) -> Path:
        return self.output_dir / f"{name}{self.transform_config.output_suffix}"

    def build_command(self, name: str) -> list[str]:
        values = {
            "source": str(self.source_dir / name),
            "output": str(self.output_path(name)),
            "name": name,
        }
        try:
            return [token.format(**values) for token in self.argv_template]
        except (KeyError, IndexError, ValueError) as exc:
            raise TransformError(f"bad placeholder in command template: {exc}") from exc

    def _require_ok(self, process: subprocess.CompletedProcess[bytes], context: str) -> None:
        if process.returncode != 0:
            stderr = process.stderr.decode("utf-8", errors="replace").strip()
            raise TransformError(f"{context} failed: {stderr or 'exit code ' + str(process.returncode)}")

    def _execute(self, command: list[str], stdout) -> subprocess.CompletedProcess[bytes]:
        # Own session, so terminate_active can signal the command and anything it spawned.
        with subprocess.Popen(command, stdout=stdout, stderr=subprocess.PIPE, start_new_session=True) as process:
            self.active = process
            try:
                _, stderr = process.communicate()
            finally:
                self.active = None
        return subprocess.CompletedProcess(command, process.returncode, None, stderr)

    def terminate_active(self) -> None:
        """SIGTERM the process group of the command currently running, if any."""
        process = self.active
        if process is None:
            return
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass

    def run(self, name: str) -> TransformResult:
        output = self.output_path(name)
        try:
            command = self.build_command(name)
            output.parent.mkdir(parents=True, exist_ok=True)
            if self.transform_config.stdout_to_output:
                with output.open("wb") as handle:
                    process = self._execute(command, handle)
            else:
                process = self._execute(command, subprocess.DEVNULL)
            self._require_ok(process, f"transform {name}")
        except (TransformError, OSError) as exc:
            output.unlink(missing_ok=True)
            return TransformResult(ok=False, output=output, error=str(exc))
        return TransformResult(ok=True, output=output)
