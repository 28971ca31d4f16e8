from __future__ import annotations

from pathlib import Path
import logging
import subprocess

from prsettle.observability import log_warning_event


class CommandError(RuntimeError):
    def __init__(self, message: str, *, argv: list[str], exit_code: int, stderr: str) -> None:
        super().__init__(message)
        self.argv = tuple(argv)
        self.exit_code = exit_code
        self.stderr = stderr


LOGGER = logging.getLogger("prsettle.shell")


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
    timeout_seconds: float | None = None,
) -> str:
    proc = subprocess.run(
        argv,
        cwd=str(cwd) if cwd else None,
        input=input_text,
        text=True,
        capture_output=True,
        check=False,
        timeout=timeout_seconds,
    )
    if check and proc.returncode != 0:
        log_warning_event(
            LOGGER,
            "command_failed",
            command=" ".join(argv[:3]),
            exit_code=proc.returncode,
            stderr=_preview(proc.stderr),
            stdout=_preview(proc.stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {' '.join(argv)}\n"
            f"exit: {proc.returncode}\n"
            f"stdout:\n{proc.stdout}\n"
            f"stderr:\n{proc.stderr}",
            argv=argv,
            exit_code=proc.returncode,
            stderr=proc.stderr,
        )
    return proc.stdout
