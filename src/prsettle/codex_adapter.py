from __future__ import annotations

from pathlib import Path
import json
import logging
import tempfile
from typing import cast

from prsettle.agent_adapter import AgentAdapter, PatchRequest
from prsettle.config import CodexConfig
from prsettle.errors import TransientIOError
from prsettle.models import SEVERITIES, Classification, ProposedPatch, ReviewThread, Severity
from prsettle.observability import log_event
from prsettle.prompts import build_classification_prompt, build_patch_prompt
from prsettle.shell import CommandError, run


_PATCH_OUTPUT_SCHEMA: dict[str, object] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["has_patch", "diff", "summary", "commit_message"],
    "properties": {
        "has_patch": {"type": "boolean"},
        "diff": {"type": "string"},
        "summary": {"type": "string"},
        "commit_message": {"type": ["string", "null"]},
    },
}

_CLASSIFICATION_OUTPUT_SCHEMA: dict[str, object] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["category", "severity"],
    "properties": {
        "category": {"type": "string", "minLength": 1},
        "severity": {"type": "string", "enum": list(SEVERITIES)},
    },
}


LOGGER = logging.getLogger("prsettle.codex_adapter")


class CodexAdapter(AgentAdapter):
    def __init__(self, config: CodexConfig) -> None:
        self._config = config

    def propose_patch(self, *, request: PatchRequest, cwd: Path) -> ProposedPatch | None:
        log_event(
            LOGGER,
            "patch_agent_call_started",
            pr_number=request.pr_number,
            thread_id=request.thread.thread_id,
            revision=request.thread.revision,
        )
        prompt = build_patch_prompt(request=request)
        payload = self._run_structured_turn(prompt=prompt, schema=_PATCH_OUTPUT_SCHEMA, cwd=cwd)

        has_patch = payload.get("has_patch")
        if not isinstance(has_patch, bool):
            raise RuntimeError("Codex response field has_patch must be a boolean")
        diff = _optional_output_text(payload.get("diff"))
        summary = _optional_output_text(payload.get("summary")) or ""
        commit_message = _optional_output_text(payload.get("commit_message"))

        log_event(
            LOGGER,
            "patch_agent_call_completed",
            pr_number=request.pr_number,
            thread_id=request.thread.thread_id,
            has_patch=has_patch and diff is not None,
        )
        if not has_patch or diff is None:
            return None
        return ProposedPatch(diff=diff, summary=summary, commit_message=commit_message)

    def classify_thread(
        self, *, thread: ReviewThread, repo_full_name: str, cwd: Path | None
    ) -> Classification:
        prompt = build_classification_prompt(thread=thread, repo_full_name=repo_full_name)
        payload = self._run_structured_turn(
            prompt=prompt, schema=_CLASSIFICATION_OUTPUT_SCHEMA, cwd=cwd
        )
        category = _require_str(payload, "category").strip().lower()
        severity = _require_str(payload, "severity").strip().lower()
        if severity not in SEVERITIES:
            raise RuntimeError(f"Codex returned unknown severity: {severity!r}")
        log_event(
            LOGGER,
            "classification_agent_call_completed",
            thread_id=thread.thread_id,
            category=category,
            severity=severity,
        )
        return Classification(category=category, severity=cast(Severity, severity))

    def _run_structured_turn(
        self, *, prompt: str, schema: dict[str, object], cwd: Path | None
    ) -> dict[str, object]:
        if not self._config.enabled:
            raise RuntimeError("Codex is disabled in config")

        with tempfile.TemporaryDirectory(prefix="prsettle_codex_") as tmp:
            tmp_path = Path(tmp)
            schema_path = tmp_path / "schema.json"
            output_path = tmp_path / "last_message.txt"
            schema_path.write_text(json.dumps(schema), encoding="utf-8")

            cmd = [
                "codex",
                "exec",
                "--json",
                "--skip-git-repo-check",
                "--output-schema",
                str(schema_path),
                "--output-last-message",
                str(output_path),
                "-",
            ]
            self._append_common_options(cmd)

            try:
                raw_events = run(cmd, cwd=cwd, input_text=prompt)
            except CommandError as exc:
                raise TransientIOError(f"codex exec failed: {exc.stderr.strip()}") from exc

            if output_path.exists():
                raw = output_path.read_text(encoding="utf-8").strip()
            else:
                raw = ""
            if not raw:
                raw = _extract_final_agent_message(raw_events)
            return _parse_json_payload(raw)

    def _append_common_options(self, cmd: list[str]) -> None:
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        if self._config.sandbox:
            cmd.extend(["--sandbox", self._config.sandbox])
        if self._config.profile:
            cmd.extend(["--profile", self._config.profile])
        if self._config.extra_args:
            cmd.extend(self._config.extra_args)


def _parse_json_payload(raw: str) -> dict[str, object]:
    text = raw.strip()
    if text.startswith("```"):
        lines = text.splitlines()
        if lines and lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].startswith("```"):
            lines = lines[:-1]
        text = "\n".join(lines).strip()
    payload = json.loads(text)
    if not isinstance(payload, dict):
        raise RuntimeError("Codex response must be a JSON object")
    return payload


def _extract_final_agent_message(raw_events: str) -> str:
    last_message: str | None = None
    for line in raw_events.splitlines():
        text = line.strip()
        if not text:
            continue
        payload = _parse_event_line(text)
        if payload is None:
            continue
        if payload.get("type") != "item.completed":
            continue
        item_obj = _as_object_dict(payload.get("item"))
        if item_obj is None:
            continue
        item_type = item_obj.get("type")
        message_text = item_obj.get("text")
        if item_type == "agent_message" and isinstance(message_text, str):
            last_message = message_text
    if not last_message:
        raise RuntimeError("Codex did not emit a final agent message")
    return last_message


def _parse_event_line(line: str) -> dict[str, object] | None:
    if not line.startswith("{"):
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _require_str(payload: dict[str, object], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise RuntimeError(f"Codex response missing non-empty string field: {key}")
    return value


def _optional_output_text(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise RuntimeError("Codex response field must be a string or null")
    normalized = value.strip()
    return normalized or None


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)
