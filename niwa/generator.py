"""
Expertise Generation — the collaborator seam

The crawler only needs "given raw session text, produce a candidate
expertise".  ExpertiseGenerator is that seam; CommandGenerator fulfils it
by piping a prompt into an external LLM command (claude, ollama, ...) and
reading the JSON payload back from a delimiter block:

    <EXPERTISE_JSON>
    {"description": "...", "tags": ["..."], ...}
    </EXPERTISE_JSON>

When no delimiter block is present, the first top-level JSON object in the
output is used.

Public API:
    ExpertiseGenerator, CommandGenerator(config)
    invoke_llm(cmd, prompt, mode, timeout)
    parse_expertise_payload(text)
    call_with_timeout(fn, timeout, *args)
"""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from niwa.config import GeneratorConfig
from niwa.errors import GenerationError, InvalidInputError
from niwa.types import Expertise, Scope

logger = logging.getLogger(__name__)

DELIMITER_TAG = "EXPERTISE_JSON"
_DELIMITER_RE = re.compile(
    rf"<{DELIMITER_TAG}>\s*(.*?)\s*</{DELIMITER_TAG}>", re.DOTALL,
)

# Session logs can be huge; only the tail is sent to the model.
MAX_PROMPT_LOG_CHARS = 60_000

_PROMPT_TEMPLATE = """\
You extract reusable expertise from a work session log.

Read the session below and write ONE expertise describing the knowledge,
patterns and pitfalls worth keeping.  Answer with a single JSON object
between <{tag}> and </{tag}> containing at least:
  "description": one sentence summary
  "tags": list of short lowercase keywords
  "knowledge": list of {{"title": ..., "content": ...}} entries

Proposed id: {id}
Scope: {scope}

--- SESSION LOG ---
{log}
--- END ---
"""


# ---------------------------------------------------------------------------
# Timeout wrapper
# ---------------------------------------------------------------------------


def call_with_timeout(fn: Callable[..., Any], timeout: Optional[float], *args, **kwargs):
    """Run ``fn`` on a daemon thread and wait at most ``timeout`` seconds.

    A call that overruns is abandoned (the thread keeps running detached)
    and reported as a GenerationError.  Any other exception raised by
    ``fn`` is wrapped in GenerationError unless it already is one.
    """
    outcome: Dict[str, Any] = {}

    def _target():
        try:
            outcome["value"] = fn(*args, **kwargs)
        except BaseException as exc:  # re-raised on the calling thread
            outcome["error"] = exc

    worker = threading.Thread(target=_target, name="niwa-generate", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        raise GenerationError(f"generation timed out after {timeout}s")
    if "error" in outcome:
        exc = outcome["error"]
        if isinstance(exc, GenerationError):
            raise exc
        if isinstance(exc, Exception):
            raise GenerationError(f"{type(exc).__name__}: {exc}") from exc
        raise exc
    return outcome.get("value")


# ---------------------------------------------------------------------------
# LLM invocation
# ---------------------------------------------------------------------------


def invoke_llm(
    cmd: str,
    prompt: str,
    *,
    mode: str = "stdin",
    timeout: float = 300,
) -> str:
    """Invoke an LLM command as a subprocess.

    Args:
        cmd: Shell command string (e.g. "claude -p", "ollama run mistral").
        prompt: The full prompt text to send.
        mode: "stdin" (pipe prompt to stdin) or "file" (write temp file,
            append its path to the command).
        timeout: Subprocess timeout in seconds.

    Returns:
        LLM output (stdout).

    Raises:
        GenerationError: If the command is missing, fails or times out.
    """
    args = shlex.split(cmd)
    if not args:
        raise GenerationError("empty LLM command")
    prompt_file = None
    if mode == "file":
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".txt", delete=False, prefix="niwa_prompt_",
            encoding="utf-8",
        ) as f:
            f.write(prompt)
            prompt_file = f.name
        args.append(prompt_file)
        stdin_data = None
    else:
        stdin_data = prompt

    try:
        result = subprocess.run(
            args,
            input=stdin_data,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise GenerationError(f"LLM command timed out after {timeout}s: {cmd}") from None
    except FileNotFoundError:
        raise GenerationError(f"LLM command not found: {args[0]!r}") from None
    finally:
        if prompt_file is not None:
            try:
                os.unlink(prompt_file)
            except OSError:
                logger.debug(f"Could not remove prompt file {prompt_file}")

    if result.returncode != 0:
        stderr_preview = (result.stderr or "").strip()[:200]
        raise GenerationError(
            f"LLM command failed (exit {result.returncode}): {stderr_preview}"
        )
    return result.stdout


def _first_json_object(text: str) -> Optional[str]:
    """Return the first balanced {...} span in ``text``, ignoring braces in strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


def parse_expertise_payload(text: str) -> Dict[str, Any]:
    """Extract the expertise JSON object from LLM output.

    Raises:
        GenerationError: If no JSON object can be found or decoded.
    """
    match = _DELIMITER_RE.search(text or "")
    raw = match.group(1) if match else _first_json_object(text or "")
    if raw is None:
        raise GenerationError("no expertise JSON found in generator output")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise GenerationError(f"generator output is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise GenerationError("generator output must be a JSON object")
    return data


# ---------------------------------------------------------------------------
# Generators
# ---------------------------------------------------------------------------


class ExpertiseGenerator(ABC):
    """Turns raw session text into a candidate expertise.

    Subclasses implement ``generate``; failures should raise GenerationError
    (other exceptions are wrapped by the crawler).  ``time_limit`` is the
    caller's own deadline in seconds; a generator that starts external work
    should stop that work by then, since the caller abandons the call once it
    expires.
    """

    @abstractmethod
    def generate(
        self,
        raw_text: str,
        proposed_id: str,
        scope: Scope,
        time_limit: Optional[float] = None,
    ) -> Expertise:
        ...


class CommandGenerator(ExpertiseGenerator):
    """Generator backed by an external LLM command.

    The subprocess runs for at most the smaller of ``GeneratorConfig.timeout``
    and the caller's ``time_limit``, so no child outlives the crawler's wait.
    """

    def __init__(self, config: Optional[GeneratorConfig] = None):
        self._config = config or GeneratorConfig()

    def build_prompt(self, raw_text: str, proposed_id: str, scope: Scope) -> str:
        log = raw_text[-MAX_PROMPT_LOG_CHARS:]
        return _PROMPT_TEMPLATE.format(
            tag=DELIMITER_TAG, id=proposed_id, scope=Scope.parse(scope).value, log=log,
        )

    def effective_timeout(self, time_limit: Optional[float] = None) -> float:
        if time_limit is None:
            return self._config.timeout
        return min(self._config.timeout, time_limit)

    def generate(
        self,
        raw_text: str,
        proposed_id: str,
        scope: Scope,
        time_limit: Optional[float] = None,
    ) -> Expertise:
        prompt = self.build_prompt(raw_text, proposed_id, scope)
        output = invoke_llm(
            self._config.command, prompt,
            mode=self._config.mode, timeout=self.effective_timeout(time_limit),
        )
        payload = parse_expertise_payload(output)
        version = payload.get("version")
        if not isinstance(version, str) or not version.strip():
            version = "1.0.0"
        try:
            unit = Expertise.from_payload(proposed_id, version, scope, payload)
        except InvalidInputError as exc:
            raise GenerationError(f"invalid expertise from generator: {exc}") from exc
        logger.info(f"Generated expertise {unit.id} ({len(unit.tags)} tags)")
        return unit
