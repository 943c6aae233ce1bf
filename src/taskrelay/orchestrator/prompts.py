"""Phase prompt templates and prompt composition."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from taskrelay.orchestrator.models import PHASE_ORDER, Phase, TaskRecord

logger = logging.getLogger(__name__)

_VARIABLE_RE = re.compile(r"\{\{([A-Z][A-Z0-9_]*)\}\}")
PHASE_COMPLETED_SUFFIX = "completed"

BUILTIN_TEMPLATES: dict[Phase, str] = {
    Phase.EXPAND: (
        "# Phase 1/8: EXPAND\n\n"
        "Expand the request of task {{TASK_ID}} into a complete specification: context, "
        "scope, acceptance criteria and affected areas. Record the result in the task "
        "file at {{TASK_FILE}}."
    ),
    Phase.TRIAGE: (
        "# Phase 2/8: TRIAGE\n\n"
        "Assess task {{TASK_ID}}: feasibility, dependencies, risks and the files involved. "
        "Stop and explain if the task cannot be done as specified."
    ),
    Phase.PLAN: (
        "# Phase 3/8: PLAN\n\n"
        "Write a step-by-step implementation plan for task {{TASK_ID}}, "
        "including the tests that will prove it works."
    ),
    Phase.IMPLEMENT: (
        "# Phase 4/8: IMPLEMENT\n\n"
        "Implement the plan for task {{TASK_ID}}. Keep changes focused and the build green."
    ),
    Phase.TEST: (
        "# Phase 5/8: TEST\n\n"
        "Add or update tests covering task {{TASK_ID}} and make the whole suite pass."
    ),
    Phase.DOCS: (
        "# Phase 6/8: DOCS\n\n"
        "Update documentation, changelog and comments affected by task {{TASK_ID}}."
    ),
    Phase.REVIEW: (
        "# Phase 7/8: REVIEW\n\n"
        "Review all changes for task {{TASK_ID}} for correctness, security and style. "
        "Fix every finding."
    ),
    Phase.VERIFY: (
        "# Phase 8/8: VERIFY\n\n"
        "Confirm every acceptance criterion of task {{TASK_ID}} is met, quality checks pass "
        "and the work is committed. Do not move the task file; the runner does that."
    ),
}


class PromptResolver(Protocol):
    def resolve(self, phase: Phase, variables: Mapping[str, str]) -> str:
        """Phase instruction text with ``{{VAR}}`` placeholders substituted."""


class BuiltinPromptResolver:
    def resolve(self, phase: Phase, variables: Mapping[str, str]) -> str:
        return substitute_variables(BUILTIN_TEMPLATES[phase], variables)


class TemplatePromptResolver:
    """Reads ``<prompts_dir>/<index>-<phase>.md``, falling back to built-in text."""

    def __init__(self, prompts_dir: Path, *, fallback: PromptResolver | None = None) -> None:
        self.prompts_dir = prompts_dir
        self.fallback = fallback or BuiltinPromptResolver()

    def template_path(self, phase: Phase) -> Path:
        return self.prompts_dir / f"{phase.index}-{phase.value}.md"

    def resolve(self, phase: Phase, variables: Mapping[str, str]) -> str:
        path = self.template_path(phase)
        try:
            text = path.read_text("utf-8")
        except FileNotFoundError:
            logger.debug("No prompt template at %s; using built-in %s prompt", path, phase.label)
            return self.fallback.resolve(phase, variables)
        return substitute_variables(text, variables)


def substitute_variables(text: str, variables: Mapping[str, str]) -> str:
    """Replace ``{{NAME}}`` placeholders; unknown names are left untouched."""

    def _replace(match: re.Match[str]) -> str:
        return variables.get(match.group(1), match.group(0))

    return _VARIABLE_RE.sub(_replace, text)


def phase_completed_title(phase: Phase) -> str:
    return f"{phase.label} {PHASE_COMPLETED_SUFFIX}"


def prior_phase_context(task: TaskRecord, *, before: Phase) -> list[tuple[Phase, list[str]]]:
    """Latest completion summary of every phase preceding ``before``, from the work log."""

    wanted = {phase_completed_title(phase): phase for phase in PHASE_ORDER[: before.index]}
    latest: dict[Phase, list[str]] = {}
    for entry in task.work_log:
        phase = wanted.get(entry.title)
        if phase is not None:
            latest[phase] = list(entry.lines)
    return [(phase, latest[phase]) for phase in PHASE_ORDER if phase in latest]


def compose_phase_prompt(
    *,
    instructions: str,
    task: TaskRecord,
    phase: Phase,
    attempt: int,
    failure_context: str | None = None,
) -> str:
    """Assemble the full prompt for one phase attempt."""

    sections = [instructions.strip(), "", "## Task", "", f"- ID: {task.task_id}"]
    sections.append(f"- Title: {task.title}")
    sections.append(f"- Phase: {phase.label} (attempt {attempt})")
    if task.body.strip():
        sections.extend(["", "### Request", "", task.body.strip()])

    prior = prior_phase_context(task, before=phase)
    if prior:
        sections.extend(["", "## Prior phases", ""])
        for prior_phase, lines in prior:
            summary = "; ".join(lines) if lines else "completed"
            sections.append(f"- {prior_phase.label}: {summary}")

    if failure_context:
        sections.extend(
            [
                "",
                "## Previous attempt failed",
                "",
                f"Attempt {attempt - 1} of {phase.label} failed:",
                "",
                "```",
                failure_context.strip(),
                "```",
                "",
                "Fix the problems above before finishing this phase.",
            ],
        )
    return "\n".join(sections) + "\n"
