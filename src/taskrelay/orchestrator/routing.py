"""Agent command templates, default models and rate-limit fallbacks."""

from __future__ import annotations

from dataclasses import dataclass, field

SUPPORTED_AGENTS = ("claude", "codex", "gemini", "copilot", "opencode", "cursor")

DEFAULT_COMMAND_TEMPLATES: dict[str, str] = {
    "claude": (
        "claude --dangerously-skip-permissions --permission-mode bypassPermissions "
        "--model {model} -p {prompt}"
    ),
    "codex": "codex exec --dangerously-bypass-approvals-and-sandbox -m {model} {prompt}",
    "gemini": "gemini --yolo -m {model} -p {prompt}",
    "copilot": "copilot --allow-all-tools --allow-all-paths -m {model} -p {prompt}",
    "opencode": "opencode run --auto-approve --model {model} {prompt}",
    "cursor": "cursor agent --model {model} -p {prompt}",
}

DEFAULT_MODELS: dict[str, str] = {
    "claude": "opus",
    "codex": "gpt-5",
    "gemini": "gemini-2.5-pro",
    "copilot": "claude-sonnet-4.5",
    "opencode": "claude-sonnet-4",
    "cursor": "claude-sonnet-4",
}

FALLBACK_MODELS: dict[str, str] = {
    "claude": "sonnet",
    "codex": "o4-mini",
    "gemini": "gemini-2.5-flash",
    "copilot": "claude-sonnet-4",
    "opencode": "claude-sonnet-4",
}

# Models that are already at or below the fallback tier.
_ALREADY_DOWNGRADED: dict[str, frozenset[str]] = {
    "claude": frozenset({"sonnet", "haiku"}),
}


@dataclass(slots=True)
class AgentRouting:
    """Resolved agent, model and command template for a worker."""

    agent: str
    model: str
    command_template: str
    fallback_model: str | None = None
    already_downgraded: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def for_agent(
        cls,
        agent: str,
        *,
        model: str | None = None,
        command_template: str | None = None,
        allow_fallback: bool = True,
    ) -> AgentRouting:
        normalized = agent.strip().lower()
        if normalized not in SUPPORTED_AGENTS:
            allowed = ", ".join(SUPPORTED_AGENTS)
            raise ValueError(f"Unsupported agent: {agent!r}. Expected one of: {allowed}")
        template = command_template or DEFAULT_COMMAND_TEMPLATES[normalized]
        if "{prompt}" not in template and "{prompt_file}" not in template:
            raise ValueError(
                f"Command template for agent={normalized!r} must include {{prompt}} "
                "or {prompt_file}.",
            )
        return cls(
            agent=normalized,
            model=(model or DEFAULT_MODELS[normalized]).strip(),
            command_template=template,
            fallback_model=FALLBACK_MODELS.get(normalized) if allow_fallback else None,
            already_downgraded=_ALREADY_DOWNGRADED.get(normalized, frozenset()),
        )

    def downgrade_from(self, model: str) -> str | None:
        """One-step fallback for ``model``, or None when no further step exists."""

        if self.fallback_model is None:
            return None
        if model == self.fallback_model or model in self.already_downgraded:
            return None
        return self.fallback_model
