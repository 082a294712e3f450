"""Shell command builder for starting a coding agent inside a sandbox.

Both providers use this for fresh starts, resumes and re-attachments. Prompts for
Claude and for detached OpenCode are piped through base64 so arbitrary text survives
the shell; interactive OpenCode takes its prompt through ``--prompt``.
"""

from __future__ import annotations

import base64
import shlex
from typing import Sequence

from ..sessions import AgentType

PLAN_MODE_ARGS = ("--permission-mode", "plan")


def _piped(prompt: str, cmd: str) -> str:
    encoded = base64.b64encode(prompt.encode("utf-8")).decode("ascii")
    return f"echo '{encoded}' | base64 -d | {cmd}"


def build_agent_command(
    agent: AgentType | str,
    *,
    mode: str = "interactive",
    model: str | None = None,
    agent_args: Sequence[str] | None = None,
    continue_: bool = False,
    prompt: str | None = None,
) -> str:
    agent = AgentType(agent)
    detached = mode == "detached"
    model_arg = f" --model {shlex.quote(model)}" if model else ""
    extra = list(agent_args or [])
    extra_args = f" {' '.join(shlex.quote(arg) for arg in extra)}" if extra else ""
    has_prompt = bool(prompt and prompt.strip())

    if agent is AgentType.CLAUDE:
        skip_flag = (
            "--allow-dangerously-skip-permissions"
            if "--permission-mode" in extra
            else "--dangerously-skip-permissions"
        )
        cmd = (
            "claude"
            f"{' -c' if continue_ else ''}"
            f"{' -p' if detached else ''}"
            f"{extra_args}{model_arg} {skip_flag}"
        )
        return _piped(prompt, cmd) if has_prompt else cmd

    if detached:
        cmd = f"opencode{model_arg}{extra_args} run{' -c' if continue_ else ''}"
        return _piped(prompt, cmd) if has_prompt else cmd

    if has_prompt and not continue_:
        return f"opencode{model_arg}{extra_args} --prompt {shlex.quote(prompt)}"
    return f"opencode{model_arg}{extra_args}{' -c' if continue_ else ''}"


def build_continue_command(agent: AgentType | str, model: str | None = None) -> str:
    """Interactive continue command, used when re-attaching to a finished agent."""

    return build_agent_command(agent, mode="interactive", model=model, continue_=True)


__all__ = ["PLAN_MODE_ARGS", "build_agent_command", "build_continue_command"]
