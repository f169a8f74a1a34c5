"""Built-in prompts for the CodeAct engine.

Each section is a function that returns a prompt fragment; the build_*
functions compose them into the message lists sent through the
completion channel.
"""

import json
from typing import Any, Dict, List, Optional

from ..constants import FINISH_TOOL_NAME


# ---------------------------------------------------------------------------
# Section renderers
# ---------------------------------------------------------------------------

def render_preamble() -> str:
    return (
        "You are CodeAct, an autonomous software agent. You solve tasks by writing "
        "and running code inside a sandboxed workspace, one tool call at a time."
    )


def render_action_protocol() -> str:
    return f"""
# Action Protocol

Each reply contains a short explanation of your next step followed by at most ONE tool call.

- Prefer native tool calls. If you cannot, put exactly one block in your reply:
  ```json
  {{"tool": "<tool name>", "arguments": {{...}}}}
  ```
- Wait for the result of a tool call before deciding the next one.
- When the current task is done, call `{FINISH_TOOL_NAME}` with a short result, or reply without any tool call.
""".strip()


def render_workspace_rules() -> str:
    return """
# Workspace

- All paths are relative to the workspace root. Paths outside the workspace are rejected.
- Use `write_file` to create files and `run_command` to execute them. Read files back with `read_file`.
- Command output is truncated when very long; redirect large output to files and inspect parts.
- If an action fails, read the error and change your approach instead of repeating it.
""".strip()


def render_plan(plan_markdown: str, task_id: Optional[str], task_description: Optional[str]) -> str:
    current = f"`{task_id}`: {task_description}" if task_id else "(none)"
    return f"""
# Plan

{plan_markdown}

Current task: {current}
Work only on the current task.
""".strip()


def render_tools(tool_names: List[str]) -> str:
    if not tool_names:
        return ""
    return "# Available Tools\n\n" + ", ".join(f"`{n}`" for n in tool_names)


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------

def build_code_act_system_prompt(
    plan_markdown: str,
    task_id: Optional[str],
    task_description: Optional[str],
    tool_names: List[str],
) -> str:
    sections = [
        render_preamble(),
        render_action_protocol(),
        render_workspace_rules(),
        render_plan(plan_markdown, task_id, task_description),
        render_tools(tool_names),
    ]
    return "\n\n".join(s for s in sections if s)


def build_code_act_messages(
    goal: str,
    plan_markdown: str,
    task_id: Optional[str],
    task_description: Optional[str],
    tool_names: List[str],
    memory_messages: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    return [
        {"role": "system", "content": build_code_act_system_prompt(plan_markdown, task_id, task_description, tool_names)},
        {"role": "user", "content": f"Goal: {goal}"},
        *memory_messages,
    ]


def build_planning_messages(goal: str, history: List[Dict[str, str]]) -> List[Dict[str, Any]]:
    history_text = "\n".join(f"{h.get('role', 'user')}: {h.get('content', '')}" for h in history[-10:])
    system = """
You are the planner of an autonomous coding agent. Break the user's goal into a short,
ordered list of concrete tasks that can each be completed with shell commands and file edits.

Reply with a single JSON object and nothing else:
{"tasks": ["first task", "second task", ...]}

Use between 1 and 8 tasks. Each task is one imperative sentence.
""".strip()
    user = f"Goal: {goal}"
    if history_text:
        user = f"Conversation so far:\n{history_text}\n\n{user}"
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


def build_reflection_messages(
    goal: str,
    plan_markdown: str,
    failures: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    system = """
You review an autonomous coding agent that keeps failing. Decide whether the goal is still
reachable with a different approach.

Reply with a single JSON object and nothing else:
{"decision": "revise", "tasks": ["new task", ...], "reason": "why"}
or
{"decision": "stop", "tasks": [], "reason": "why the goal cannot be reached"}

Revised tasks replace the unfinished ones and must take a different approach than the failed actions.
""".strip()
    user = (
        f"Goal: {goal}\n\n"
        f"Plan:\n{plan_markdown}\n\n"
        "Consecutive failures (tool is null when the reply itself could not be used):\n"
        f"{json.dumps(failures, ensure_ascii=False, indent=2)}"
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


def build_summary_messages(
    goal: str,
    plan_markdown: str,
    step_digest: List[str],
) -> List[Dict[str, Any]]:
    system = (
        "Summarize for the user what was done to reach the goal: the files created or changed, "
        "the commands that matter, and how to use the result. Be brief and concrete. "
        "Do not call tools."
    )
    return [
        {"role": "system", "content": system},
        {
            "role": "user",
            "content": (
                f"Goal: {goal}\n\nFinal plan:\n{plan_markdown}\n\n"
                "Actions taken:\n" + "\n".join(step_digest) + "\n\nWrite the summary now."
            ),
        },
    ]


def render_partial_summary(goal: str, plan_markdown: str, reason: str, steps: int) -> str:
    """Summary for a run that did not finish, rendered without the model."""
    return (
        f"The goal was not completed: {reason}\n\n"
        f"Goal: {goal}\n\n"
        f"Progress after {steps} actions:\n{plan_markdown}"
    )


def render_format_error_note(error: str) -> str:
    return (
        f"Your previous reply could not be parsed ({error}). "
        "Reply with an explanation and at most one tool call."
    )


def render_reflection_note(reason: str, tasks: List[str]) -> str:
    listed = "\n".join(f"- {t}" for t in tasks)
    return f"Plan revised after repeated failures ({reason}). New tasks:\n{listed}"
