"""Resume prompt generation.

Turns decoded checkpoint sections into a short structured summary the
host can show to the user or hand to its decision layer. Section content
is opaque, so extraction only looks for a handful of conventional keys
and silently skips anything it does not recognise.
"""

from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any

from crashguard.contracts import CheckpointTrigger, InterruptionReason, ResumePrompt, StateSection

_SECTION_LABELS: dict[str, str] = {
    StateSection.CONVERSATION: "conversation summary",
    StateSection.TASK: "task progress",
    StateSection.FILES: "file activity",
    StateSection.TOOLS: "tool activity",
}

_SITUATIONS: dict[InterruptionReason, str] = {
    InterruptionReason.CRASH: "The previous session ended unexpectedly (likely crash) while crash risk was elevated.",
    InterruptionReason.TIMEOUT: "The previous session stopped after running past its expected duration (likely timeout).",
    InterruptionReason.CLEAN_SHUTDOWN: "The previous session ended normally.",
    InterruptionReason.UNKNOWN: "The previous session was interrupted without a clean shutdown.",
}

# Items listed per section before truncating with "(+N more)".
_MAX_ITEMS = 5


def section_label(name: str) -> str:
    return _SECTION_LABELS.get(name, f"{name} section")


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _first_text(data: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _items(data: Mapping[str, Any], *keys: str) -> list[str]:
    """Collect list entries under the first matching key as display strings."""
    for key in keys:
        value = data.get(key)
        if isinstance(value, Sequence) and not isinstance(value, str | bytes):
            out: list[str] = []
            for item in value:
                if isinstance(item, Mapping):
                    text = _first_text(item, "tool", "name", "path", "description", "summary")
                else:
                    text = str(item)
                if text:
                    out.append(text)
            return out
    return []


def _join(items: list[str]) -> str:
    shown = items[:_MAX_ITEMS]
    text = ", ".join(shown)
    if len(items) > _MAX_ITEMS:
        text += f" (+{len(items) - _MAX_ITEMS} more)"
    return text


def _progress(task: Mapping[str, Any]) -> float | None:
    value = task.get("progress")
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return min(max(float(value), 0.0), 1.0)


def describe_recovery(recovered: Iterable[str], lost: Iterable[str]) -> str:
    """Plain-language statement of which sections survived.

    Example: "file activity recovered, conversation summary lost".
    """
    recovered_labels = [section_label(name) for name in recovered]
    lost_labels = [section_label(name) for name in lost]
    if not lost_labels:
        return ""
    parts: list[str] = []
    if recovered_labels:
        parts.append(f"{' and '.join(recovered_labels)} recovered")
    parts.append(f"{' and '.join(lost_labels)} lost")
    return "Partial recovery: " + ", ".join(parts) + "."


def build_resume_prompt(
    checkpoint_id: str,
    sections: Mapping[str, Any],
    *,
    trigger: CheckpointTrigger,
    created_at: datetime,
    reason: InterruptionReason | None = None,
    lost_sections: Sequence[str] = (),
) -> ResumePrompt:
    """Build a ResumePrompt from decoded sections.

    Args:
        checkpoint_id: Checkpoint being summarised
        sections: Decoded sections by name (lost ones absent)
        trigger: Why the checkpoint was taken
        created_at: When the checkpoint was taken
        reason: Inferred interruption reason; None at creation time
        lost_sections: Sections that failed to decode
    """
    conversation = _as_mapping(sections.get(StateSection.CONVERSATION))
    task = _as_mapping(sections.get(StateSection.TASK))
    files = _as_mapping(sections.get(StateSection.FILES))
    tools = _as_mapping(sections.get(StateSection.TOOLS))

    if reason is None:
        situation = f"Checkpoint taken at {created_at.isoformat()} (trigger: {trigger.value})."
    else:
        situation = f"{_SITUATIONS[reason]} Last checkpoint: {created_at.isoformat()} (trigger: {trigger.value})."

    operation = _first_text(task, "operation", "title", "description", "goal")
    progress = _progress(task)
    phase = _first_text(task, "phase", "status")
    progress_parts: list[str] = []
    if operation:
        progress_parts.append(f"Working on: {operation}")
    if progress is not None:
        progress_parts.append(f"{round(progress * 100)}% complete")
    if phase:
        progress_parts.append(f"phase: {phase}")
    completed = _items(task, "completed_steps", "completed")
    if completed:
        progress_parts.append(f"done: {_join(completed)}")

    active_files = _items(files, "active_files", "open_files")
    modified_files = _items(files, "modified_files", "changed_files")
    file_parts: list[str] = []
    if active_files:
        file_parts.append(f"active: {_join(active_files)}")
    if modified_files:
        file_parts.append(f"modified: {_join(modified_files)}")

    tool_parts: list[str] = []
    recent_tools = _items(tools, "recent_tool_calls", "recent_tools")
    if recent_tools:
        tool_parts.append(f"recent: {_join(recent_tools)}")
    pending = _items(tools, "pending_operations", "pending")
    if pending:
        tool_parts.append(f"pending: {_join(pending)}")

    recovered = [name for name in sections if name not in lost_sections]
    text_sections = {
        "situation": situation,
        "recovery": describe_recovery(recovered, lost_sections),
        "progress": "; ".join(progress_parts),
        "context": _first_text(conversation, "summary", "current_context", "context"),
        "decisions": _join(_items(conversation, "key_decisions", "decisions")),
        "next": _join(_items(task, "next_steps", "next")),
        "files": "; ".join(file_parts),
        "tools": "; ".join(tool_parts),
        "blockers": _join(_items(task, "blockers")),
    }
    return ResumePrompt(
        checkpoint_id=checkpoint_id,
        sections=text_sections,
        interruption_reason=reason,
        progress=progress,
    )
