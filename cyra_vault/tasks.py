"""
Per-task payloads for batch stores.

Each task is stored as its own snapshot: the record holds just that task and
the annotation is the prompt describing it to the planning assistant.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from cyra_vault.codec import SecurePayload


class Task(BaseModel):
    id: str
    title: str
    category: str
    isFixed: bool = False
    duration: str = Field(..., pattern=r"^\d{1,2}:\d{2}$")
    date: Optional[str] = None
    startTime: Optional[str] = None
    endTime: Optional[str] = None
    deadline: Optional[str] = None
    repeatsWeekly: bool = False
    isProject: bool = False


def task_prompt(task: Task, cycle_day: int) -> str:
    lines = [
        f"User task for day {cycle_day} of the menstrual cycle:",
        f"- Title: {task.title}",
        f"- Category: {task.category}",
        f"- Type: {'Fixed' if task.isFixed else 'Flexible'}",
        f"- Duration: {task.duration}",
    ]
    if task.isFixed:
        if task.date:
            lines.append(f"- Date: {task.date}")
        if task.startTime:
            lines.append(f"- Start time: {task.startTime}")
        if task.endTime:
            lines.append(f"- End time: {task.endTime}")
    elif task.deadline:
        lines.append(f"- Deadline: {task.deadline}")
    if task.repeatsWeekly:
        lines.append("- Repeats weekly")
    if task.isProject:
        lines.append("- Is a project")
    lines.append("")
    lines.append(
        "Consider this task when generating the cycle-optimized schedule for the user."
    )
    return "\n".join(lines)


def task_payload(task: Task, cycle_day: int) -> SecurePayload:
    record: dict[str, Any] = {
        "cycleDay": cycle_day,
        "tasks": [task.model_dump(exclude_none=True)],
        "schedule": [],
    }
    return SecurePayload(record=record, annotation=task_prompt(task, cycle_day))
