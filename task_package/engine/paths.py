"""Dot-path access into flow messages (``payload.sensor.id``)."""

from typing import Any

from pydantic import BaseModel

from task_package.models.task_package import FlowMessage


def get_path(obj: Any, path: str) -> Any:
    """Resolve a dot path through models and dicts. Missing segments yield None."""
    current = obj
    for segment in path.split("."):
        if current is None:
            return None
        if isinstance(current, BaseModel):
            if segment in type(current).model_fields:
                current = getattr(current, segment)
            else:
                current = (current.model_extra or {}).get(segment)
        elif isinstance(current, dict):
            current = current.get(segment)
        else:
            return None
    return current


def set_path(message: FlowMessage, path: str, value: Any) -> FlowMessage:
    """Return a copy of ``message`` with ``value`` written at ``path``."""
    head, _, rest = path.partition(".")
    if not rest:
        return message.evolve(**{head: value})

    root = get_path(message, head)
    if isinstance(root, BaseModel):
        root = root.model_dump()
    container = dict(root) if isinstance(root, dict) else {}

    node = container
    segments = rest.split(".")
    for segment in segments[:-1]:
        child = node.get(segment)
        child = dict(child) if isinstance(child, dict) else {}
        node[segment] = child
        node = child
    node[segments[-1]] = value

    if head == "workflow_context":
        return message.evolve(workflow_context=type(message.workflow_context).model_validate(container))
    return message.evolve(**{head: container})


def split_fields(value: str | list[str] | None) -> list[str]:
    """Accept a comma-separated string or a list of field paths."""
    if value is None:
        return []
    if isinstance(value, str):
        return [f.strip() for f in value.split(",") if f.strip()]
    return [f.strip() for f in value if f and f.strip()]
