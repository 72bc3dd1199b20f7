from __future__ import annotations

from .models import TaskIoType

_IO_TYPE_ALIASES: dict[str, TaskIoType] = {
    "json": "JSON",
    "png": "png",
    "noinput": "noInput",
    "no-input": "noInput",
    "nooutput": "noOutput",
    "no-output": "noOutput",
}


def normalize_io_type(value: object) -> TaskIoType | None:
    """Map a loosely spelled type hint to a canonical I/O type, or None."""
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if not normalized:
        return None
    return _IO_TYPE_ALIASES.get(normalized)


def resolve_io_type(
    task_value: object,
    declared_value: object,
    fallback: TaskIoType,
) -> TaskIoType:
    """Task hint wins, then the workflow's declared type, then the fallback."""
    return normalize_io_type(task_value) or normalize_io_type(declared_value) or fallback


def resolve_input_type(task_value: object, declared_value: object) -> TaskIoType:
    return resolve_io_type(task_value, declared_value, "noInput")


def resolve_output_type(task_value: object, declared_value: object) -> TaskIoType:
    return resolve_io_type(task_value, declared_value, "JSON")
