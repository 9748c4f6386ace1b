"""Request checks against a scenario's input schema."""

from __future__ import annotations

from ..errors import InvalidInputError
from ..models import ExecutionRequest
from ..scenarios.models import ScenarioSpec


def _present(request: ExecutionRequest, field: str) -> bool:
    data = request.input
    return field in data.model_fields_set or field in (data.model_extra or {})


def validate_request_input(request: ExecutionRequest, scenario: ScenarioSpec) -> None:
    """Raise :class:`InvalidInputError` when the input breaks the scenario schema."""

    schema = scenario.input_schema
    data = request.input

    for field in schema.required_fields:
        if not _present(request, field):
            raise InvalidInputError(f"input.{field} is required", details={"field": field})

    if _present(request, "text"):
        if not schema.allow_text:
            raise InvalidInputError("input.text is not allowed for this scenario")
        if not isinstance(data.text, str):
            raise InvalidInputError("input.text must be string")
        if len(data.text) > schema.max_text_length:
            raise InvalidInputError(
                f"input.text exceeds {schema.max_text_length}",
                details={"max_text_length": schema.max_text_length},
            )

    if _present(request, "images"):
        if not schema.allow_images:
            raise InvalidInputError("input.images is not allowed for this scenario")
        if not isinstance(data.images, list):
            raise InvalidInputError("input.images must be array")
        if len(data.images) > schema.max_images:
            raise InvalidInputError(
                f"input.images exceeds {schema.max_images}",
                details={"max_images": schema.max_images},
            )

    if _present(request, "attachments"):
        if not schema.allow_attachments:
            raise InvalidInputError("input.attachments is not allowed for this scenario")
        if not isinstance(data.attachments, list):
            raise InvalidInputError("input.attachments must be array")
