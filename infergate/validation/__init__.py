"""Output contracts and request input checks."""

from .output import OutputValidator, ValidationOutcome
from .request import validate_request_input
from .rules import ConstraintRule, StructuralRule, resolve_constraint_rule
from .structure import check_structure, strip_json_fence

__all__ = [
    "ConstraintRule",
    "OutputValidator",
    "StructuralRule",
    "ValidationOutcome",
    "check_structure",
    "resolve_constraint_rule",
    "strip_json_fence",
    "validate_request_input",
]
