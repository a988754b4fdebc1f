"""
Validation of untrusted input against pydantic models.

``validate`` never raises for bad input: it returns either the typed value or every
violation pydantic found, in schema declaration order. ``unwrap`` turns a failed
result into a ValidationFailure for code paths that prefer exceptions.
"""

import json
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from shared.errors import ValidationFailure

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class FieldViolation:
    field: str
    message: str
    code: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message, "code": self.code}


@dataclass(frozen=True)
class ValidationResult(Generic[ModelT]):
    value: ModelT | None = None
    violations: tuple[FieldViolation, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.violations

    def unwrap(self) -> ModelT:
        if self.violations:
            raise ValidationFailure(self.violations)
        return self.value


def _field_path(loc: tuple, root: str) -> str:
    if not loc:
        return root
    return ".".join(str(part) for part in loc)


def violations_from(exc: PydanticValidationError, root: str = "body") -> tuple[FieldViolation, ...]:
    return tuple(
        FieldViolation(
            field=_field_path(error["loc"], root),
            message=error["msg"],
            code=error["type"].upper(),
        )
        for error in exc.errors(include_url=False)
    )


def validate(schema: type[ModelT], raw: Any, root: str = "body") -> ValidationResult[ModelT]:
    try:
        value = schema.model_validate(raw)
    except PydanticValidationError as exc:
        return ValidationResult(violations=violations_from(exc, root))
    return ValidationResult(value=value)


def parse_json(raw: bytes | str | None, root: str = "body") -> Any:
    """Decode a JSON document, reporting an unreadable or empty one as a violation."""
    if raw is None or (isinstance(raw, (bytes, str)) and not raw.strip()):
        raise ValidationFailure([FieldViolation(root, f"{root} is required", "MISSING")])
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValidationFailure(
            [FieldViolation(root, f"{root} is not valid JSON: {exc}", "INVALID_JSON")]
        ) from exc
