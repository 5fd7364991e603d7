"""
HR Process Engine
Submission Validator — two-layer validation of stage payloads.

Layer 1 (schema): ``config["formConfig"]`` is turned into an ordered list of
field checks. Every failing field is collected and reported in one message:

    Validation Failed: email: Invalid email address, age: Expected a number

Layer 2 (legacy): ``config["requiredFields"]`` lists field ids that must be
present and truthy; this check fails fast on the first missing field.

Keys not described by ``formConfig`` are always accepted; blocks such as
file uploads or bookings store their own values in the same payload.

Usage:
    from hrflow.services.submission_validator import validate_submission
    validate_submission(stage.config, payload)   # raises SubmissionValidationError
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from numbers import Number
from typing import Any, Callable

from email_validator import EmailNotValidError, validate_email

from hrflow.core.exceptions import SubmissionValidationError
from hrflow.utils.helpers import parse_date

logger = logging.getLogger(__name__)

INVALID_FORMAT_MESSAGE = "Invalid submission data format."

_PLAIN_NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")


# ═════════════════════════════════════════════════════════════════════════════
# Field checks
# ═════════════════════════════════════════════════════════════════════════════

def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _check_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return "Expected a string"
    return None


def _check_email(value: Any) -> str | None:
    if not isinstance(value, str):
        return "Invalid email address"
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        return "Invalid email address"
    return None


def _check_number(value: Any) -> str | None:
    if isinstance(value, bool):
        return "Expected a number"
    if isinstance(value, str):
        text = value.strip()
        if not _PLAIN_NUMBER_RE.match(text):
            return "Expected a number"
        value = float(text)
    if isinstance(value, Number) and math.isfinite(value):
        return None
    return "Expected a number"


def _check_date(value: Any) -> str | None:
    if isinstance(value, (date, datetime)):
        return None
    if isinstance(value, Number) and not isinstance(value, bool):
        try:
            datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)
            return None
        except (OverflowError, OSError, ValueError):
            return "Invalid date"
    if isinstance(value, str) and parse_date(value) is not None:
        return None
    return "Invalid date"


def _check_boolean(value: Any) -> str | None:
    if not isinstance(value, bool):
        return "Expected a boolean"
    return None


_TYPE_CHECKS: dict[str, Callable[[Any], str | None]] = {
    "text": _check_string,
    "textarea": _check_string,
    "email": _check_email,
    "number": _check_number,
    "date": _check_date,
    "boolean": _check_boolean,
    "checkbox": _check_boolean,
}


@dataclass
class FieldRule:
    """Compiled check for one ``formConfig`` entry."""
    field_id: str
    field_type: str
    required: bool = False
    options: list[str] = field(default_factory=list)

    def check(self, payload: dict) -> str | None:
        """Return an error message for this field, or None."""
        value = payload.get(self.field_id)
        if _is_empty(value):
            return "Required" if self.required else None

        if self.field_type == "select":
            if self.options:
                if value not in self.options:
                    return f"Must be one of: {', '.join(self.options)}"
                return None
            return _check_string(value)

        checker = _TYPE_CHECKS.get(self.field_type)
        if checker is None:
            return None
        return checker(value)


def build_schema(config: dict | None) -> list[FieldRule]:
    """Compile ``config["formConfig"]`` into ordered field rules."""
    rules: list[FieldRule] = []
    for descriptor in (config or {}).get("formConfig") or []:
        if not isinstance(descriptor, dict) or not descriptor.get("id"):
            continue
        options = descriptor.get("options") or []
        string_options = (
            list(options)
            if options and all(isinstance(o, str) for o in options)
            else []
        )
        rules.append(FieldRule(
            field_id=str(descriptor["id"]),
            field_type=str(descriptor.get("type") or "text"),
            required=bool(descriptor.get("required", False)),
            options=string_options,
        ))
    return rules


# ═════════════════════════════════════════════════════════════════════════════
# Entry point
# ═════════════════════════════════════════════════════════════════════════════

def validate_submission(config: dict | None, data: Any) -> None:
    """
    Validate a stage submission against the stage config.

    Raises:
        SubmissionValidationError: with ``details`` mapping field id to message.
    """
    if not isinstance(data, dict) or not all(isinstance(k, str) for k in data):
        raise SubmissionValidationError(INVALID_FORMAT_MESSAGE)

    failures: dict[str, str] = {}
    for rule in build_schema(config):
        error = rule.check(data)
        if error:
            failures[rule.field_id] = error

    if failures:
        joined = ", ".join(f"{fid}: {msg}" for fid, msg in failures.items())
        logger.debug("Submission rejected: %s", joined)
        raise SubmissionValidationError(f"Validation Failed: {joined}", details=failures)

    for field_id in (config or {}).get("requiredFields") or []:
        if not data.get(field_id):
            raise SubmissionValidationError(
                f"Field '{field_id}' is required.",
                details={field_id: "Required"},
            )
