"""
tools/validation.py — JSON Schema checks for tool input and output

Thin layer over the jsonschema library used by the ToolBus:
  - validate_payload()        collect every schema error, not just the first
  - inject_defaults()         fill absent top-level properties from schema defaults
  - validate_and_normalize()  inject defaults, then validate
  - try_repair_output()       bounded repair of uniquely inferrable field renames

An empty schema ({}) accepts any payload.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Optional

import jsonschema
from jsonschema.validators import validator_for


@dataclass
class ValidationReport:
    valid: bool
    payload: Any = None                          # payload after default injection
    errors: list[str] = field(default_factory=list)
    missing_fields: list[str] = field(default_factory=list)
    unknown_fields: list[str] = field(default_factory=list)
    only_missing_required: bool = False          # every error is a top-level 'required' miss

    def summary(self, limit: int = 3) -> str:
        shown = "; ".join(self.errors[:limit])
        extra = len(self.errors) - limit
        if extra > 0:
            shown += f" (+{extra} more)"
        return shown


def _validator(schema: dict[str, Any]) -> jsonschema.protocols.Validator:
    cls = validator_for(schema, default=jsonschema.Draft202012Validator)
    return cls(schema)


def _format_error(err: jsonschema.ValidationError) -> str:
    location = ".".join(str(p) for p in err.absolute_path)
    return f"{location}: {err.message}" if location else err.message


def inject_defaults(schema: dict[str, Any], payload: Any) -> Any:
    """Return a copy of payload with absent top-level properties set to their schema default."""
    if not isinstance(payload, dict):
        return payload
    properties = schema.get("properties") or {}
    result = dict(payload)
    for name, prop in properties.items():
        if name not in result and isinstance(prop, dict) and "default" in prop:
            result[name] = copy.deepcopy(prop["default"])
    return result


def validate_payload(schema: dict[str, Any], payload: Any) -> ValidationReport:
    """Validate payload against schema and collect every error."""
    if not schema:
        return ValidationReport(valid=True, payload=payload)

    errors = sorted(_validator(schema).iter_errors(payload), key=lambda e: list(e.path))
    if not errors:
        return ValidationReport(valid=True, payload=payload)

    missing: list[str] = []
    only_required = True
    for err in errors:
        if err.validator == "required" and not err.absolute_path and isinstance(payload, dict):
            for name in err.validator_value:
                if name not in payload and name not in missing:
                    missing.append(name)
        else:
            only_required = False

    unknown: list[str] = []
    if isinstance(payload, dict):
        known = set((schema.get("properties") or {}).keys())
        unknown = [k for k in payload if k not in known]

    return ValidationReport(
        valid=False,
        payload=payload,
        errors=[_format_error(e) for e in errors],
        missing_fields=missing,
        unknown_fields=unknown,
        only_missing_required=only_required and bool(missing),
    )


def validate_and_normalize(schema: dict[str, Any], payload: Any) -> ValidationReport:
    """Inject defaults, then validate. The report carries the normalised payload."""
    return validate_payload(schema, inject_defaults(schema, payload))


def _name_key(name: str) -> str:
    return re.sub(r"[\s_\-.]", "", name).lower()


def try_repair_output(
    schema: dict[str, Any], report: ValidationReport
) -> Optional[ValidationReport]:
    """
    Attempt a bounded repair of an output that failed validation.

    Only renames are attempted: each missing required property must match
    exactly one unknown property by a case and separator insensitive name
    comparison, and no unknown property may be claimed twice. Returns the
    report of the repaired payload when it validates, else None.
    """
    if report.valid or not report.only_missing_required:
        return None
    if not isinstance(report.payload, dict):
        return None

    renames: dict[str, str] = {}
    for missing in report.missing_fields:
        candidates = [u for u in report.unknown_fields if _name_key(u) == _name_key(missing)]
        if len(candidates) != 1 or candidates[0] in renames:
            return None
        renames[candidates[0]] = missing

    repaired = {renames.get(k, k): v for k, v in report.payload.items()}
    result = validate_and_normalize(schema, repaired)
    return result if result.valid else None
