"""Merge-field contract validation and placeholder substitution.

Resolution is a pure function: the input timeline is serialized, every string
leaf is substituted in a single pass, and the result is rebuilt as a new
``Timeline``. Unknown placeholders stay verbatim.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from vidcompose.errors import MergeFieldError
from vidcompose.timeline.models import Timeline
from vidcompose.timeline.normalizer import normalize_timeline
from vidcompose.timeline.placeholders import PLACEHOLDER_RES, find_placeholders
from vidcompose.utils.config import TimelineConfig
from vidcompose.utils.logging import debug, warn

_STRING = (str,)
_NUMBER = (int, float)

TYPE_MAP: dict[str, tuple[type, ...]] = {
    "text": _STRING,
    "string": _STRING,
    "image": _STRING,
    "video": _STRING,
    "audio": _STRING,
    "url": _STRING,
    "color": _STRING,
    "number": _NUMBER,
    "boolean": (bool,),
}

_COMBINED_RE = re.compile("|".join(f"(?:{rx.pattern})" for rx in PLACEHOLDER_RES))


@dataclass
class MergeFieldSpec:
    """Declared contract for one merge field."""
    name: str
    type: str = "text"
    required: bool = False
    max_length: int | None = None
    allowed_values: list[Any] | None = None
    default_value: Any = None

    @classmethod
    def from_dict(cls, d: dict, name: str = "") -> MergeFieldSpec:
        return cls(
            name=str(d.get("name") or name),
            type=str(d.get("type") or "text").lower(),
            required=bool(d.get("required", False)),
            max_length=d.get("maxLength", d.get("max_length")),
            allowed_values=d.get("allowedValues", d.get("allowed_values")),
            default_value=d.get("defaultValue", d.get("default_value", d.get("default"))),
        )


@dataclass
class MergeReport:
    used_undeclared: list[str] = field(default_factory=list)
    declared_unused: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "usedUndeclared": self.used_undeclared,
            "declaredUnused": self.declared_unused,
            "unresolved": self.unresolved,
        }


@dataclass
class MergeResult:
    timeline: Timeline
    report: MergeReport


def parse_field_specs(raw: Any) -> list[MergeFieldSpec]:
    """Accept a list of spec dicts or a ``{name: spec}`` mapping."""
    if not raw:
        return []
    if isinstance(raw, dict):
        return [s if isinstance(s, MergeFieldSpec) else MergeFieldSpec.from_dict(s or {}, name)
                for name, s in raw.items()]
    return [s if isinstance(s, MergeFieldSpec) else MergeFieldSpec.from_dict(s) for s in raw]


def _type_ok(value: Any, declared: str) -> bool:
    expected = TYPE_MAP.get(declared)
    if expected is None:
        return True
    if isinstance(value, bool) and bool not in expected:
        return False
    return isinstance(value, expected)


def validate_merge_fields(values: dict[str, Any], specs: Any = None) -> list[str]:
    """Check supplied values against their contracts before any substitution.

    Returns warnings (undeclared fields). Raises ``MergeFieldError`` listing
    every violation.
    """
    specs = parse_field_specs(specs)
    errors: list[tuple[str, str, str]] = []
    warnings: list[str] = []

    for spec in specs:
        value = values.get(spec.name)
        if value is None:
            if spec.required and spec.default_value is None:
                errors.append(("MISSING_REQUIRED_FIELD", spec.name,
                               f"Required merge field '{spec.name}' is missing"))
            continue
        if not _type_ok(value, spec.type):
            errors.append(("INVALID_FIELD_TYPE", spec.name,
                           f"Merge field '{spec.name}' must be of type {spec.type}, "
                           f"got {type(value).__name__}"))
            continue
        if spec.max_length is not None and isinstance(value, str) and len(value) > spec.max_length:
            errors.append(("FIELD_TOO_LONG", spec.name,
                           f"Merge field '{spec.name}' exceeds max length {spec.max_length}"))
        if spec.allowed_values is not None and value not in spec.allowed_values:
            errors.append(("INVALID_FIELD_VALUE", spec.name,
                           f"Merge field '{spec.name}' must be one of {spec.allowed_values}"))

    # a value naming another supplied key would be expanded again on a second pass
    for name, value in values.items():
        if isinstance(value, str):
            nested = find_placeholders(value) & set(values)
            if nested:
                errors.append(("INVALID_FIELD_VALUE", name,
                               f"Merge field '{name}' references merge field(s) {sorted(nested)}"))

    if specs:
        declared = {s.name for s in specs}
        for name in sorted(set(values) - declared):
            warnings.append(f"Merge field '{name}' is not declared")

    if errors:
        raise MergeFieldError(errors)
    for w in warnings:
        warn(f"[merge] {w}")
    return warnings


def apply_defaults(values: dict[str, Any], specs: Any = None) -> dict[str, Any]:
    """Fill unsupplied fields from their declared ``defaultValue``."""
    merged = dict(values)
    for spec in parse_field_specs(specs):
        if merged.get(spec.name) is None and spec.default_value is not None:
            merged[spec.name] = spec.default_value
    return merged


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def resolve_text(text: str, values: dict[str, Any]) -> str:
    """Substitute every known placeholder in ``text`` in one left-to-right pass."""

    def _sub(m: re.Match[str]) -> str:
        key = next(g for g in m.groups() if g is not None)
        if key not in values:
            return m.group(0)
        return format_value(values[key])

    return _COMBINED_RE.sub(_sub, text)


def _substitute(obj: Any, values: dict[str, Any]) -> Any:
    if isinstance(obj, str):
        out = resolve_text(obj, values)
        # a value can complete a placeholder together with the literal text around it
        formed = find_placeholders(out) & set(values)
        if formed:
            raise MergeFieldError([
                ("INVALID_FIELD_VALUE", key,
                 f"Substituting into {obj!r} forms a placeholder for merge field '{key}'")
                for key in sorted(formed)
            ])
        return out
    if isinstance(obj, dict):
        return {k: _substitute(v, values) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute(v, values) for v in obj]
    return obj


def resolve_merge_fields(
    timeline: Timeline,
    values: dict[str, Any],
    specs: Any = None,
    settings: TimelineConfig | None = None,
) -> MergeResult:
    """Return a new timeline with placeholders replaced, plus a usage report."""
    specs = parse_field_specs(specs)
    values = apply_defaults(values or {}, specs)
    data = timeline.to_dict()
    used = find_placeholders(data)

    resolved = normalize_timeline(_substitute(data, values), settings, optimize=False).timeline

    declared = {s.name for s in specs} if specs else set(values)
    report = MergeReport(
        used_undeclared=sorted(used - declared),
        declared_unused=sorted(declared - used),
        unresolved=sorted(used - set(values)),
    )
    debug(f"[merge] {len(used)} placeholder key(s), {len(report.unresolved)} unresolved")
    return MergeResult(timeline=resolved, report=report)
