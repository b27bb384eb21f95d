# model/formschema.py
"""
Validate a submitted key/value payload against an ordered field schema.

The schema is owned elsewhere; this module only reads it. Validation is a
pure function: it returns the cleaned data (schema order, unknown keys
dropped) together with a list of field errors, empty when the payload is
valid.
"""

from __future__ import annotations
import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

import orjson

from ..helpers import is_valid_email, today_utc
from .domain import FormFieldSpec

FIELD_TYPES = frozenset({
    "text", "email", "tel", "textarea", "select", "checkbox", "radio", "date",
})

_TEL_RE = re.compile(r"^\+?[0-9][0-9\s\-()]{5,19}$")
_TRUTHY = {"1", "true", "on", "yes", "accepted"}
_FALSY = {"0", "false", "off", "no"}


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


def errors_by_field(errors: Iterable[FieldError]) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {}
    for e in errors:
        out.setdefault(e.field, []).append(e.message)
    return out


# ----------------------------
# Rules
# ----------------------------
def parse_rule(rule: Any) -> dict[str, Any]:
    """
    Normalise a validation rule to a mapping.

    Accepts None, a mapping, a list of "key:arg" strings or the pipe form
    "min:3|max:100|regex:/^[0-9]+$/". Keys this module does not enforce
    (e.g. "unique:customers,nik") are kept but ignored.
    """
    if rule is None or rule == "":
        return {}
    if isinstance(rule, Mapping):
        out = dict(rule)
        if "regex" in out and "pattern" not in out:
            out["pattern"] = out.pop("regex")
        return out
    parts = rule.split("|") if isinstance(rule, str) else list(rule)

    out: dict[str, Any] = {}
    for part in parts:
        part = part.strip()
        if not part:
            continue
        key, _, arg = part.partition(":")
        key = key.strip().lower()
        if key in ("min", "max", "digits"):
            out[key] = int(arg)
        elif key == "regex":
            pat = arg
            if len(pat) >= 2 and pat.startswith("/") and pat.rfind("/") > 0:
                pat = pat[1:pat.rfind("/")]
            out["pattern"] = pat
        elif key == "in":
            out["in"] = [x.strip() for x in arg.split(",") if x.strip()]
        elif key in ("before", "after"):
            out[key] = arg.strip()
        else:
            out[key] = arg or True
    return out


def _resolve_day(arg: str, today: date) -> Optional[date]:
    if arg == "today":
        return today
    try:
        return date.fromisoformat(arg)
    except ValueError:
        return None


def _is_blank(v: Any) -> bool:
    return v is None or (isinstance(v, str) and not v.strip()) or v == []


def _as_text(v: Any) -> Optional[str]:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return str(v)
    if isinstance(v, str):
        return v.strip()
    return None


def _as_bool(v: Any) -> Optional[bool]:
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return bool(v)
    if isinstance(v, str):
        s = v.strip().lower()
        if s in _TRUTHY:
            return True
        if s in _FALSY:
            return False
    return None


# ----------------------------
# Per-type coercion
# ----------------------------
def _coerce(spec: FormFieldSpec, raw: Any) -> Tuple[Any, Optional[str]]:
    t = spec.type
    if t in ("text", "textarea", "email", "tel"):
        s = _as_text(raw)
        if s is None:
            return None, "must be a string"
        if t == "email" and not is_valid_email(s):
            return None, "must be a valid email address"
        if t == "tel" and not _TEL_RE.match(s):
            return None, "must be a valid phone number"
        return s, None

    if t in ("select", "radio"):
        s = _as_text(raw)
        if s is None:
            return None, "must be a single choice"
        if spec.options and s not in spec.options:
            return None, "is not one of the allowed options"
        return s, None

    if t == "checkbox":
        if not spec.options:
            b = _as_bool(raw)
            if b is None:
                return None, "must be true or false"
            return b, None
        values = [raw] if isinstance(raw, str) else raw
        if not isinstance(values, (list, tuple)):
            return None, "must be a list of choices"
        picked = []
        for v in values:
            s = _as_text(v)
            if s is None or s not in spec.options:
                return None, "contains a choice that is not allowed"
            if s not in picked:
                picked.append(s)
        return picked, None

    if t == "date":
        s = _as_text(raw)
        try:
            return date.fromisoformat(s or "").isoformat(), None
        except ValueError:
            return None, "must be a date (YYYY-MM-DD)"

    return None, f"has unsupported type {t!r}"


def _apply_rule(
    spec: FormFieldSpec, value: Any, rule: Mapping[str, Any], today: date
) -> List[str]:
    errs: List[str] = []
    if isinstance(value, bool):
        return errs

    size = len(value) if isinstance(value, (str, list)) else None
    if "min" in rule and size is not None and size < int(rule["min"]):
        errs.append(f"must have at least {rule['min']} characters"
                    if isinstance(value, str)
                    else f"must have at least {rule['min']} choices")
    if "max" in rule and size is not None and size > int(rule["max"]):
        errs.append(f"must have at most {rule['max']} characters"
                    if isinstance(value, str)
                    else f"must have at most {rule['max']} choices")

    if isinstance(value, str):
        if "digits" in rule:
            n = int(rule["digits"])
            if not (value.isdigit() and len(value) == n):
                errs.append(f"must be exactly {n} digits")
        if "numeric" in rule:
            try:
                float(value)
            except ValueError:
                errs.append("must be a number")
        if "pattern" in rule and not re.fullmatch(rule["pattern"], value):
            errs.append("has an invalid format")
        if "in" in rule and value not in rule["in"]:
            errs.append("is not one of the allowed values")
        if "email" in rule and spec.type != "email" \
                and not is_valid_email(value):
            errs.append("must be a valid email address")

    if spec.type == "date" and isinstance(value, str):
        d = date.fromisoformat(value)
        if "before" in rule:
            bound = _resolve_day(str(rule["before"]), today)
            if bound is not None and not d < bound:
                errs.append(f"must be before {bound.isoformat()}")
        if "after" in rule:
            bound = _resolve_day(str(rule["after"]), today)
            if bound is not None and not d > bound:
                errs.append(f"must be after {bound.isoformat()}")
    return errs


def validate_form(
    fields: Sequence[FormFieldSpec],
    data: Mapping[str, Any] | None,
    *,
    today: date | None = None,
) -> Tuple[dict[str, Any], List[FieldError]]:
    """
    Returns (cleaned, errors). `cleaned` follows schema order and holds
    None for blank optional fields; keys outside the schema are dropped.
    """
    data = data or {}
    today = today or today_utc()
    cleaned: dict[str, Any] = {}
    errors: List[FieldError] = []

    for spec in fields:
        raw = data.get(spec.name)
        if _is_blank(raw):
            if spec.is_required:
                errors.append(FieldError(spec.name, "is required"))
            else:
                cleaned[spec.name] = None
            continue

        value, err = _coerce(spec, raw)
        if err is not None:
            errors.append(FieldError(spec.name, err))
            continue
        if spec.type == "checkbox" and not spec.options \
                and spec.is_required and value is False:
            errors.append(FieldError(spec.name, "must be accepted"))
            continue

        rule_errs = _apply_rule(spec, value, parse_rule(spec.validation_rule),
                                today)
        if rule_errs:
            errors.extend(FieldError(spec.name, m) for m in rule_errs)
            continue
        cleaned[spec.name] = value

    return cleaned, errors


# ----------------------------
# Loading
# ----------------------------
def schema_from_list(items: Iterable[Mapping[str, Any]]) -> List[FormFieldSpec]:
    """
    Active fields in display order. Unknown types and rules that cannot be
    parsed (bad numbers, invalid patterns) raise ValueError naming the field.
    """
    active = [i for i in items if i.get("is_active", True)]
    active.sort(key=lambda i: i.get("order", 0))
    fields = [FormFieldSpec.from_dict(i) for i in active]
    for f in fields:
        if f.type not in FIELD_TYPES:
            raise ValueError(f"form field {f.name!r}: unknown type {f.type!r}")
        _check_rule(f)
    return fields


def _check_rule(f: FormFieldSpec) -> None:
    try:
        rule = parse_rule(f.validation_rule)
        for key in ("min", "max", "digits"):
            if key in rule:
                int(rule[key])
        if "pattern" in rule:
            re.compile(rule["pattern"])
    except (ValueError, TypeError, re.error) as e:
        raise ValueError(
            f"form field {f.name!r}: bad validation rule "
            f"{f.validation_rule!r} ({e})"
        ) from None


def load_schema(path: str | Path | None) -> List[FormFieldSpec]:
    if not path:
        return []
    raw = orjson.loads(Path(path).read_bytes())
    if isinstance(raw, Mapping):
        raw = raw.get("fields", [])
    return schema_from_list(raw)
