from __future__ import annotations

import re

_underscore_re = re.compile(r"[_\-]+")
_camel_re = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_whitespace_re = re.compile(r"\s+")
_cnpj_id_re = re.compile(r"\[([^|\]]+)\|")


def format_action_label(action_id: str | None) -> str:
    """Turn a snake_case or camelCase action id into a Title Case label."""

    if not action_id or action_id == "default":
        return "Total"

    v = _underscore_re.sub(" ", action_id)
    v = _camel_re.sub(" ", v)
    v = _whitespace_re.sub(" ", v).strip()
    return " ".join(word[:1].upper() + word[1:].lower() for word in v.split(" "))


def extract_cnpj_id(value: str | None) -> str | None:
    """
    Pull the company id out of an action-log CNPJ label.

    "RODOPRIMA LOGISTICA LTDA l 0001 [2000|0001-60]" -> "2000"
    """
    if not value or not isinstance(value, str):
        return None
    match = _cnpj_id_re.search(value)
    if match is None:
        return None
    return match.group(1).strip() or None


def parse_number(value: object) -> float:
    """Backend scalars arrive as numbers or numeric strings; anything else is 0."""

    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return 0
    return 0
