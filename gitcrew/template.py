"""Minimal `{{.Field}}` substitution for user-supplied command templates.

Only plain field references are supported. A reference to a field that was not provided
raises `TemplateError` instead of rendering as an empty string, so a typo in a poll hook or
agent command fails loudly.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

from .errors import TemplateError

_FIELD_RE = re.compile(r"\{\{\s*\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def render_template(template: str, fields: Mapping[str, Any]) -> str:
    def sub(m: re.Match[str]) -> str:
        name = m.group(1)
        if name not in fields:
            known = ", ".join(sorted(fields)) or "(none)"
            raise TemplateError(f"unknown template field {{{{.{name}}}}} (available: {known})")
        value = fields[name]
        return "" if value is None else str(value)

    return _FIELD_RE.sub(sub, template)
