"""
``{{placeholder}}`` rendering shared by calendar titles and Drive folder paths.
"""

from __future__ import annotations

import re
from typing import Any, Dict

_PLACEHOLDER = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")


def interpolate(template: str, form_title: str, payload: Dict[str, Any]) -> str:
    """Replace ``{{form_title}}`` and ``{{field_id}}`` placeholders."""

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key == "form_title":
            return form_title
        value = payload.get(key)
        if value is None:
            return ""
        if isinstance(value, (list, tuple)):
            return ", ".join(str(v) for v in value)
        return str(value)

    return _PLACEHOLDER.sub(_sub, template)
