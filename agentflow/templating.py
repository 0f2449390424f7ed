import re
from typing import Any, Dict
from urllib.parse import quote


def render_template(template: str, params: Dict[str, Any], escape: bool = False) -> str:
    """Substitute ``{key}`` and ``{{key}}`` placeholders for every key in *params*.

    Both syntaxes are accepted because stored tool configs use either one.
    Substitution is a single pass, so placeholder-like text inside a value is
    never expanded again. Placeholders for keys not in *params* are left alone.
    With ``escape=True`` values are percent-encoded for use inside a URL.
    """
    if not params:
        return template

    values = {str(k): v for k, v in params.items()}
    keys = "|".join(re.escape(k) for k in sorted(values, key=len, reverse=True))
    pattern = re.compile(r"\{\{(" + keys + r")\}\}|\{(" + keys + r")\}")

    def _rep(m: re.Match) -> str:
        value = values[m.group(1) if m.group(1) is not None else m.group(2)]
        text = "" if value is None else str(value)
        return quote(text, safe="") if escape else text

    return pattern.sub(_rep, template)
