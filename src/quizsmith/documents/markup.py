"""Small markup string helpers."""

from __future__ import annotations

import re

__all__ = ["strip_tags", "strip_code_block_wrappers"]

_TAG_RE = re.compile(r"<[^>]*>")
_FENCE_RE = re.compile(r"^```[ \t]*([a-zA-Z]*)[ \t]*\r?\n(.*?)\r?\n```[ \t]*$", re.DOTALL)


def strip_tags(markup: str) -> str:
    return _TAG_RE.sub("", markup or "").strip()


def strip_code_block_wrappers(content: str) -> str:
    """Remove a markdown code fence that a model wrapped around markup.

    ```` ```html ```` fences are always unwrapped; untagged (or other-tagged)
    fences only when the body looks like markup.
    """

    if not content:
        return content
    cleaned = content.strip()
    match = _FENCE_RE.match(cleaned)
    if match is None:
        return cleaned
    language, body = match.group(1).lower(), match.group(2)
    if language == "html" or body.strip().startswith("<"):
        return body.strip()
    return cleaned
