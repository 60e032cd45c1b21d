"""Module for preserving templating expressions across a render and label pass.

Values and chart templates may contain `{{ ... }}` expressions that belong to a
later templating pass and must reach the release store untouched. The agent
can't evaluate them and a YAML round trip would mangle them, so they are
handled in two steps:

1. Every string leaf of the values that contains an expression is replaced by
   `TEMPLATE_MARKER` before rendering. The marker is itself a valid YAML
   mapping line so that it survives rendering and label injection.
2. After label injection each marker is swapped back for the original
   expression found in the chart's ConfigMap templates. Expressions are keyed
   by the last `KEY_LENGTH` characters of the text preceding them, with spaces
   and newlines removed. The same key is computed for the text preceding the
   marker in the labeled manifest.

Keys are only five characters long, so two expressions in boilerplate that
ends the same way share a key and the later one wins in `template_placeholders`.
"""

from collections.abc import Iterable
from functools import singledispatch
import logging
import re
from typing import Any

import yaml

from .exceptions import InputException

__all__ = [
    "TEMPLATE_MARKER",
    "remove_template_values",
    "template_placeholders",
    "restore_placeholders",
]

_LOGGER = logging.getLogger(__name__)

TEMPLATE_MARKER = "release-agent-template: placeholder"
FALLBACK_VALUE = "placeholder: removed"
KEY_LENGTH = 5

# Markers this close to the start of a manifest have no usable preceding text
MIN_MARKER_OFFSET = 8

_EXPRESSION_START = "{{"
_EXPRESSION_END = "}}"
_EXPRESSION = re.compile(r"\{\{.*\}\}")
_INDENT = "indent"


@singledispatch
def scrub_templates(value: Any) -> Any:
    """Return the value with templating expressions replaced by the marker.

    Numbers, booleans and null are returned unchanged.
    """
    return value


@scrub_templates.register
def _(value: str) -> Any:
    if _EXPRESSION.search(value):
        return TEMPLATE_MARKER
    return value


@scrub_templates.register
def _(value: dict) -> Any:  # type: ignore[type-arg]
    return {key: scrub_templates(item) for key, item in value.items()}


@scrub_templates.register
def _(value: list) -> Any:  # type: ignore[type-arg]
    return [scrub_templates(item) for item in value]


def parse_values(values: str) -> dict[str, Any]:
    """Parse raw values text into a nested mapping."""
    try:
        doc = yaml.load(values, Loader=yaml.SafeLoader)
    except yaml.YAMLError as err:
        raise InputException(f"unmarshal values err: {err}") from err
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise InputException(f"Expected values to be a mapping, found {type(doc)}")
    return doc


def remove_template_values(values: str) -> str:
    """Return the values text with templating expressions replaced by the marker."""
    scrubbed = scrub_templates(parse_values(values))
    try:
        return yaml.dump(scrubbed, sort_keys=False)
    except yaml.YAMLError as err:
        raise InputException(f"marshal map values err: {err}") from err


def _placeholder_key(text: str) -> str | None:
    """Return the lookup key for the text preceding an expression or marker."""
    stripped = text.replace(" ", "").replace("\n", "")
    if len(stripped) < KEY_LENGTH:
        return None
    return stripped[-KEY_LENGTH:]


def template_placeholders(sources: Iterable[str]) -> dict[str, str]:
    """Map the key of every expression in the templates to its verbatim text."""
    placeholders: dict[str, str] = {}
    for source in sources:
        remaining = source
        while (start := remaining.find(_EXPRESSION_START)) != -1:
            if (end := remaining.find(_EXPRESSION_END, start)) == -1:
                break
            end += len(_EXPRESSION_END)
            if key := _placeholder_key(remaining[:start]):
                if key in placeholders:
                    _LOGGER.debug(
                        "Template expression key %r is shared, keeping %s",
                        key,
                        remaining[start:end],
                    )
                placeholders[key] = remaining[start:end]
            remaining = remaining[end:]
    return placeholders


def template_indent(expression: str) -> int | None:
    """Return N for an expression piped through `indent N`, if any."""
    if (index := expression.find(_INDENT)) == -1:
        return None
    words = expression[index + len(_INDENT) :].strip().split(" ")
    try:
        return int(words[0])
    except ValueError:
        return None


def restore_placeholders(manifest: str, placeholders: dict[str, str]) -> str:
    """Replace each marker in the manifest with its original expression.

    Markers are replaced left to right. A used expression is removed from
    `placeholders`, which is shared by every manifest of one render pass. An
    `indent N` expression also removes up to N spaces of indentation in front
    of the marker, since the expression adds its own. A marker without a
    matching expression is replaced with an inert fallback value.
    """
    while (index := manifest.find(TEMPLATE_MARKER)) != -1:
        key = None
        if index >= MIN_MARKER_OFFSET:
            key = _placeholder_key(manifest[:index])
        if key is None or (expression := placeholders.pop(key, None)) is None:
            _LOGGER.warning(
                "No template expression for marker at offset %d (key %r)", index, key
            )
            manifest = manifest.replace(TEMPLATE_MARKER, FALLBACK_VALUE, 1)
            continue
        start = index
        # Removes at most N spaces and never any other character
        if indent := template_indent(expression):
            prefix = manifest[:index]
            start -= min(indent, len(prefix) - len(prefix.rstrip(" ")))
        end = index + len(TEMPLATE_MARKER)
        manifest = manifest[:start] + expression + manifest[end:]
    return manifest
