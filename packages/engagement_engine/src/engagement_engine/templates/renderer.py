"""
Template Renderer

Single-pass interpreter over the parsed template AST.

- ``{{key}}`` is replaced by the resolved value (``None`` renders empty)
- ``{{#key}}...{{/key}}`` repeats over lists, renders once for other truthy
  values and is skipped for falsy or missing ones
- ``{{^key}}...{{/key}}`` renders only for falsy, missing or empty values
- a key that cannot be resolved is left in the output exactly as written

Rendering is pure and never raises on malformed templates.
"""

from collections.abc import Mapping, Sequence
from typing import Any

from engagement_engine.templates.aliases import MISSING, lookup
from engagement_engine.templates.parser import Node, SectionNode, TextNode, VariableNode, parse

CURRENT_ITEM = "."


def render(template: str | None, scope: Mapping[str, Any] | None = None) -> str:
    """Render a template string against a scope mapping."""
    if not template:
        return template or ""
    return render_nodes(parse(template), [scope or {}])


def render_nodes(nodes: list[Node], scopes: list[Mapping[str, Any]]) -> str:
    """Render AST nodes; ``scopes`` is ordered outermost to innermost."""
    parts: list[str] = []
    for node in nodes:
        if isinstance(node, TextNode):
            parts.append(node.text)
        elif isinstance(node, VariableNode):
            value = resolve(scopes, node.key)
            parts.append(node.raw if value is MISSING else _to_text(value))
        else:
            parts.append(_render_section(node, scopes))
    return "".join(parts)


def resolve(scopes: list[Mapping[str, Any]], key: str) -> Any:
    """Look a key up from the innermost scope outwards."""
    for scope in reversed(scopes):
        if key == CURRENT_ITEM and CURRENT_ITEM in scope:
            return scope[CURRENT_ITEM]
        value = lookup(scope, key)
        if value is not MISSING:
            return value
    return MISSING


def _render_section(node: SectionNode, scopes: list[Mapping[str, Any]]) -> str:
    value = resolve(scopes, node.key)

    if node.inverted:
        return render_nodes(node.children, scopes) if _is_empty(value) else ""

    if _is_empty(value):
        return ""

    if _is_list(value):
        return "".join(
            render_nodes(node.children, [*scopes, _item_scope(item)]) for item in value
        )

    if isinstance(value, Mapping):
        return render_nodes(node.children, [*scopes, value])

    return render_nodes(node.children, scopes)


def _item_scope(item: Any) -> Mapping[str, Any]:
    if isinstance(item, Mapping):
        return {CURRENT_ITEM: item, **item}
    return {CURRENT_ITEM: item}


def _is_list(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes))


def _is_empty(value: Any) -> bool:
    if value is MISSING or value is None or value is False:
        return True
    if _is_list(value):
        return len(value) == 0
    return not value


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)
