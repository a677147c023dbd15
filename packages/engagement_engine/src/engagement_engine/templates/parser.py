"""
Template Tokenizer and Parser

Turns template text into a small typed AST:

- TextNode: literal text
- VariableNode: ``{{key}}``
- SectionNode: ``{{#key}}...{{/key}}`` or inverted ``{{^key}}...{{/key}}``

Malformed input never raises. An unterminated ``{{``, a closing tag with no
matching opener, and an opener that is never closed all come back as literal
text so the renderer can emit them verbatim.
"""

import re
from dataclasses import dataclass, field
from enum import Enum

OPEN_DELIM = "{{"
CLOSE_DELIM = "}}"

# Body of a tag between the delimiters: optional sigil, then the key.
_TAG_BODY = re.compile(r"^\s*([#^/]?)\s*([A-Za-z0-9_.\-]+)\s*$")


class TokenKind(str, Enum):
    TEXT = "text"
    VARIABLE = "variable"
    SECTION_OPEN = "section_open"
    INVERTED_OPEN = "inverted_open"
    SECTION_CLOSE = "section_close"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    raw: str
    key: str = ""


@dataclass
class TextNode:
    text: str


@dataclass
class VariableNode:
    key: str
    raw: str


@dataclass
class SectionNode:
    key: str
    inverted: bool
    raw_open: str
    raw_close: str = ""
    children: list["Node"] = field(default_factory=list)


Node = TextNode | VariableNode | SectionNode

_SIGILS = {
    "": TokenKind.VARIABLE,
    "#": TokenKind.SECTION_OPEN,
    "^": TokenKind.INVERTED_OPEN,
    "/": TokenKind.SECTION_CLOSE,
}


def tokenize(template: str) -> list[Token]:
    """Split template text into text and tag tokens."""
    tokens: list[Token] = []
    pos = 0
    length = len(template)

    while pos < length:
        start = template.find(OPEN_DELIM, pos)
        if start == -1:
            tokens.append(Token(TokenKind.TEXT, template[pos:]))
            break

        end = template.find(CLOSE_DELIM, start + len(OPEN_DELIM))
        if end == -1:
            # Unterminated tag: the rest is literal
            tokens.append(Token(TokenKind.TEXT, template[pos:]))
            break

        # A second "{{" before the closer means the first one is literal text
        nested = template.find(OPEN_DELIM, start + len(OPEN_DELIM), end)
        if nested != -1:
            tokens.append(Token(TokenKind.TEXT, template[pos:nested]))
            pos = nested
            continue

        if start > pos:
            tokens.append(Token(TokenKind.TEXT, template[pos:start]))

        raw = template[start : end + len(CLOSE_DELIM)]
        body = template[start + len(OPEN_DELIM) : end]
        match = _TAG_BODY.match(body)
        if match:
            sigil, key = match.groups()
            tokens.append(Token(_SIGILS[sigil], raw, key))
        else:
            tokens.append(Token(TokenKind.TEXT, raw))

        pos = end + len(CLOSE_DELIM)

    return _merge_text(tokens)


def _merge_text(tokens: list[Token]) -> list[Token]:
    merged: list[Token] = []
    for token in tokens:
        if merged and token.kind == TokenKind.TEXT and merged[-1].kind == TokenKind.TEXT:
            merged[-1] = Token(TokenKind.TEXT, merged[-1].raw + token.raw)
        else:
            merged.append(token)
    return merged


def parse(template: str) -> list[Node]:
    """Parse template text into a list of AST nodes."""
    root: list[Node] = []
    stack: list[SectionNode] = []

    def current() -> list[Node]:
        return stack[-1].children if stack else root

    for token in tokenize(template):
        if token.kind == TokenKind.TEXT:
            current().append(TextNode(token.raw))

        elif token.kind == TokenKind.VARIABLE:
            current().append(VariableNode(token.key, token.raw))

        elif token.kind in (TokenKind.SECTION_OPEN, TokenKind.INVERTED_OPEN):
            section = SectionNode(
                key=token.key,
                inverted=token.kind == TokenKind.INVERTED_OPEN,
                raw_open=token.raw,
            )
            current().append(section)
            stack.append(section)

        else:  # SECTION_CLOSE
            if not any(s.key == token.key for s in stack):
                current().append(TextNode(token.raw))
                continue
            # Sections opened inside the one being closed were never closed
            while stack[-1].key != token.key:
                _unwrap(stack.pop(), stack[-1].children)
            stack.pop().raw_close = token.raw

    while stack:
        section = stack.pop()
        _unwrap(section, stack[-1].children if stack else root)

    return root


def _unwrap(section: SectionNode, siblings: list[Node]) -> None:
    """Replace an unclosed section with its opener as text followed by its children."""
    index = next(i for i, node in enumerate(siblings) if node is section)
    siblings[index : index + 1] = [TextNode(section.raw_open), *section.children]
