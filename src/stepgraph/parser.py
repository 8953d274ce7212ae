"""ISO 10303-21 (STEP physical file) parser.

Parsing happens in two passes. The first pass tokenizes the file and
collects every ``#id = ...;`` instance into the arena with its references
left as ``Ref`` values. The second pass checks that every reference names an
instance that exists, so entities may be referenced before they are defined.

The text is decoded as Latin-1, which maps each byte to one character, so
offsets reported in ``ParseError`` are byte offsets into the input.
"""

from __future__ import annotations

import re
from typing import Any, List, Optional, Tuple, Union

import structlog

from .entities import DERIVED, EntityGraph, EntityRecord, HeaderRecord, Ref, StepEnum, TypedParam
from .errors import ParseError

logger = structlog.get_logger(__name__)

MAGIC = "ISO-10303-21"
TRAILER = "END-ISO-10303-21"

_TOKEN_RE = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<comment>/\*.*?\*/)
    | (?P<open_comment>/\*)
    | (?P<string>'(?:[^']|'')*')
    | (?P<open_string>')
    | (?P<ref>\#\d+)
    | (?P<enum>\.[A-Za-z_][A-Za-z0-9_]*\.)
    | (?P<real>[+-]?(?:\d+\.\d*(?:[eE][+-]?\d+)?|\d+[eE][+-]?\d+|\.\d+(?:[eE][+-]?\d+)?))
    | (?P<int>[+-]?\d+)
    | (?P<keyword>!?[A-Za-z_][A-Za-z0-9_\-]*)
    | (?P<binary>"[0-9A-Fa-f]*")
    | (?P<punct>[()=;,$*])
    """,
    re.VERBOSE | re.DOTALL,
)

_X2_RE = re.compile(r"\\X2\\([0-9A-Fa-f]*)\\X0\\")
_X4_RE = re.compile(r"\\X4\\([0-9A-Fa-f]*)\\X0\\")
_X_RE = re.compile(r"\\X\\([0-9A-Fa-f]{2})")

Token = Tuple[str, str, int]


def decode_step_string(raw: str) -> str:
    """Decode the body of a STEP string literal.

    Line breaks inside the literal are continuation artefacts and are
    dropped; ``''`` is an escaped quote; ``\\X\\``, ``\\X2\\`` and ``\\X4\\``
    carry hex-encoded characters.
    """
    s = raw.replace("\r", "").replace("\n", "").replace("''", "'")

    def _hex_chars(width: int):
        def _decode(match: re.Match[str]) -> str:
            data = match.group(1)
            if len(data) % width:
                return match.group(0)
            return "".join(chr(int(data[i:i + width], 16)) for i in range(0, len(data), width))
        return _decode

    s = _X2_RE.sub(_hex_chars(4), s)
    s = _X4_RE.sub(_hex_chars(8), s)
    s = _X_RE.sub(lambda m: chr(int(m.group(1), 16)), s)
    return s


def tokenize(text: str) -> List[Token]:
    """Split STEP text into ``(kind, value, offset)`` tokens, dropping whitespace and comments."""
    tokens: List[Token] = []
    pos = 0
    end = len(text)
    match = _TOKEN_RE.match
    while pos < end:
        m = match(text, pos)
        if m is None:
            raise ParseError(f"unexpected character {text[pos]!r}", offset=pos)
        kind = m.lastgroup
        if kind == "open_comment":
            raise ParseError("unterminated comment", offset=pos)
        if kind == "open_string":
            raise ParseError("unterminated string literal", offset=pos)
        if kind not in ("ws", "comment"):
            tokens.append((kind, m.group(), pos))
        pos = m.end()
    return tokens


class _Parser:
    """Recursive-descent parser over the token list."""

    def __init__(self, tokens: List[Token], length: int) -> None:
        self.tokens = tokens
        self.pos = 0
        self.length = length
        self.current_entity: Optional[int] = None

    # -- token helpers -------------------------------------------------

    def peek(self, ahead: int = 0) -> Optional[Token]:
        index = self.pos + ahead
        if index < len(self.tokens):
            return self.tokens[index]
        return None

    def _offset(self) -> int:
        token = self.peek()
        return token[2] if token else self.length

    def _fail(self, message: str) -> ParseError:
        token = self.peek()
        if token is None:
            if self.current_entity is not None:
                return ParseError(
                    f"unterminated entity #{self.current_entity}",
                    entity_id=self.current_entity,
                    offset=self.length,
                )
            return ParseError(f"unexpected end of file: {message}", offset=self.length)
        return ParseError(
            f"{message}, found {token[1]!r}",
            entity_id=self.current_entity,
            offset=token[2],
        )

    def next(self) -> Token:
        token = self.peek()
        if token is None:
            raise self._fail("unexpected end of file")
        self.pos += 1
        return token

    def expect_punct(self, char: str) -> Token:
        token = self.peek()
        if token is None or token[0] != "punct" or token[1] != char:
            raise self._fail(f"expected {char!r}")
        self.pos += 1
        return token

    def at_punct(self, char: str) -> bool:
        token = self.peek()
        return token is not None and token[0] == "punct" and token[1] == char

    def at_keyword(self, word: str) -> bool:
        token = self.peek()
        return token is not None and token[0] == "keyword" and token[1].upper() == word

    def expect_keyword(self, word: str) -> Token:
        if not self.at_keyword(word):
            raise self._fail(f"expected {word}")
        return self.next()

    # -- grammar -------------------------------------------------------

    def parse_file(self) -> EntityGraph:
        graph = EntityGraph()
        if not self.at_keyword(MAGIC):
            raise ParseError(f"malformed header: missing {MAGIC} magic", offset=self._offset())
        self.next()
        self.expect_punct(";")
        self.expect_keyword("HEADER")
        self.expect_punct(";")
        while not self.at_keyword("ENDSEC"):
            if self.peek() is None:
                raise ParseError("malformed header: missing ENDSEC", offset=self.length)
            name, params = self.parse_simple_record()
            self.expect_punct(";")
            graph.header.append(HeaderRecord(type=name, params=params))
        self.next()
        self.expect_punct(";")

        sections = 0
        while self.at_keyword("DATA"):
            sections += 1
            self.next()
            if self.at_punct("("):
                self.parse_list()
            self.expect_punct(";")
            while not self.at_keyword("ENDSEC"):
                if self.peek() is None:
                    raise ParseError("unterminated DATA section", offset=self.length)
                record = self.parse_instance()
                if record.id in graph.records:
                    raise ParseError(
                        f"duplicate entity id #{record.id}",
                        entity_id=record.id,
                        offset=record.offset,
                    )
                graph.records[record.id] = record
            self.next()
            self.expect_punct(";")

        if sections == 0:
            raise ParseError("missing DATA section", offset=self._offset())
        if not self.at_keyword(TRAILER):
            raise self._fail(f"expected {TRAILER}")
        self.next()
        self.expect_punct(";")
        return graph

    def parse_instance(self) -> EntityRecord:
        token = self.next()
        if token[0] != "ref":
            self.pos -= 1
            raise self._fail("expected entity id")
        entity_id = int(token[1][1:])
        self.current_entity = entity_id
        self.expect_punct("=")
        if self.at_punct("("):
            self.next()
            parts = {}
            while not self.at_punct(")"):
                name, params = self.parse_simple_record()
                parts[name] = params
            self.next()
            if not parts:
                raise ParseError(
                    "empty complex entity", entity_id=entity_id, offset=token[2]
                )
            record = EntityRecord(entity_id, "COMPLEX", (), offset=token[2], parts=parts)
        else:
            name, params = self.parse_simple_record()
            record = EntityRecord(entity_id, name, params, offset=token[2])
        if not self.at_punct(";"):
            raise ParseError(
                f"unterminated entity #{entity_id}",
                entity_id=entity_id,
                offset=self._offset(),
            )
        self.next()
        self.current_entity = None
        return record

    def parse_simple_record(self) -> Tuple[str, Tuple[Any, ...]]:
        token = self.next()
        if token[0] != "keyword":
            self.pos -= 1
            raise self._fail("expected entity type name")
        return token[1].upper(), self.parse_list()

    def parse_list(self) -> Tuple[Any, ...]:
        self.expect_punct("(")
        values: List[Any] = []
        if self.at_punct(")"):
            self.next()
            return ()
        while True:
            values.append(self.parse_value())
            if self.at_punct(","):
                self.next()
                continue
            self.expect_punct(")")
            return tuple(values)

    def parse_value(self) -> Any:
        token = self.peek()
        if token is None:
            raise self._fail("expected parameter")
        kind, text, _ = token
        if kind == "punct":
            if text == "(":
                return self.parse_list()
            self.next()
            if text == "$":
                return None
            if text == "*":
                return DERIVED
            self.pos -= 1
            raise self._fail("expected parameter")
        self.next()
        if kind == "ref":
            return Ref(int(text[1:]))
        if kind == "real":
            return float(text)
        if kind == "int":
            return int(text)
        if kind == "string":
            return decode_step_string(text[1:-1])
        if kind == "enum":
            name = text[1:-1].upper()
            if name == "T":
                return True
            if name == "F":
                return False
            return StepEnum(name)
        if kind == "binary":
            return text[1:-1]
        if kind == "keyword":
            inner = self.parse_list()
            return TypedParam(text.upper(), inner[0] if len(inner) == 1 else inner)
        self.pos -= 1
        raise self._fail("expected parameter")


def _check_references(graph: EntityGraph) -> None:
    for entity_id, record in graph.records.items():
        for ref in record.references():
            if ref.id not in graph.records:
                raise ParseError(
                    f"unresolved reference #{ref.id}",
                    entity_id=entity_id,
                    offset=record.offset,
                )


def parse_step(data: Union[bytes, bytearray, str]) -> EntityGraph:
    """Parse STEP file content into an entity graph.

    Args:
        data: Raw file bytes (or already-decoded text)

    Returns:
        EntityGraph with all references checked

    Raises:
        ParseError: On malformed syntax, duplicate ids or unresolved references
    """
    if isinstance(data, (bytes, bytearray)):
        text = bytes(data).decode("latin-1")
    else:
        text = data

    tokens = tokenize(text)
    graph = _Parser(tokens, len(text)).parse_file()
    _check_references(graph)

    logger.debug(
        "Parsed STEP entity graph",
        entities=len(graph),
        schema=graph.schema,
        size_bytes=len(text),
    )
    return graph
