import enum
import io
import logging
import string
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import ClassVar, Dict, List, Optional, Type, Union

# Event-driven parsing of stylesheet fragments, as found in SVG <style>
# elements and style="" attributes. No syntax tree is built: selectors,
# rule boundaries, declarations and imports are reported to a sink in
# document order.


logger = logging.getLogger(__name__)

# Hex escapes are flushed after this many digits
ESCAPE_HEX_DIGITS = 4

# Whitespace that ends an identifier run
WHITESPACE_STOPS = " \n\t\r"

# Accepted by str.isspace() but not skipped as leading whitespace, these
# stay part of the identifier
NON_BREAKING_SPACES = "\x85\u00a0\u2007\u202f"

QUOTES = "'\""

HEX_DIGITS = string.hexdigits


class ParseError(Exception):
    """Raised for any malformed stylesheet fragment; parsing is not resumed."""

    def __init__(self, message: str, position: Optional[int] = None) -> None:
        if position is not None:
            super().__init__(f"{message} (at position {position})")
        else:
            super().__init__(message)
        self.message = message
        self.position = position


class NoDefault(enum.Enum):
    # Marks an empty pushback slot, None is a valid (end of input) value
    no_default = "NO_DEFAULT"


class PushbackReader:
    """Reads characters from a string, with a single character of pushback.

    Pushing back a second character before the first one was read again is
    an error in the caller, and raises ParseError.
    """

    def __init__(self, content: str) -> None:
        self.content = content
        self.index = 0
        self._pushed: Union[Optional[str], NoDefault] = NoDefault.no_default

    @property
    def position(self) -> int:
        # Index of the character the next read() returns
        if self._pushed is NoDefault.no_default:
            return self.index
        return self.index - 1

    def read(self) -> Optional[str]:
        if self._pushed is not NoDefault.no_default:
            c = self._pushed
            self._pushed = NoDefault.no_default
            return c

        if self.index >= len(self.content):
            return None

        c = self.content[self.index]
        self.index += 1
        return c

    def unread(self, c: str) -> None:
        if self._pushed is not NoDefault.no_default:
            raise ParseError(
                "Can not handle look ahead of more than one character",
                self.position,
            )
        self._pushed = c


# region tokens


@dataclass(frozen=True)
class Token:
    position: int


class End(Token):
    pass


class BlockToken(Token):
    char: ClassVar[str]


class OpenBlockToken(BlockToken):
    @property
    @abstractmethod
    def matching(self) -> Type["CloseBlockToken"]:
        ...


class CloseBlockToken(BlockToken):
    @property
    @abstractmethod
    def matching(self) -> Type["OpenBlockToken"]:
        ...


class OpenParenthesis(OpenBlockToken):
    char = "("

    @property
    def matching(self):
        return CloseParenthesis


class CloseParenthesis(CloseBlockToken):
    char = ")"

    @property
    def matching(self):
        return OpenParenthesis


class OpenCurlyBracket(OpenBlockToken):
    char = "{"

    @property
    def matching(self):
        return CloseCurlyBracket


class CloseCurlyBracket(CloseBlockToken):
    char = "}"

    @property
    def matching(self):
        return OpenCurlyBracket


class OpenBracket(OpenBlockToken):
    char = "["

    @property
    def matching(self):
        return CloseBracket


class CloseBracket(CloseBlockToken):
    char = "]"

    @property
    def matching(self):
        return OpenBracket


@dataclass(frozen=True)
class Identifier(Token):
    # Quoted strings are reported as identifiers too, without their quotes
    value: str


BLOCK_TOKENS: Dict[str, Type[BlockToken]] = {
    token.char: token
    for token in (
        OpenBracket,
        CloseBracket,
        OpenCurlyBracket,
        CloseCurlyBracket,
        OpenParenthesis,
        CloseParenthesis,
    )
}

# endregion


class Tokenizer:
    def __init__(self, content: str) -> None:
        self.reader = PushbackReader(content)
        self.whitespace_before = False
        self.exhausted = False
        self._buffer: List[str] = []

    @classmethod
    def from_reader(cls, reader: io.TextIOBase):
        return cls(reader.read())

    @classmethod
    def from_str(cls, content: str):
        return cls(content)

    @property
    def text(self) -> str:
        # Text of the last identifier or string read
        return "".join(self._buffer)

    def __iter__(self):
        return self

    def __next__(self) -> Token:
        if self.exhausted:
            raise StopIteration

        token = self.next_token()
        if isinstance(token, End):
            self.exhausted = True

        return token

    def next_token(self, stop: Optional[str] = None) -> Token:
        """Fetch the next token.

        ``stop`` is an extra character that ends an identifier run. Unlike
        whitespace and brackets it is consumed and kept as the last
        character of the identifier text.
        """
        self.whitespace_before = False
        c = self.consume_whitespace()
        pos = self.reader.position - 1

        if c is None:
            return End(self.reader.position)
        elif c in QUOTES:
            self.consume_string(c)
            return Identifier(pos, self.text)
        elif c in BLOCK_TOKENS:
            return BLOCK_TOKENS[c](pos)

        self.reader.unread(c)
        self.consume_identifier(stop)
        return Identifier(pos, self.text)

    def consume_whitespace(self) -> Optional[str]:
        # Returns the first character after the whitespace
        c = self.reader.read()
        while c is not None and c.isspace() and c not in NON_BREAKING_SPACES:
            self.whitespace_before = True
            c = self.reader.read()
        return c

    def consume_string(self, stop: str) -> None:
        """Read a string body up to the unescaped ``stop`` quote.

        The quote itself is consumed but not kept. Escapes are a backslash
        followed by up to ESCAPE_HEX_DIGITS hex digits, or by any other
        character which is then taken literally.
        """
        self._buffer.clear()
        # The opening quote is already consumed
        start = self.reader.position - 1
        escaping = False
        code = count = 0

        while True:
            c = self.reader.read()
            if c is None:
                raise ParseError(f"Unclosed {stop}", start)

            if escaping:
                if c in HEX_DIGITS:
                    code = code * 16 + int(c, 16)
                    count += 1
                    if count == ESCAPE_HEX_DIGITS:
                        escaping = False
                        self._buffer.append(chr(code))
                    continue

                if count == 0:
                    # \" and friends
                    self._buffer.append(c)
                    escaping = False
                    continue

                self._buffer.append(chr(code))
                if c == "\\":
                    code = count = 0
                    continue
                escaping = False
            elif c == "\\":
                escaping = True
                code = count = 0
                continue

            if c == stop:
                return
            self._buffer.append(c)

    def consume_identifier(self, stop: Optional[str] = None) -> bool:
        """Read an identifier-like run, returns whether any text was read.

        The run ends before whitespace, quotes and brackets, and after
        ``stop``. A comment ends the run as well, and counts as whitespace.
        """
        self._buffer.clear()
        escaping = False
        code = count = 0

        while True:
            c = self.reader.read()

            if escaping:
                if c is not None and c in HEX_DIGITS:
                    code = code * 16 + int(c, 16)
                    count += 1
                    if count == ESCAPE_HEX_DIGITS:
                        escaping = False
                        self._buffer.append(chr(code))
                    continue

                escaping = False
                if count > 0:
                    self._buffer.append(chr(code))
                    if c is None:
                        break
                    # Reprocess the character that ended the escape
                    self.reader.unread(c)
                elif c is None:
                    break
                else:
                    self._buffer.append(c)
                continue

            if c is None:
                break
            elif c == "\\":
                escaping = True
                code = count = 0
            elif c in QUOTES or c in BLOCK_TOKENS or c in WHITESPACE_STOPS:
                self.reader.unread(c)
                break
            elif c == "/":
                following = self.reader.read()
                if following == "*":
                    self.consume_comment()
                    self.whitespace_before = True
                    break
                self._buffer.append(c)
                if following is None:
                    break
                self.reader.unread(following)
            else:
                self._buffer.append(c)
                if c == stop:
                    break

        return len(self._buffer) > 0

    def consume_comment(self) -> None:
        # The opening /* is already consumed
        start = self.reader.position - 2
        while True:
            c = self.reader.read()
            if c is None:
                raise ParseError("Unclosed comment", start)
            if c == "*":
                c = self.reader.read()
                if c == "/":
                    return
                if c is None:
                    raise ParseError("Unclosed comment", start)
                self.reader.unread(c)

    def consume_optional(self, c: str) -> bool:
        # Skips whitespace, then consumes c if it is next
        found = self.consume_whitespace()
        if found == c:
            return True
        if found is not None:
            self.reader.unread(found)
        return False


class BlockStack:
    """Keeps track of the open brackets, braces and parentheses."""

    def __init__(self) -> None:
        self._blocks: List[Type[OpenBlockToken]] = []

    def __len__(self) -> int:
        return len(self._blocks)

    def __bool__(self) -> bool:
        return self.is_nonempty()

    def is_nonempty(self) -> bool:
        return len(self._blocks) > 0

    def open(self, token: OpenBlockToken) -> None:
        self._blocks.append(type(token))

    def close(self, token: CloseBlockToken) -> None:
        if self._blocks and self._blocks[-1] is token.matching:
            self._blocks.pop()
        else:
            raise ParseError("Unmatched block", token.position)


class UnitBuffer:
    """Assembles a selector, property name, value or at-rule prelude.

    Fragments separated by whitespace in the input are joined by a single
    space. An empty fragment (a stripped comment) adds no text, but its
    space still goes before the next non-empty fragment.
    """

    def __init__(self) -> None:
        self._parts: List[str] = []
        self._space_pending = False

    def __bool__(self) -> bool:
        return bool(self._parts)

    def __str__(self) -> str:
        return "".join(self._parts)

    def append(self, text: str, spaced: bool = False) -> None:
        spaced = spaced or self._space_pending
        if not text:
            self._space_pending = spaced
            return
        self._space_pending = False
        if spaced and self._parts:
            self._parts.append(" ")
        self._parts.append(text)

    def mark(self) -> int:
        return len(self._parts)

    def truncate(self, mark: int) -> None:
        del self._parts[mark:]
        self._space_pending = False

    def clear(self) -> None:
        self._parts.clear()
        self._space_pending = False


class StyleSink(ABC):
    """Receives the events of a parse, synchronously and in document order."""

    @abstractmethod
    def handle_import(self, text: str) -> None:
        ...

    @abstractmethod
    def start_rule(self) -> None:
        ...

    @abstractmethod
    def handle_selector(self, text: str) -> None:
        ...

    @abstractmethod
    def handle_property(self, name: str) -> None:
        ...

    @abstractmethod
    def handle_value(self, text: str) -> None:
        ...

    @abstractmethod
    def end_rule(self) -> None:
        ...


class Parser:
    def __init__(self, tokenizer: Tokenizer, sink: StyleSink) -> None:
        self.tokenizer = tokenizer
        self.sink = sink
        self.blocks = BlockStack()
        self.unit = UnitBuffer()
        self.ruleset_seen = False

    def parse(self, inline: bool = False) -> None:
        if isinstance(self.sink, StyleCollector):
            # Selectors of a rule an earlier parse never opened
            self.sink.reset_pending()

        if inline:
            self.parse_inline()
        else:
            self.parse_stylesheet()

    def parse_stylesheet(self) -> None:
        while self.consume_statement():
            pass

    def parse_inline(self) -> None:
        # A bare list of declarations, e.g. a style attribute
        self.consume_declaration_block(braced=False)

    def consume_statement(self) -> bool:
        # Returns False once the input is exhausted
        self.unit.clear()
        token = self.tokenizer.next_token()

        if isinstance(token, Identifier):
            if token.value.startswith("@"):
                logger.debug("At-rule %s at %d", token.value, token.position)
                self.consume_at_rule(token)
            elif token.value:
                logger.debug("Rule set at %d", token.position)
                self.ruleset_seen = True
                self.consume_rule_set(token)
            return True
        elif isinstance(token, OpenBlockToken):
            logger.debug("Skipped stray block at %d", token.position)
            self.consume_till_closed(token)
            return True
        elif isinstance(token, CloseBlockToken):
            raise ParseError("Unexpected top level block close", token.position)

        return False

    def consume_till_closed(self, block_open: OpenBlockToken) -> None:
        """Append everything up to the close of ``block_open`` to the unit.

        The opening character itself is left to the caller. Nesting is
        tracked on the block stack, so deep nesting does not recurse.
        """
        self.blocks.open(block_open)
        while True:
            token = self.tokenizer.next_token()
            spaced = self.tokenizer.whitespace_before

            if isinstance(token, Identifier):
                self.unit.append(token.value, spaced)
            elif isinstance(token, OpenBlockToken):
                self.unit.append(token.char, spaced)
                self.blocks.open(token)
            elif isinstance(token, CloseBlockToken):
                self.unit.append(token.char, spaced)
                self.blocks.close(token)
                if not self.blocks:
                    return
            else:
                raise ParseError("Unclosed block", token.position)

    def consume_identifiers(self, stop: str, keep_blocks: bool) -> Token:
        """Collect identifiers into the unit until one ends with ``stop``.

        Returns that identifier, or the close token or End that was hit
        first.
        """
        self.unit.clear()
        while True:
            token = self.tokenizer.next_token(stop)

            if isinstance(token, Identifier):
                text = token.value
                ends = text.endswith(stop)
                if ends:
                    text = text[:-1]
                self.unit.append(text, self.tokenizer.whitespace_before)
                if ends:
                    return token
            elif isinstance(token, OpenBlockToken):
                mark = self.unit.mark()
                if keep_blocks:
                    self.unit.append(token.char)
                self.consume_till_closed(token)
                if not keep_blocks:
                    self.unit.truncate(mark)
            else:
                return token

    def consume_declaration(self) -> Token:
        token = self.consume_identifiers(":", keep_blocks=False)
        if not isinstance(token, Identifier):
            return token

        self.sink.handle_property(str(self.unit).lower())

        token = self.consume_identifiers(";", keep_blocks=True)
        self.sink.handle_value(str(self.unit))
        return token

    def consume_declaration_block(self, braced: bool = True) -> None:
        while True:
            token = self.consume_declaration()
            if isinstance(token, CloseCurlyBracket):
                return
            elif isinstance(token, End):
                if braced:
                    raise ParseError("Unclosed block", token.position)
                return
            elif isinstance(token, CloseBlockToken):
                raise ParseError(
                    "Unexpected close in declaration block", token.position
                )

    def consume_rule_set(self, first: Identifier) -> None:
        if self.consume_selectors(first):
            self.sink.start_rule()
            self.consume_declaration_block()
            self.sink.end_rule()

    def consume_selectors(self, first: Identifier) -> bool:
        # Returns False if the input ended before the declaration block
        self.sink.handle_selector(first.value)
        self.unit.clear()

        while True:
            token = self.tokenizer.next_token()

            if isinstance(token, Identifier):
                if token.value:
                    self.sink.handle_selector(token.value)
            elif isinstance(token, OpenCurlyBracket):
                return True
            elif isinstance(token, OpenBlockToken):
                # Attribute selectors and pseudo-class arguments are skipped
                self.consume_till_closed(token)
                self.unit.clear()
            elif isinstance(token, CloseBlockToken):
                raise ParseError("Unexpected block close in selector", token.position)
            else:
                return False

    def consume_at_rule(self, keyword: Identifier) -> None:
        is_import = keyword.value == "@import"

        self.unit.clear()
        while True:
            token = self.tokenizer.next_token(";")
            spaced = self.tokenizer.whitespace_before

            if isinstance(token, Identifier):
                text = token.value
                if text.endswith(";"):
                    self.unit.append(text[:-1], spaced)
                    break
                self.unit.append(text, spaced)
            elif isinstance(token, OpenCurlyBracket):
                self.unit.append(token.char, spaced)
                self.consume_till_closed(token)
                self.tokenizer.consume_optional(";")
                break
            elif isinstance(token, OpenBlockToken):
                self.unit.append(token.char)
                self.consume_till_closed(token)
            elif isinstance(token, CloseBlockToken):
                raise ParseError("Unexpected close in at-rule", token.position)
            else:
                break

        if not is_import:
            logger.debug("Skipped at-rule %s", keyword.value)
        elif self.ruleset_seen:
            logger.debug("Ignored @import %r after a rule set", str(self.unit))
        else:
            self.sink.handle_import(str(self.unit))


# region collecting


@dataclass(frozen=True)
class Declaration:
    name: str
    value: str


@dataclass(frozen=True)
class Rule:
    selectors: List[str] = field(default_factory=list)
    declarations: List[Declaration] = field(default_factory=list)


class StyleCollector(StyleSink):
    """A sink keeping every import, rule and declaration it is handed.

    Declarations outside of any rule (parsing a style attribute) end up in
    ``declarations``. One collector can be handed several parses, e.g. one
    per <style> element of a document.
    """

    def __init__(self) -> None:
        self.imports: List[str] = []
        self.rules: List[Rule] = []
        self.declarations: List[Declaration] = []
        self._selectors: List[str] = []
        self._rule: Optional[Rule] = None
        self._property: Optional[str] = None

    def reset_pending(self) -> None:
        # Forget a rule still being assembled, keeps what was collected
        self._selectors = []
        self._rule = None
        self._property = None

    def handle_import(self, text: str) -> None:
        self.imports.append(text)

    def start_rule(self) -> None:
        self._rule = Rule(self._selectors)
        self._selectors = []

    def handle_selector(self, text: str) -> None:
        self._selectors.append(text)

    def handle_property(self, name: str) -> None:
        self._property = name

    def handle_value(self, text: str) -> None:
        assert self._property is not None, "Value reported before its property."
        declaration = Declaration(self._property, text)
        self._property = None

        if self._rule is not None:
            self._rule.declarations.append(declaration)
        else:
            self.declarations.append(declaration)

    def end_rule(self) -> None:
        assert self._rule is not None, "Rule ended before it started."
        self.rules.append(self._rule)
        self._rule = None


# endregion


def parse(text: str, sink: StyleSink, inline: bool = False) -> None:
    """Parse ``text`` and report its contents to ``sink``.

    With ``inline`` the text is taken as the inside of a declaration block,
    like the value of a style attribute, and only properties and values are
    reported.

    Raises ParseError on malformed input. Events reported before the error
    are not taken back.
    """
    Parser(Tokenizer.from_str(text), sink).parse(inline)


def parse_inline_style(text: str) -> Dict[str, str]:
    """Parse a style attribute into a property to value mapping.

    >>> parse_inline_style("fill: Red; STROKE:none")
    {'fill': 'Red', 'stroke': 'none'}
    """
    collector = StyleCollector()
    parse(text, collector, inline=True)
    return {
        declaration.name: declaration.value
        for declaration in collector.declarations
    }

