from __future__ import annotations
import io
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Iterator, List, Optional, TextIO


@dataclass(frozen=True)
class Location:
    file: str
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


class MiniError(Exception):
    """Base class for interpreter errors."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[Location] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None

    def __str__(self) -> str:
        if self.location is None:
            return self.message
        return f"{self.location}: {self.message}"


class MiniSyntaxError(MiniError):
    """Raised when lexing or parsing fails."""


@dataclass(frozen=True)
class Token:
    kind: str
    lexeme: str
    location: Location


KEYWORDS = {
    "var": "VAR",
    "function": "FUNCTION",
    "if": "IF",
    "else": "ELSE",
    "while": "WHILE",
}

SYMBOLS = {
    "+": "PLUS",
    "-": "MINUS",
    "*": "TIMES",
    "/": "DIVIDE",
    "(": "LPAREN",
    ")": "RPAREN",
    ";": "SEMICOLON",
    "{": "LBRACE",
    "}": "RBRACE",
    ",": "COMMA",
}

# first char -> (kind alone, kind when followed by '=')
RELATIONAL = {
    "=": ("EQUAL", "DOUBLE_EQUAL"),
    "<": ("LESS", "LESS_EQUAL"),
    ">": ("GREATER", "GREATER_EQUAL"),
}

# chars that are only legal when doubled (or, for '!', followed by '=')
PAIRED = {
    "!": ("=", "NOT_EQUAL"),
    "&": ("&", "DOUBLE_AMPERSAND"),
    "|": ("|", "DOUBLE_PIPE"),
}


def _is_alpha(ch: str) -> bool:
    return ch.isascii() and ch.isalpha()


def _is_alnum(ch: str) -> bool:
    return ch.isascii() and ch.isalnum()


def _is_digit(ch: str) -> bool:
    return ch in "0123456789"


class SourceReader:
    """Character source with one character of pushback and line/column tracking."""

    def __init__(self, stream: TextIO, filename: str) -> None:
        self.stream = stream
        self.filename = filename
        self.line = 1
        self.column = 1
        self._pushback: Optional[str] = None
        self._prev_column = 1
        self.eof = False

    @classmethod
    def from_text(cls, text: str, filename: str) -> "SourceReader":
        return cls(io.StringIO(text), filename)

    def read(self) -> str:
        """Consume one character, returning '' at end of input."""
        if self._pushback is not None:
            ch = self._pushback
            self._pushback = None
        else:
            if self.eof:
                return ""
            ch = self.stream.read(1)
            if ch == "":
                self.eof = True
                return ""
        self._prev_column = self.column
        if ch == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        return ch

    def unread(self, ch: str) -> None:
        if ch == "":
            return
        if self._pushback is not None:
            raise MiniError("Only one character of pushback is supported")
        self._pushback = ch
        if ch == "\n":
            self.line -= 1
        self.column = self._prev_column

    def location(self) -> Location:
        return Location(self.filename, self.line, self.column)


class Lexer:
    """Lazy token stream over a SourceReader with arbitrary lookahead."""

    def __init__(self, reader: SourceReader) -> None:
        self.reader = reader
        self.filename = reader.filename
        self._lookahead: Deque[Token] = deque()
        self._done = False

    @classmethod
    def from_text(cls, text: str, filename: str = "<string>") -> "Lexer":
        return cls(SourceReader.from_text(text, filename))

    def next(self) -> Token:
        self._fill(1)
        if not self._lookahead:
            raise MiniSyntaxError("Unexpected end of input", location=self.current_location())
        return self._lookahead.popleft()

    def peek(self, how_many: int = 1) -> Optional[Token]:
        """Return the how_many-th upcoming token, or None if input ends first."""
        if how_many < 1:
            raise ValueError("lookahead distance must be >= 1")
        self._fill(how_many)
        if len(self._lookahead) < how_many:
            return None
        return self._lookahead[how_many - 1]

    def current_location(self) -> Location:
        return self.reader.location()

    def tokenize(self) -> List[Token]:
        """Drain the remaining stream into a list."""
        tokens: List[Token] = []
        while self.peek() is not None:
            tokens.append(self.next())
        return tokens

    def __iter__(self) -> Iterator[Token]:
        while self.peek() is not None:
            yield self.next()

    def _fill(self, how_many: int) -> None:
        while not self._done and len(self._lookahead) < how_many:
            token = self._read_token()
            if token is None:
                self._done = True
            else:
                self._lookahead.append(token)

    def _read_token(self) -> Optional[Token]:
        reader = self.reader
        while True:
            start = reader.location()
            ch = reader.read()
            if ch == "" or not ch.isspace():
                break
        if ch == "":
            return None

        if _is_alpha(ch):
            lexeme = self._read_while(ch, _is_alnum)
            return Token(KEYWORDS.get(lexeme, "IDENTIFIER"), lexeme, start)
        if _is_digit(ch):
            return Token("INTEGER_LITERAL", self._read_while(ch, _is_digit), start)
        if ch in SYMBOLS:
            return Token(SYMBOLS[ch], ch, start)
        if ch in RELATIONAL:
            single, double = RELATIONAL[ch]
            following = reader.read()
            if following == "=":
                return Token(double, ch + following, start)
            reader.unread(following)
            return Token(single, ch, start)
        if ch in PAIRED:
            expected, kind = PAIRED[ch]
            following = reader.read()
            if following == expected:
                return Token(kind, ch + following, start)
            reader.unread(following)
            raise MiniSyntaxError(
                f"Unexpected character '{ch}' (expected '{ch}{expected}')",
                location=reader.location(),
            )
        raise MiniSyntaxError(f"Unrecognized character '{ch}'", location=reader.location())

    def _read_while(self, first: str, pred: Callable[[str], bool]) -> str:
        chars = [first]
        reader = self.reader
        while True:
            ch = reader.read()
            if ch != "" and pred(ch):
                chars.append(ch)
                continue
            reader.unread(ch)
            return "".join(chars)
