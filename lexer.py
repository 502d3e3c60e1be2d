from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple


class CalcError(Exception):
    """Base class for interpreter errors."""


@dataclass
class Token:
    type: str
    value: str
    start: int
    end: int


RESERVED_KEYWORDS = {"for"}

WHITESPACE = frozenset(
    " \n\t\r\f\v\u00a0\u1680\u2000\u200a\u2028\u2029\u202f\u205f\u3000\ufeff"
)

DIGITS = frozenset("0123456789")


def is_digit(ch: str) -> bool:
    return ch in DIGITS


def is_letter(ch: str) -> bool:
    return ch.upper() != ch.lower() or ord(ch) > 127 or ch == "_"


class Lexer:
    """Character-level cursor over program text.

    The parser drives the cursor directly: every scan method skips leading
    whitespace and ``//`` comments, returns a token (or ``True``) on success and
    leaves ``index`` past the match, or returns ``None`` (``False``) and leaves
    ``index`` where the caller can reset it.
    """

    def __init__(self, text: str) -> None:
        self.text = text
        self.index = 0

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self, offset: int = 0) -> str:
        pos = self.index + offset
        if pos >= len(self.text):
            return ""
        return self.text[pos]

    def skip_trivia(self) -> int:
        text = self.text
        n = len(text)
        pos = self.index
        while pos < n:
            ch = text[pos]
            if ch in WHITESPACE:
                pos += 1
                continue
            if ch == "/" and pos + 1 < n and text[pos + 1] == "/":
                # Line comment runs up to and including the newline.
                pos += 2
                while pos < n and text[pos] != "\n":
                    pos += 1
                pos += 1
                continue
            break
        self.index = min(pos, n)
        return self.index

    def skip_inline_space(self) -> int:
        text = self.text
        while self.index < len(text) and text[self.index] in " \t\r":
            self.index += 1
        return self.index

    def has_text(self, literal: str, pos: Optional[int] = None) -> bool:
        at = self.index if pos is None else pos
        return self.text.startswith(literal, at)

    def match(self, literal: str) -> bool:
        self.skip_trivia()
        if self.has_text(literal):
            self.index += len(literal)
            return True
        return False

    def match_one_of(self, token_type: str, options: Iterable[str]) -> Optional[Token]:
        # Options must be ordered longest first: "<=" before "<".
        start = self.skip_trivia()
        for option in options:
            if self.has_text(option, start):
                self.index = start + len(option)
                return Token(token_type, option, start, self.index)
        return None

    def scan_identifier(self) -> Optional[Token]:
        start = self.skip_trivia()
        text = self.text
        if self._eof or not is_letter(text[start]):
            return None
        pos = start + 1
        while pos < len(text) and (is_digit(text[pos]) or is_letter(text[pos])):
            pos += 1
        value = text[start:pos]
        if value in RESERVED_KEYWORDS:
            return None
        self.index = pos
        return Token("IDENT", value, start, pos)

    def scan_keyword(self, keyword: str) -> bool:
        start = self.skip_trivia()
        end = start + len(keyword)
        if not self.has_text(keyword, start):
            return False
        if end < len(self.text) and (is_letter(self.text[end]) or is_digit(self.text[end])):
            return False
        self.index = end
        return True

    def scan_number(self) -> Optional[Token]:
        start = self.skip_trivia()
        text = self.text
        if self._eof or not is_digit(text[start]):
            return None
        pos = start
        found_decimal = False
        while pos < len(text) and (is_digit(text[pos]) or (not found_decimal and text[pos] == ".")):
            if text[pos] == ".":
                found_decimal = True
            pos += 1
        self.index = pos
        return Token("NUMBER", text[start:pos], start, pos)

    def _scan_integer(self) -> int:
        start = self.index
        while not self._eof and is_digit(self.text[self.index]):
            self.index += 1
        return int(self.text[start : self.index])

    def scan_clock(self) -> Optional[Tuple[Token, float]]:
        """Scan ``H:MM[am|pm]`` and return it with its minutes since midnight."""
        start = self.skip_trivia()
        if self._eof or not is_digit(self.text[start]):
            return None
        hours = self._scan_integer()
        self.skip_trivia()
        if self._peek() != ":":
            return None
        self.index += 1
        if not is_digit(self._peek()):
            return None
        minutes_token = self.scan_number()
        if minutes_token is None:
            return None
        minutes = float(minutes_token.value)
        self.skip_trivia()
        if self.has_text("am") or self.has_text("AM"):
            self.index += 2
        elif self.has_text("pm") or self.has_text("PM"):
            if hours < 12:
                hours += 12
            self.index += 2
        return Token("CLOCK", self.text[start : self.index], start, self.index), hours * 60 + minutes

    def scan_string(self) -> Optional[Token]:
        start = self.skip_trivia()
        text = self.text
        if self._peek() != '"':
            return None
        pos = start + 1
        while pos < len(text) and not (text[pos] == '"' and text[pos - 1] != "\\"):
            pos += 1
        if pos >= len(text):
            return None
        pos += 1
        self.index = pos
        return Token("STRING", text[start + 1 : pos - 1].replace('\\"', '"'), start, pos)

    def line_col(self, pos: int) -> Tuple[int, int]:
        """1-based line and column of a byte offset."""
        before = self.text[:pos]
        line = before.count("\n") + 1
        column = pos - (before.rfind("\n") + 1) + 1
        return line, column
