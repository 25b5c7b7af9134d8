"""
Minimal JSON token scanner and accessors for RPC request bodies

The scanner does not build a document tree. It produces a flat list of
tokens in document order, each object or array token directly followed
by its children. Accessors find keys and read typed values straight
out of the request bytes using (start, end) offsets.
"""

import json
import re
from enum import IntEnum
from typing import Iterator, List, Optional, Tuple

# Requests carrying more tokens than this are rejected as too big
MAX_TOKENS = 256


class TokenType(IntEnum):
    PRIMITIVE = 0
    OBJECT = 1
    ARRAY = 2
    STRING = 3


class Token:
    """One JSON value in the request body

    For strings, start/end delimit the content between the quotes.
    size is the number of direct children; for objects keys and values
    are both counted.
    """

    __slots__ = ('type', 'start', 'end', 'size', 'parent')

    def __init__(self, type: TokenType, start: int, end: int = -1, parent: int = -1):
        self.type = type
        self.start = start
        self.end = end
        self.size = 0
        self.parent = parent

    def __repr__(self):
        return f"Token({self.type.name}, {self.start}, {self.end}, size={self.size})"


class JsonTokenError(ValueError):
    pass


class InvalidJson(JsonTokenError):
    """The input is not valid JSON"""


class TooManyTokens(JsonTokenError):
    """The token array is too small for the input"""


class TruncatedJson(JsonTokenError):
    """The input ended before the document was complete"""


_WHITESPACE = frozenset(b' \t\r\n')
_DELIMITERS = frozenset(b' \t\r\n,:]}')
_ESCAPES = frozenset(b'"\\/bfnrt')
_HEX_DIGITS = frozenset(b'0123456789abcdefABCDEF')
_PRIMITIVE_RE = re.compile(rb'-?(0|[1-9][0-9]*)(\.[0-9]+)?([eE][+-]?[0-9]+)?|true|false|null')
_INT_PREFIX_RE = re.compile(rb'\s*([-+]?[0-9]+)')

# What the scanner accepts next
_EXPECT_VALUE = 0
_EXPECT_KEY = 1
_EXPECT_KEY_OR_END = 2
_EXPECT_VALUE_OR_END = 3
_EXPECT_COLON = 4
_EXPECT_COMMA_OR_END = 5
_EXPECT_NOTHING = 6

_VALUE_STATES = (_EXPECT_VALUE, _EXPECT_VALUE_OR_END)
_KEY_STATES = (_EXPECT_KEY, _EXPECT_KEY_OR_END)


def _scan_string(data: bytes, pos: int) -> int:
    """Return the index of the quote closing the string opened at pos"""
    length = len(data)
    index = pos + 1
    while index < length:
        char = data[index]
        if char == 0x22:  # "
            return index
        if char == 0x5c:  # backslash
            index += 1
            if index >= length:
                break
            escaped = data[index]
            if escaped == 0x75:  # u
                digits = data[index + 1:index + 5]
                if len(digits) < 4:
                    break
                if not all(d in _HEX_DIGITS for d in digits):
                    raise InvalidJson(f"bad unicode escape at offset {index}")
                index += 4
            elif escaped not in _ESCAPES:
                raise InvalidJson(f"bad escape at offset {index}")
        elif char < 0x20:
            raise InvalidJson(f"control character in string at offset {index}")
        index += 1
    raise TruncatedJson("unterminated string")


def tokenize(data: bytes, max_tokens: int = MAX_TOKENS) -> List[Token]:
    """Scan a JSON document into a flat token list

    Raises InvalidJson, TooManyTokens or TruncatedJson.
    """
    tokens: List[Token] = []
    stack: List[int] = []
    expect = _EXPECT_VALUE
    pos = 0
    length = len(data)

    def add_token(token_type, start, end=-1):
        if len(tokens) >= max_tokens:
            raise TooManyTokens(f"more than {max_tokens} tokens")
        parent = stack[-1] if stack else -1
        if parent != -1:
            tokens[parent].size += 1
        tokens.append(Token(token_type, start, end, parent))
        return len(tokens) - 1

    def after_value():
        return _EXPECT_COMMA_OR_END if stack else _EXPECT_NOTHING

    while pos < length:
        char = data[pos]

        if char in _WHITESPACE:
            pos += 1

        elif char in (0x7b, 0x5b):  # { [
            if expect not in _VALUE_STATES:
                raise InvalidJson(f"unexpected '{chr(char)}' at offset {pos}")
            is_object = char == 0x7b
            index = add_token(TokenType.OBJECT if is_object else TokenType.ARRAY, pos)
            stack.append(index)
            expect = _EXPECT_KEY_OR_END if is_object else _EXPECT_VALUE_OR_END
            pos += 1

        elif char in (0x7d, 0x5d):  # } ]
            token_type = TokenType.OBJECT if char == 0x7d else TokenType.ARRAY
            if not stack or tokens[stack[-1]].type != token_type:
                raise InvalidJson(f"unmatched '{chr(char)}' at offset {pos}")
            empty_state = _EXPECT_KEY_OR_END if token_type == TokenType.OBJECT else _EXPECT_VALUE_OR_END
            if expect not in (_EXPECT_COMMA_OR_END, empty_state):
                raise InvalidJson(f"unexpected '{chr(char)}' at offset {pos}")
            tokens[stack.pop()].end = pos + 1
            expect = after_value()
            pos += 1

        elif char == 0x22:  # "
            is_key = expect in _KEY_STATES
            if not is_key and expect not in _VALUE_STATES:
                raise InvalidJson(f"unexpected string at offset {pos}")
            end = _scan_string(data, pos)
            add_token(TokenType.STRING, pos + 1, end)
            expect = _EXPECT_COLON if is_key else after_value()
            pos = end + 1

        elif char == 0x3a:  # :
            if expect != _EXPECT_COLON:
                raise InvalidJson(f"unexpected ':' at offset {pos}")
            expect = _EXPECT_VALUE
            pos += 1

        elif char == 0x2c:  # ,
            if expect != _EXPECT_COMMA_OR_END:
                raise InvalidJson(f"unexpected ',' at offset {pos}")
            expect = _EXPECT_KEY if tokens[stack[-1]].type == TokenType.OBJECT else _EXPECT_VALUE
            pos += 1

        else:
            if expect not in _VALUE_STATES:
                raise InvalidJson(f"unexpected character at offset {pos}")
            end = pos
            while end < length and data[end] not in _DELIMITERS:
                end += 1
            if end == length and stack:
                raise TruncatedJson("document ends inside a value")
            if not _PRIMITIVE_RE.fullmatch(data[pos:end]):
                raise InvalidJson(f"bad literal at offset {pos}")
            add_token(TokenType.PRIMITIVE, pos, end)
            expect = after_value()
            pos = end

    if stack or expect != _EXPECT_NOTHING:
        raise TruncatedJson("document is incomplete")
    return tokens


class JsonDocument:
    """A request body together with its tokens

    Token indices are used as handles throughout; None stands for a
    missing value.
    """

    def __init__(self, data: bytes, tokens: Optional[List[Token]] = None, max_tokens: int = MAX_TOKENS):
        self.data = data
        self.tokens = tokenize(data, max_tokens) if tokens is None else tokens

    @property
    def root(self) -> Optional[int]:
        return 0 if self.tokens else None

    def type_of(self, index: int) -> TokenType:
        return self.tokens[index].type

    def raw(self, index: int) -> bytes:
        token = self.tokens[index]
        return self.data[token.start:token.end]

    def text(self, index: Optional[int]) -> str:
        """Raw source text of a value, for logging"""
        if index is None:
            return '{}'
        token = self.tokens[index]
        if token.type == TokenType.STRING:
            return self.data[token.start - 1:token.end + 1].decode('utf-8', 'replace')
        return self.raw(index).decode('utf-8', 'replace')

    def string_value(self, index: int) -> str:
        raw = self.raw(index)
        if self.tokens[index].type != TokenType.STRING:
            return raw.decode('utf-8', 'replace')
        try:
            return json.loads(b'"' + raw + b'"')
        except ValueError:
            return raw.decode('utf-8', 'replace')

    def int_value(self, index: int, default: Optional[int] = 0) -> Optional[int]:
        raw = self.raw(index)
        match = _INT_PREFIX_RE.match(raw)
        if match:
            return int(match.group(1))
        try:
            return int(float(raw))
        except ValueError:
            return default

    def bool_value(self, index: int) -> bool:
        return self.tokens[index].type == TokenType.PRIMITIVE and self.raw(index) == b'true'

    def skip_item(self, index: int) -> int:
        """Index of the first token after the subtree rooted at index"""
        end = self.tokens[index].end
        next_index = index + 1
        while next_index < len(self.tokens) and self.tokens[next_index].start < end:
            next_index += 1
        return next_index

    def children(self, index: Optional[int]) -> Iterator[int]:
        if index is None:
            return
        child = index + 1
        for _ in range(self.tokens[index].size):
            yield child
            child = self.skip_item(child)

    def items(self, index: Optional[int]) -> Iterator[Tuple[int, int]]:
        """Key/value token pairs of an object"""
        if index is None or self.tokens[index].type != TokenType.OBJECT:
            return
        children = self.children(index)
        for key in children:
            value = next(children, None)
            if value is None:
                return
            yield key, value

    def find_key(self, root: Optional[int], key: str, expected_type: TokenType) -> Optional[int]:
        """Value token for key among root's immediate children, if its type matches"""
        for key_index, value_index in self.items(root):
            if self.tokens[key_index].type != TokenType.STRING:
                continue
            if self.string_value(key_index) != key:
                continue
            if self.tokens[value_index].type != expected_type:
                return None
            return value_index
        return None

    def find_string(self, root: Optional[int], key: str, default: Optional[str] = '') -> Optional[str]:
        index = self.find_key(root, key, TokenType.STRING)
        if index is None:
            return default
        return self.string_value(index)

    def find_bool(self, root: Optional[int], key: str, default: Optional[bool] = False) -> Optional[bool]:
        index = self.find_key(root, key, TokenType.PRIMITIVE)
        if index is None:
            return default
        raw = self.raw(index)
        if raw == b'true':
            return True
        if raw == b'false':
            return False
        return default

    def find_int(self, root: Optional[int], key: str, default: Optional[int] = 0) -> Optional[int]:
        """Integer value for key; pass default=None to tell "absent" from 0"""
        index = self.find_key(root, key, TokenType.PRIMITIVE)
        if index is None or self.raw(index) in (b'true', b'false', b'null'):
            return default
        return self.int_value(index, default)

    def int_array(self, index: Optional[int]) -> List[int]:
        return [self.int_value(child) for child in self.children(index)
                if self.tokens[child].type == TokenType.PRIMITIVE]

    def string_array(self, index: Optional[int]) -> List[str]:
        return [self.string_value(child) for child in self.children(index)
                if self.tokens[child].type == TokenType.STRING]
