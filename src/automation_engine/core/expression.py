"""
条件表达式语言

词法分析 + 递归下降语法分析生成 AST，再由解释器求值。优先级从低到高：

    or / ||
    and / &&
    not / !
    === !== == != >= <= > <
    + -
    * / %
    一元 -
    字面量、函数调用、变量路径、括号

求值语义接近宽松比较：``==`` 会把数字字符串当作数字比较，``===`` 要求类型一致；
``null``、``false``、``0``、``""``、``"0"`` 以及空数组/对象为假。
"""
import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..exceptions import InvalidExpressionError
from .resolver import get_field_value


NUMERIC_PATTERN = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*$")

COMPARISON_OPERATORS = ("===", "!==", "==", "!=", ">=", "<=", ">", "<")

TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("NUMBER", r"\d+(?:\.\d+)?(?:[eE][+-]?\d+)?"),
    ("STRING", r'"(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\''),
    ("IDENT", r"[A-Za-z_][A-Za-z0-9_]*"),
    ("OP", r"===|!==|==|!=|>=|<=|&&|\|\||[<>!+\-*/%]"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("LBRACKET", r"\["),
    ("RBRACKET", r"\]"),
    ("LBRACE", r"\{"),
    ("RBRACE", r"\}"),
    ("COMMA", r","),
    ("COLON", r":"),
    ("DOT", r"\."),
]
TOKEN_REGEX = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in TOKEN_SPEC))

ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "/": "/", "\\": "\\", '"': '"', "'": "'"}


@dataclass
class Token:
    type: str
    value: str
    position: int


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------

@dataclass
class Literal:
    value: Any


@dataclass
class VariableRef:
    path: str


@dataclass
class Call:
    name: str
    args: List[Any] = field(default_factory=list)


@dataclass
class BinaryOp:
    operator: str
    left: Any
    right: Any


@dataclass
class UnaryOp:
    operator: str  # not | neg
    operand: Any


@dataclass
class ArrayLiteral:
    items: List[Any] = field(default_factory=list)


@dataclass
class ObjectLiteral:
    entries: List[Tuple[str, Any]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# 值语义
# ---------------------------------------------------------------------------

def is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return isinstance(value, str) and bool(NUMERIC_PATTERN.match(value))


def to_number(value: Any):
    """转换为 int 或 float，无法转换时抛出 InvalidExpressionError"""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if value is None:
        return 0
    if isinstance(value, str) and NUMERIC_PATTERN.match(value):
        number = float(value)
        if number.is_integer() and re.fullmatch(r"\s*[+-]?\d+\s*", value):
            return int(value)
        return number
    raise InvalidExpressionError(f"Value is not numeric: {value!r}")


def is_truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value not in ("", "0")
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return bool(value)


def loose_equals(left: Any, right: Any) -> bool:
    if left is None and right is None:
        return True
    if left is None or right is None:
        other = right if left is None else left
        if isinstance(other, str):
            return other == ""
        return not is_truthy(other)
    if isinstance(left, bool) or isinstance(right, bool):
        return is_truthy(left) == is_truthy(right)
    if is_numeric(left) and is_numeric(right):
        return float(to_number(left)) == float(to_number(right))
    if isinstance(left, (int, float)) or isinstance(right, (int, float)):
        return False
    return left == right


def strict_equals(left: Any, right: Any) -> bool:
    if type(left) is not type(right):
        return False
    return left == right


def compare(left: Any, right: Any) -> int:
    """有序比较，返回 -1/0/1"""
    if isinstance(left, str) and isinstance(right, str) and not (is_numeric(left) and is_numeric(right)):
        return (left > right) - (left < right)
    numeric_like = (int, float, bool, type(None))
    if (isinstance(left, numeric_like) or is_numeric(left)) and (isinstance(right, numeric_like) or is_numeric(right)):
        a, b = to_number(left), to_number(right)
        return (a > b) - (a < b)
    raise InvalidExpressionError(f"Cannot compare {type(left).__name__} with {type(right).__name__}")


def value_to_expression(value: Any) -> str:
    """将值渲染回表达式语法"""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return "null"
        return repr(value)
    if isinstance(value, str):
        if is_numeric(value):
            return value.strip()
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return json.dumps(str(value), ensure_ascii=False)


def _unescape(body: str) -> str:
    result = []
    index = 0
    while index < len(body):
        char = body[index]
        if char == "\\" and index + 1 < len(body):
            nxt = body[index + 1]
            if nxt == "u" and index + 5 < len(body) and re.fullmatch(r"[0-9a-fA-F]{4}", body[index + 2:index + 6]):
                result.append(chr(int(body[index + 2:index + 6], 16)))
                index += 6
                continue
            result.append(ESCAPES.get(nxt, nxt))
            index += 2
            continue
        result.append(char)
        index += 1
    return "".join(result)


# ---------------------------------------------------------------------------
# 词法与语法分析
# ---------------------------------------------------------------------------

def tokenize(expression: str) -> List[Token]:
    tokens = []
    position = 0
    while position < len(expression):
        match = TOKEN_REGEX.match(expression, position)
        if not match:
            raise InvalidExpressionError(
                f"Unexpected character {expression[position]!r} at position {position}"
            )
        kind = match.lastgroup
        if kind != "WS":
            tokens.append(Token(kind, match.group(), position))
        position = match.end()
    tokens.append(Token("EOF", "", position))
    return tokens


class ExpressionParser:
    """递归下降语法分析器"""

    def __init__(self, expression: str, functions: Mapping[str, Callable] = None):
        self.expression = expression
        self.functions = functions or {}
        self.tokens = tokenize(expression)
        self.position = 0

    def parse(self):
        if self._peek().type == "EOF":
            raise InvalidExpressionError("Empty expression")
        node = self._parse_or()
        if self._peek().type != "EOF":
            token = self._peek()
            raise InvalidExpressionError(f"Unexpected token {token.value!r} at position {token.position}")
        return node

    def _peek(self, offset: int = 0) -> Token:
        index = min(self.position + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def _advance(self) -> Token:
        token = self._peek()
        if token.type != "EOF":
            self.position += 1
        return token

    def _expect(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise InvalidExpressionError(
                f"Expected {token_type} but found {token.value or 'end of expression'!r} at position {token.position}"
            )
        return self._advance()

    def _match_keyword(self, symbol: str, keyword: str) -> bool:
        token = self._peek()
        if token.type == "OP" and token.value == symbol:
            return True
        return token.type == "IDENT" and token.value.lower() == keyword

    def _parse_or(self):
        node = self._parse_and()
        while self._match_keyword("||", "or"):
            self._advance()
            node = BinaryOp("or", node, self._parse_and())
        return node

    def _parse_and(self):
        node = self._parse_not()
        while self._match_keyword("&&", "and"):
            self._advance()
            node = BinaryOp("and", node, self._parse_not())
        return node

    def _parse_not(self):
        if self._match_keyword("!", "not"):
            self._advance()
            return UnaryOp("not", self._parse_not())
        return self._parse_comparison()

    def _parse_comparison(self):
        node = self._parse_additive()
        while self._peek().type == "OP" and self._peek().value in COMPARISON_OPERATORS:
            operator = self._advance().value
            node = BinaryOp(operator, node, self._parse_additive())
        return node

    def _parse_additive(self):
        node = self._parse_multiplicative()
        while self._peek().type == "OP" and self._peek().value in ("+", "-"):
            operator = self._advance().value
            node = BinaryOp(operator, node, self._parse_multiplicative())
        return node

    def _parse_multiplicative(self):
        node = self._parse_unary()
        while self._peek().type == "OP" and self._peek().value in ("*", "/", "%"):
            operator = self._advance().value
            node = BinaryOp(operator, node, self._parse_unary())
        return node

    def _parse_unary(self):
        token = self._peek()
        if token.type == "OP" and token.value == "-":
            self._advance()
            return UnaryOp("neg", self._parse_unary())
        if token.type == "OP" and token.value == "+":
            self._advance()
            return self._parse_unary()
        return self._parse_primary()

    def _parse_primary(self):
        token = self._peek()

        if token.type == "NUMBER":
            self._advance()
            return Literal(to_number(token.value))

        if token.type == "STRING":
            self._advance()
            return Literal(_unescape(token.value[1:-1]))

        if token.type == "LPAREN":
            self._advance()
            node = self._parse_or()
            self._expect("RPAREN")
            return node

        if token.type == "LBRACKET":
            return self._parse_array()

        if token.type == "LBRACE":
            return self._parse_object()

        if token.type == "IDENT":
            lowered = token.value.lower()
            if lowered in ("true", "false") and self._peek(1).type != "DOT":
                self._advance()
                return Literal(lowered == "true")
            if lowered == "null" and self._peek(1).type != "DOT":
                self._advance()
                return Literal(None)
            if self._peek(1).type == "LPAREN":
                return self._parse_call()
            return self._parse_path()

        raise InvalidExpressionError(
            f"Unexpected token {token.value or 'end of expression'!r} at position {token.position}"
        )

    def _parse_arguments(self, closing: str) -> List[Any]:
        items = []
        if self._peek().type == closing:
            self._advance()
            return items
        while True:
            items.append(self._parse_or())
            if self._peek().type == "COMMA":
                self._advance()
                continue
            self._expect(closing)
            return items

    def _parse_call(self):
        name = self._advance().value
        if name not in self.functions:
            raise InvalidExpressionError(f"Unknown function: {name}")
        self._expect("LPAREN")
        return Call(name, self._parse_arguments("RPAREN"))

    def _parse_array(self):
        self._expect("LBRACKET")
        return ArrayLiteral(self._parse_arguments("RBRACKET"))

    def _parse_object(self):
        self._expect("LBRACE")
        entries = []
        if self._peek().type == "RBRACE":
            self._advance()
            return ObjectLiteral(entries)
        while True:
            key_token = self._advance()
            if key_token.type == "STRING":
                key = _unescape(key_token.value[1:-1])
            elif key_token.type in ("IDENT", "NUMBER"):
                key = key_token.value
            else:
                raise InvalidExpressionError(f"Invalid object key at position {key_token.position}")
            self._expect("COLON")
            entries.append((key, self._parse_or()))
            if self._peek().type == "COMMA":
                self._advance()
                continue
            self._expect("RBRACE")
            return ObjectLiteral(entries)

    def _parse_path(self):
        segments = [self._advance().value]
        while True:
            token = self._peek()
            if token.type == "DOT":
                self._advance()
                part = self._advance()
                if part.type not in ("IDENT", "NUMBER"):
                    raise InvalidExpressionError(f"Invalid path segment at position {part.position}")
                segments.extend(part.value.split("."))
            elif token.type == "LBRACKET":
                self._advance()
                index = self._expect("NUMBER")
                self._expect("RBRACKET")
                segments.append(index.value)
            else:
                return VariableRef(".".join(segments))


# ---------------------------------------------------------------------------
# 解释器
# ---------------------------------------------------------------------------

class ExpressionInterpreter:
    """AST 求值"""

    def __init__(self, functions: Mapping[str, Callable], context: Optional[Dict[str, Any]]):
        self.functions = functions
        self.context = context or {}

    def evaluate(self, node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, VariableRef):
            return get_field_value(node.path, self.context)
        if isinstance(node, ArrayLiteral):
            return [self.evaluate(item) for item in node.items]
        if isinstance(node, ObjectLiteral):
            return {key: self.evaluate(value) for key, value in node.entries}
        if isinstance(node, UnaryOp):
            if node.operator == "not":
                return not is_truthy(self.evaluate(node.operand))
            value = to_number(self.evaluate(node.operand))
            return -value
        if isinstance(node, BinaryOp):
            return self._binary(node)
        if isinstance(node, Call):
            return self._call(node)
        raise InvalidExpressionError(f"Unsupported expression node: {type(node).__name__}")

    def _binary(self, node: BinaryOp) -> Any:
        operator = node.operator
        if operator == "and":
            return is_truthy(self.evaluate(node.left)) and is_truthy(self.evaluate(node.right))
        if operator == "or":
            return is_truthy(self.evaluate(node.left)) or is_truthy(self.evaluate(node.right))

        left = self.evaluate(node.left)
        right = self.evaluate(node.right)

        if operator == "===":
            return strict_equals(left, right)
        if operator == "!==":
            return not strict_equals(left, right)
        if operator == "==":
            return loose_equals(left, right)
        if operator == "!=":
            return not loose_equals(left, right)
        if operator == ">=":
            return compare(left, right) >= 0
        if operator == "<=":
            return compare(left, right) <= 0
        if operator == ">":
            return compare(left, right) > 0
        if operator == "<":
            return compare(left, right) < 0
        return self._arithmetic(operator, left, right)

    def _arithmetic(self, operator: str, left: Any, right: Any) -> Any:
        if operator == "+":
            if isinstance(left, list) and isinstance(right, list):
                return left + right
            if isinstance(left, str) and isinstance(right, str) and not (is_numeric(left) and is_numeric(right)):
                return left + right

        a, b = to_number(left), to_number(right)
        if operator == "+":
            return a + b
        if operator == "-":
            return a - b
        if operator == "*":
            return a * b
        if b == 0:
            raise InvalidExpressionError("Division by zero")
        if operator == "/":
            if isinstance(a, int) and isinstance(b, int) and a % b == 0:
                return a // b
            return a / b
        if operator == "%":
            if int(b) == 0:
                raise InvalidExpressionError("Modulo by zero")
            return int(math.fmod(int(a), int(b)))
        raise InvalidExpressionError(f"Unknown operator: {operator}")

    def _call(self, node: Call) -> Any:
        function = self.functions.get(node.name)
        if function is None:
            raise InvalidExpressionError(f"Unknown function: {node.name}")
        args = [self.evaluate(arg) for arg in node.args]
        try:
            return function(*args)
        except InvalidExpressionError:
            raise
        except Exception as e:
            raise InvalidExpressionError(f"Function {node.name}() failed: {e}") from e


def parse_expression(expression: str, functions: Mapping[str, Callable] = None):
    """解析表达式为 AST"""
    return ExpressionParser(expression, functions).parse()


def evaluate_ast(node, functions: Mapping[str, Callable], context: Optional[Dict[str, Any]]) -> Any:
    return ExpressionInterpreter(functions, context).evaluate(node)
