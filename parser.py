from __future__ import annotations
import math
import sys
from dataclasses import dataclass, field
from typing import Callable, ClassVar, Dict, Iterator, List, Optional, Tuple

from lexer import Lexer


ASSIGN_SET = "set"
ASSIGN_DECLARE = "declare"
ASSIGN_INCREMENT = "increment"
ASSIGN_DECREMENT = "decrement"

# Checked in this order against the text after the left-hand side.
ASSIGNMENT_OPERATORS: Tuple[Tuple[str, str], ...] = (
    ("=", ASSIGN_SET),
    (":=", ASSIGN_DECLARE),
    ("-=", ASSIGN_DECREMENT),
    ("+=", ASSIGN_INCREMENT),
)

# Longest first, so "<=" is not read as "<".
COMPARISON_OPERATORS = (">=", "<=", "==", ">", "<")
ADDITIVE_OPERATORS = ("+", "-")
TERM_OPERATORS = ("**", "*", "/", "%", "^")
EXPONENT_OPERATORS = ("^",)
UNARY_OPERATORS = ("+", "-", "~")

BUILTIN_CONSTANTS: Dict[str, float] = {
    "PI": math.pi,
    "E": math.e,
    "PHI": 1.618033988749,
}

SNIPPET_LIMIT = 50
# each nesting level of ( [ < { costs about a dozen Python frames
PARSE_RECURSION_LIMIT = 10_000


@dataclass
class Node:
    start: int
    end: int

    kind: ClassVar[str] = "Node"
    # Statement-level attributes, assigned by the statement list parser.
    show = False
    line = 0


@dataclass
class Number(Node):
    value: float
    text: str

    kind: ClassVar[str] = "Number"


@dataclass
class String(Node):
    value: str

    kind: ClassVar[str] = "String"


@dataclass
class Identifier(Node):
    name: str

    kind: ClassVar[str] = "Identifier"


@dataclass
class BuiltinConstant(Node):
    name: str

    kind: ClassVar[str] = "BuiltinConstant"


@dataclass
class Operator(Node):
    symbol: str

    kind: ClassVar[str] = "Operator"


@dataclass
class UnaryExpr(Node):
    op: Operator
    expr: Node

    kind: ClassVar[str] = "UnaryExpr"


@dataclass
class Chain(Node):
    """Operands interleaved with the operators between them: a op b op c."""

    items: List[Node]
    level: str

    kind: ClassVar[str] = "Chain"

    def operands(self) -> List[Node]:
        return self.items[0::2]

    def operators(self) -> List[Operator]:
        return self.items[1::2]  # type: ignore[return-value]


@dataclass
class FunctionCall(Node):
    name: Identifier
    args: List[Node]

    kind: ClassVar[str] = "FunctionCall"


@dataclass
class Assignment(Node):
    lhs: Node
    rhs: Node
    assign_type: str

    kind: ClassVar[str] = "Assignment"


@dataclass
class Ternary(Node):
    condition: Node
    if_true: Node
    if_false: Node

    kind: ClassVar[str] = "Ternary"


@dataclass
class TensorLiteral(Node):
    rows: List[Node]

    kind: ClassVar[str] = "TensorLiteral"


@dataclass
class Block(Node):
    body: List[Node]

    kind: ClassVar[str] = "Block"


@dataclass
class ForLoop(Node):
    initializers: List[Node]
    condition: Node
    steps: List[Node]
    body: Block

    kind: ClassVar[str] = "ForLoop"


@dataclass
class ListLiteral(Node):
    items: List[Node]

    kind: ClassVar[str] = "ListLiteral"


@dataclass
class Indexation(Node):
    expr: Node
    indexes: List[Node]

    kind: ClassVar[str] = "Indexation"


@dataclass
class Program:
    statements: List[Node]
    parse_error: Optional[str]
    text: str = field(repr=False, default="")


# Ordered child fields per node kind; leaves have none.
CHILD_KEYS: Dict[str, Tuple[str, ...]] = {
    "Block": ("body",),
    "Indexation": ("expr", "indexes"),
    "Chain": ("items",),
    "UnaryExpr": ("op", "expr"),
    "FunctionCall": ("name", "args"),
    "Assignment": ("lhs", "rhs"),
    "Ternary": ("condition", "if_true", "if_false"),
    "TensorLiteral": ("rows",),
    "ForLoop": ("initializers", "condition", "steps", "body"),
    "ListLiteral": ("items",),
}


def node_children(node: Node) -> Tuple[str, ...]:
    return CHILD_KEYS.get(node.kind, ())


def child_nodes(node: Node) -> List[Node]:
    children: List[Node] = []
    for key in node_children(node):
        value = getattr(node, key)
        if isinstance(value, list):
            children.extend(value)
        else:
            children.append(value)
    return children


def iter_nodes(node: Node) -> Iterator[Node]:
    """Depth-first, parents before children, children in source order."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(child_nodes(current)))


def _leaf_label(node: Node) -> str:
    if isinstance(node, Number):
        return node.text
    if isinstance(node, String):
        return repr(node.value)
    if isinstance(node, (Identifier, BuiltinConstant)):
        return node.name
    if isinstance(node, Operator):
        return node.symbol
    if isinstance(node, Chain):
        return node.level
    if isinstance(node, Assignment):
        return node.assign_type
    return ""


def format_ast(node: Node, indent: int = 0) -> str:
    label = _leaf_label(node)
    header = "  " * indent + f"{node.kind} [{node.start}, {node.end})"
    if label:
        header += f" {label}"
    lines = [header]
    for child in child_nodes(node):
        lines.append(format_ast(child, indent + 1))
    return "\n".join(lines)


class Parser:
    """Recursive descent straight over the source text.

    Every ``_parse_*`` production returns a node (or list of nodes) and leaves
    the cursor just past it, or returns ``None`` and leaves the cursor where it
    found it.
    """

    def __init__(self, text: str) -> None:
        self.text = text
        self.lexer = Lexer(text)

    def parse(self) -> Program:
        statements: List[Node] = []
        previous = sys.getrecursionlimit()
        if PARSE_RECURSION_LIMIT > previous:
            sys.setrecursionlimit(PARSE_RECURSION_LIMIT)
        try:
            self._parse_statements(statements)
        except RecursionError:
            line, column = self.lexer.line_col(0)
            return Program(
                statements=[],
                parse_error=f"Couldn't read line {line} pos {column}: expression nested too deeply",
                text=self.text,
            )
        finally:
            sys.setrecursionlimit(previous)
        end = self.lexer.skip_trivia()
        parse_error: Optional[str] = None
        if end != len(self.text):
            line, column = self.lexer.line_col(end)
            snippet = self.text[end:]
            if len(snippet) > SNIPPET_LIMIT:
                snippet = snippet[:SNIPPET_LIMIT] + "..."
            parse_error = f'Couldn\'t read line {line} pos {column}: "{snippet}"'
        return Program(statements=statements, parse_error=parse_error, text=self.text)

    # ---- helpers

    def _reset(self, pos: int) -> None:
        self.lexer.index = pos

    def _at_end(self) -> bool:
        return self.lexer.skip_trivia() >= len(self.text)

    def _parse_delimited(
        self,
        parse_item: Callable[[], Optional[Node]],
        delimiter: str,
        terminator: str,
        must_terminate: bool = True,
    ) -> Optional[List[Node]]:
        # Stops on the terminator without consuming it.
        lexer = self.lexer
        start = lexer.skip_trivia()
        if start >= len(self.text):
            return None
        items: List[Node] = []
        if lexer.has_text(terminator):
            return items
        terminated = False
        while True:
            item = parse_item()
            if item is None:
                break
            items.append(item)
            lexer.skip_trivia()
            if lexer.has_text(delimiter):
                lexer.index += len(delimiter)
                continue
            if lexer.has_text(terminator):
                terminated = True
                break
            self._reset(start)
            return None
        if must_terminate and not terminated:
            # [1, 2,] is allowed
            lexer.skip_trivia()
            if not lexer.has_text(terminator):
                self._reset(start)
                return None
        return items

    # ---- statements

    def _parse_statements(self, statements: List[Node]) -> bool:
        lexer = self.lexer
        start = lexer.skip_trivia()
        if start >= len(self.text):
            return False
        while True:
            node = self._parse_assignment()
            if node is None:
                break
            statements.append(node)
            after = lexer.index
            lexer.skip_inline_space()
            ends_with_semicolon = lexer.has_text(";")
            node.show = not ends_with_semicolon
            node.line = self.text.count("\n", 0, node.start)
            if ends_with_semicolon:
                lexer.index += 1
            else:
                self._reset(after)
        return lexer.index != start

    def _parse_assignment(self) -> Optional[Node]:
        lexer = self.lexer
        start = lexer.skip_trivia()
        if start >= len(self.text):
            return None
        lhs = self._parse_top_level()
        if lhs is None:
            self._reset(start)
            return None
        after_lhs = lexer.index
        op_pos = lexer.skip_trivia()
        for symbol, assign_type in ASSIGNMENT_OPERATORS:
            if lexer.has_text(symbol, op_pos):
                lexer.index = op_pos + len(symbol)
                break
        else:
            self._reset(after_lhs)
            return lhs
        rhs = self._parse_top_level()
        if rhs is None:
            self._reset(start)
            return None
        return Assignment(start, lexer.index, lhs, rhs, assign_type)

    def _parse_top_level(self) -> Optional[Node]:
        lexer = self.lexer
        start = lexer.skip_trivia()
        if start >= len(self.text):
            return None
        loop = self._parse_for_loop()
        if loop is not None:
            return loop
        expr = self._parse_ternary()
        if expr is None:
            self._reset(start)
            return None
        after_expr = lexer.index
        indexes = self._parse_index_suffix()
        if indexes is None:
            self._reset(after_expr)
            return expr
        return Indexation(start, lexer.index, expr, indexes)

    def _parse_index_suffix(self) -> Optional[List[Node]]:
        lexer = self.lexer
        lexer.skip_trivia()
        if not lexer.has_text("["):
            return None
        indexes: List[Node] = []
        end = lexer.index
        while lexer.has_text("["):
            lexer.index += 1
            index = self._parse_top_level()
            if index is None:
                return None
            lexer.skip_trivia()
            if not lexer.has_text("]"):
                return None
            lexer.index += 1
            indexes.append(index)
            end = lexer.index
            lexer.skip_trivia()
        self._reset(end)
        return indexes

    def _parse_for_loop(self) -> Optional[ForLoop]:
        lexer = self.lexer
        start = lexer.skip_trivia()
        if not lexer.scan_keyword("for"):
            return None
        initializers = self._parse_delimited(self._parse_assignment, ",", ";", must_terminate=False)
        if initializers is None or not lexer.match(";"):
            self._reset(start)
            return None
        condition = self._parse_top_level()
        if condition is None or not lexer.match(";"):
            self._reset(start)
            return None
        steps = self._parse_delimited(self._parse_assignment, ",", "{")
        if steps is None:
            self._reset(start)
            return None
        body = self._parse_block()
        if body is None:
            self._reset(start)
            return None
        return ForLoop(start, lexer.index, initializers, condition, steps, body)

    def _parse_ternary(self) -> Optional[Node]:
        lexer = self.lexer
        start = lexer.skip_trivia()
        condition = self._parse_comparison()
        if condition is None:
            return None
        after_condition = lexer.index
        if not lexer.match("?"):
            self._reset(after_condition)
            return condition
        if_true = self._parse_comparison()
        if if_true is None or not lexer.match(":"):
            self._reset(start)
            return None
        # Right-associative: a ? b : c ? d : e
        if_false = self._parse_ternary()
        if if_false is None:
            self._reset(start)
            return None
        return Ternary(condition.start, lexer.index, condition, if_true, if_false)

    # ---- operator chains

    def _parse_chain(
        self,
        level: str,
        parse_operand: Callable[[], Optional[Node]],
        operators: Tuple[str, ...],
    ) -> Optional[Node]:
        lexer = self.lexer
        start = lexer.skip_trivia()
        if start >= len(self.text):
            return None
        first = parse_operand()
        if first is None:
            self._reset(start)
            return None
        items: List[Node] = [first]
        while True:
            token = lexer.match_one_of("OP", operators)
            if token is None:
                self._reset(items[-1].end)
                break
            operand = parse_operand()
            if operand is None:
                # The operator belongs to whatever comes next.
                self._reset(items[-1].end)
                break
            items.append(Operator(token.start, token.end, token.value))
            items.append(operand)
        if len(items) == 1:
            return first
        return Chain(start, lexer.index, items, level)

    def _parse_comparison(self) -> Optional[Node]:
        return self._parse_chain("comparison", self._parse_additive, COMPARISON_OPERATORS)

    def _parse_additive(self) -> Optional[Node]:
        return self._parse_chain("additive", self._parse_term, ADDITIVE_OPERATORS)

    def _parse_term(self) -> Optional[Node]:
        return self._parse_chain("term", self._parse_exponent, TERM_OPERATORS)

    def _parse_exponent(self) -> Optional[Node]:
        return self._parse_chain("exponent", self._parse_atom, EXPONENT_OPERATORS)

    # ---- atoms

    def _parse_atom(self) -> Optional[Node]:
        # Order matters: a call must be tried before a bare identifier, and a
        # clock literal before a plain number.
        start = self.lexer.skip_trivia()
        if start >= len(self.text):
            return None
        for production in (
            self._parse_block,
            self._parse_group,
            self._parse_unary,
            self._parse_call,
            self._parse_identifier,
            self._parse_clock,
            self._parse_number,
            self._parse_tensor,
            self._parse_string,
            self._parse_list,
        ):
            node = production()
            if node is not None:
                return node
            self._reset(start)
        return None

    def _parse_block(self) -> Optional[Block]:
        lexer = self.lexer
        start = lexer.skip_trivia()
        if not lexer.has_text("{"):
            return None
        lexer.index += 1
        body: List[Node] = []
        lexer.skip_trivia()
        if not lexer.has_text("}"):
            if not self._parse_statements(body):
                self._reset(start)
                return None
            lexer.skip_trivia()
        if not lexer.has_text("}"):
            self._reset(start)
            return None
        lexer.index += 1
        return Block(start, lexer.index, body)

    def _parse_group(self) -> Optional[Node]:
        lexer = self.lexer
        start = lexer.skip_trivia()
        if not lexer.has_text("("):
            return None
        lexer.index += 1
        inner = self._parse_top_level()
        if inner is None or not lexer.match(")"):
            self._reset(start)
            return None
        # The group has no node of its own; the inner node absorbs the parens.
        inner.start = start
        inner.end = lexer.index
        return inner

    def _parse_unary(self) -> Optional[UnaryExpr]:
        lexer = self.lexer
        start = lexer.skip_trivia()
        token = lexer.match_one_of("UNARY", UNARY_OPERATORS)
        if token is None:
            return None
        operand = self._parse_atom()
        if operand is None:
            self._reset(start)
            return None
        op = Operator(token.start, token.end, token.value)
        return UnaryExpr(start, lexer.index, op, operand)

    def _parse_call(self) -> Optional[FunctionCall]:
        lexer = self.lexer
        start = lexer.skip_trivia()
        token = lexer.scan_identifier()
        if token is None:
            return None
        # No whitespace between the name and its argument list.
        if not lexer.has_text("("):
            self._reset(start)
            return None
        lexer.index += 1
        args = self._parse_delimited(self._parse_assignment, ",", ")")
        if args is None:
            self._reset(start)
            return None
        lexer.index += 1
        name = Identifier(token.start, token.end, token.value)
        return FunctionCall(start, lexer.index, name, args)

    def _parse_identifier(self) -> Optional[Node]:
        token = self.lexer.scan_identifier()
        if token is None:
            return None
        if token.value in BUILTIN_CONSTANTS:
            return BuiltinConstant(token.start, token.end, token.value)
        return Identifier(token.start, token.end, token.value)

    def _parse_clock(self) -> Optional[Number]:
        scanned = self.lexer.scan_clock()
        if scanned is None:
            return None
        token, minutes = scanned
        return Number(token.start, token.end, float(minutes), token.value)

    def _parse_number(self) -> Optional[Number]:
        token = self.lexer.scan_number()
        if token is None:
            return None
        return Number(token.start, token.end, float(token.value), token.value)

    def _parse_tensor(self) -> Optional[TensorLiteral]:
        lexer = self.lexer
        start = lexer.skip_trivia()
        if not lexer.has_text("["):
            return None
        lexer.index += 1
        rows = self._parse_delimited(self._parse_top_level, ",", "]")
        if rows is None:
            self._reset(start)
            return None
        lexer.index += 1
        return TensorLiteral(start, lexer.index, rows)

    def _parse_string(self) -> Optional[String]:
        token = self.lexer.scan_string()
        if token is None:
            return None
        return String(token.start, token.end, token.value)

    def _parse_list(self) -> Optional[ListLiteral]:
        lexer = self.lexer
        start = lexer.skip_trivia()
        if not lexer.has_text("<"):
            return None
        lexer.index += 1
        items = self._parse_delimited(self._parse_top_level, ",", ">")
        if items is None:
            self._reset(start)
            return None
        lexer.index += 1
        return ListLiteral(start, lexer.index, items)


def parse_program(text: str) -> Program:
    return Parser(text).parse()
