from __future__ import annotations
import json
import math
import sys
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Tuple, Union

import numpy as np

import tensors
from captures import find_captures
from lexer import Lexer
from operators import apply_binary, apply_unary
from parser import (
    ASSIGN_DECLARE,
    ASSIGN_DECREMENT,
    ASSIGN_INCREMENT,
    BUILTIN_CONSTANTS,
    Assignment,
    Block,
    BuiltinConstant,
    Chain,
    ForLoop,
    FunctionCall,
    Identifier,
    Indexation,
    ListLiteral,
    Node,
    Number,
    Program,
    String,
    TensorLiteral,
    Ternary,
    UnaryExpr,
    parse_program,
)
from scope import ScopeStack
from values import (
    ARITY_MISMATCH,
    INVALID_LVALUE,
    ITERATION_LIMIT_EXCEEDED,
    NULL,
    PARSE_ERROR,
    RECURSION_LIMIT_EXCEEDED,
    SHAPE_MISMATCH,
    TYPE_FUNCTION,
    TYPE_LIST,
    TYPE_MISMATCH,
    TYPE_NUMBER,
    TYPE_STRING,
    TYPE_TENSOR,
    UNDECLARED_VARIABLE,
    ErrorInfo,
    Function,
    LangRuntimeError,
    Tensor,
    Value,
    format_number,
    make_error,
    make_list,
    make_number,
    make_string,
    make_tensor,
    value_to_json,
    value_to_string,
)


RESULT_PRINT = "print"
RESULT_GRAPH = "graph"
RESULT_PLOT = "plot"

# Python frames one user-level call can use (call, body, chains, ternaries).
FRAMES_PER_CALL = 50

CONDITION_MESSAGE = "condition needs to be a number, anything less than 0.5 is false, anything >= 0.5 is true"


@dataclass
class EvalOptions:
    max_iterations: int = 1_000_000
    max_call_depth: int = 1000
    verbose: bool = False
    seed: Optional[int] = None
    step_log_limit: int = 200


@dataclass
class PrintPayload:
    value: Value
    title: Optional[str]


@dataclass
class GraphPayload:
    functions: List[Function]
    domain_start: float
    domain_end: float


@dataclass
class PlotPayload:
    point_lists: List[Tensor]


@dataclass
class Result:
    kind: str
    payload: Union[PrintPayload, GraphPayload, PlotPayload]


@dataclass
class StepEntry:
    step_index: int
    rule: str
    line: int
    column: int
    snippet: str


class StateLogger:
    """Bounded log of evaluated nodes, only filled in verbose mode."""

    def __init__(self, verbose: bool, limit: int = 200) -> None:
        self.verbose = verbose
        self.entries: Deque[StepEntry] = deque(maxlen=limit)
        self.next_step_index = 0

    def record(self, *, rule: str, line: int, column: int, snippet: str) -> StepEntry:
        entry = StepEntry(
            step_index=self.next_step_index,
            rule=rule,
            line=line,
            column=column,
            snippet=snippet,
        )
        self.entries.append(entry)
        self.next_step_index += 1
        return entry


@dataclass
class ProgramContext:
    """Everything one evaluation run produces. Never shared between runs."""

    text: str
    options: EvalOptions = field(default_factory=EvalOptions)
    scopes: ScopeStack = field(default_factory=ScopeStack)
    errors: List[Value] = field(default_factory=list)
    results: List[Result] = field(default_factory=list)
    # (line, value) of statements written without a trailing semicolon
    displayed: List[Tuple[int, Value]] = field(default_factory=list)
    program_result: Value = field(default_factory=lambda: NULL)
    current_node: Optional[Node] = None
    program: Optional[Program] = None
    logger: StateLogger = field(init=False)
    rng: np.random.Generator = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.logger = StateLogger(self.options.verbose, self.options.step_log_limit)
        self.rng = np.random.default_rng(self.options.seed)

    def node_text(self, node: Node) -> str:
        return self.text[node.start : node.end].strip()

    def line_col(self, pos: int) -> Tuple[int, int]:
        return Lexer(self.text).line_col(pos)


BuiltinImpl = Callable[["Interpreter", List[Value], List[Node]], Value]


@dataclass
class BuiltinFunction:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: BuiltinImpl

    def validate(self, supplied: int) -> None:
        if supplied < self.min_args or (self.max_args is not None and supplied > self.max_args):
            if self.max_args == self.min_args:
                wanted = f"{self.min_args}"
            elif self.max_args is None:
                wanted = f"at least {self.min_args}"
            else:
                wanted = f"{self.min_args} to {self.max_args}"
            raise LangRuntimeError(
                f"function {self.name} wants {wanted} arguments, {supplied} were provided",
                kind=ARITY_MISMATCH,
            )


def _to_int32(number: float) -> int:
    if not math.isfinite(number):
        return 0
    wrapped = int(number) & 0xFFFFFFFF
    return wrapped - (1 << 32) if wrapped >= (1 << 31) else wrapped


def _imul(a: float, b: float) -> float:
    product = (_to_int32(a) * _to_int32(b)) & 0xFFFFFFFF
    return float(product - (1 << 32) if product >= (1 << 31) else product)


def _round_half_up(number: float) -> float:
    if not math.isfinite(number):
        return number
    return float(math.floor(number + 0.5))


def _lerp(a: float, b: float, t: float) -> float:
    if t < 0:
        return a
    if t > 1:
        return b
    return a + (b - a) * t


def _hypot(*numbers: float) -> float:
    return math.hypot(*numbers)


def _max(*numbers: float) -> float:
    if any(math.isnan(n) for n in numbers):
        return math.nan
    return max(numbers, default=-math.inf)


def _min(*numbers: float) -> float:
    if any(math.isnan(n) for n in numbers):
        return math.nan
    return min(numbers, default=math.inf)


class Builtins:
    def __init__(self) -> None:
        self.table: Dict[str, BuiltinFunction] = {}
        self._register_math("abs", 1, np.abs)
        self._register_math("acos", 1, np.arccos)
        self._register_math("acosh", 1, np.arccosh)
        self._register_math("asin", 1, np.arcsin)
        self._register_math("asinh", 1, np.arcsinh)
        self._register_math("atan", 1, np.arctan)
        self._register_math("atanh", 1, np.arctanh)
        self._register_math("atan2", 2, np.arctan2)
        self._register_math("ceil", 1, np.ceil)
        self._register_math("cos", 1, np.cos)
        self._register_math("cosh", 1, np.cosh)
        self._register_math("exp", 1, np.exp)
        self._register_math("floor", 1, np.floor)
        self._register_math("hypot", 0, _hypot, variadic=True)
        self._register_math("imul", 2, _imul)
        self._register_math("log", 1, np.log)
        self._register_math("log1p", 1, np.log1p)
        self._register_math("log10", 1, np.log10)
        self._register_math("log2", 1, np.log2)
        self._register_math("max", 0, _max, variadic=True)
        self._register_math("min", 0, _min, variadic=True)
        self._register_math("pow", 2, np.power)
        self._register_math("round", 1, _round_half_up)
        self._register_math("sign", 1, np.sign)
        self._register_math("sin", 1, np.sin)
        self._register_math("sinh", 1, np.sinh)
        self._register_math("sqrt", 1, np.sqrt)
        self._register_math("tan", 1, np.tan)
        self._register_math("tanh", 1, np.tanh)
        self._register_math("trunc", 1, np.trunc)
        self._register_math("lerp", 3, _lerp)
        # Arguments are accepted and ignored: random(x) is common in graphs.
        self._register_custom("random", 0, None, self._random)
        self._register_custom("T", 1, None, self._zeros)
        self._register_custom("I", 1, 1, self._identity)
        self._register_custom("len", 1, 1, self._len)
        self._register_custom("toVec", 1, 1, self._to_vec)
        self._register_custom("toHm", 1, 1, self._to_hm)
        self._register_custom("dot", 2, 2, self._dot)
        self._register_custom("print", 1, 2, self._print)
        self._register_custom("graph", 1, None, self._graph)
        self._register_custom("plot", 1, None, self._plot)
        self.names = frozenset(self.table)

    def __contains__(self, name: str) -> bool:
        return name in self.table

    def _register_math(self, name: str, arity: int, func: Callable[..., Any], variadic: bool = False) -> None:
        def impl(_: "Interpreter", args: List[Value], __: List[Node]) -> Value:
            numbers = [self._expect_number(name, i, arg) for i, arg in enumerate(args)]
            with np.errstate(all="ignore"):
                return make_number(float(func(*numbers)))

        self.table[name] = BuiltinFunction(name=name, min_args=arity, max_args=None if variadic else arity, impl=impl)

    def _register_custom(self, name: str, min_args: int, max_args: Optional[int], impl: BuiltinImpl) -> None:
        self.table[name] = BuiltinFunction(name=name, min_args=min_args, max_args=max_args, impl=impl)

    def invoke(self, interpreter: "Interpreter", name: str, args: List[Value], arg_nodes: List[Node]) -> Value:
        builtin = self.table[name]
        builtin.validate(len(args))
        return builtin.impl(interpreter, args, arg_nodes)

    @staticmethod
    def _expect(name: str, index: int, value: Value, wanted: str) -> Value:
        if value.type != wanted:
            raise LangRuntimeError(
                f"Argument {index} to function {name} was of type {value.type}, but it wants {wanted}",
                kind=TYPE_MISMATCH,
            )
        return value

    def _expect_number(self, name: str, index: int, value: Value) -> float:
        return self._expect(name, index, value, TYPE_NUMBER).value

    def _expect_tensor(self, name: str, index: int, value: Value) -> Tensor:
        return self._expect(name, index, value, TYPE_TENSOR).value

    # ---- tensors and lists

    def _random(self, interpreter: "Interpreter", args: List[Value], _: List[Node]) -> Value:
        return make_number(float(interpreter.ctx.rng.random()))

    def _zeros(self, _: "Interpreter", args: List[Value], __: List[Node]) -> Value:
        dims = [self._expect_number("T", i, arg) for i, arg in enumerate(args)]
        return tensors.zeros(dims)

    def _identity(self, _: "Interpreter", args: List[Value], __: List[Node]) -> Value:
        return tensors.identity(self._expect_number("I", 0, args[0]))

    def _len(self, _: "Interpreter", args: List[Value], __: List[Node]) -> Value:
        value = args[0]
        if value.type == TYPE_LIST:
            return make_number(len(value.value.items))
        if value.type == TYPE_TENSOR:
            return make_number(value.value.shape[0])
        if value.type == TYPE_STRING:
            return make_number(len(value.value))
        raise LangRuntimeError(f"can't take the length of type {value.type}", kind=TYPE_MISMATCH)

    def _to_vec(self, _: "Interpreter", args: List[Value], __: List[Node]) -> Value:
        items = self._expect("toVec", 0, args[0], TYPE_LIST).value.items
        if any(item.type != TYPE_NUMBER for item in items):
            raise LangRuntimeError(f"all items in the list must be of type {TYPE_NUMBER}", kind=TYPE_MISMATCH)
        if not items:
            raise LangRuntimeError("can't have a zero-length vector", kind=SHAPE_MISMATCH)
        return make_tensor((len(items),), [item.value for item in items])

    def _to_hm(self, _: "Interpreter", args: List[Value], __: List[Node]) -> Value:
        minutes = self._expect_number("toHm", 0, args[0])
        # inf and nan flow through as Infinityh NaNm
        with np.errstate(invalid="ignore"):
            hours = float(np.floor(minutes / 60))
            rest = float(np.fmod(minutes, 60))
        return make_string(f"{format_number(hours)}h {format_number(rest)}m")

    def _dot(self, _: "Interpreter", args: List[Value], __: List[Node]) -> Value:
        a = self._expect_tensor("dot", 0, args[0])
        b = self._expect_tensor("dot", 1, args[1])
        return make_number(tensors.dot(a, b))

    # ---- results

    @staticmethod
    def _snapshot(value: Value) -> Value:
        # Later writes to the same tensor or list must not change what was printed.
        if value.type == TYPE_TENSOR:
            return make_tensor(value.value.shape, value.value.data.copy())
        if value.type == TYPE_LIST:
            return make_list(list(value.value.items))
        return value

    def _print(self, interpreter: "Interpreter", args: List[Value], arg_nodes: List[Node]) -> Value:
        value = args[0]
        title: Optional[str] = None
        if len(args) > 1:
            title = value_to_string(args[1])
        elif isinstance(arg_nodes[0], Identifier):
            title = arg_nodes[0].name
        interpreter.ctx.results.append(Result(RESULT_PRINT, PrintPayload(self._snapshot(value), title)))
        return NULL

    def _graph(self, interpreter: "Interpreter", args: List[Value], _: List[Node]) -> Value:
        values = list(args)
        if values[0].type == TYPE_LIST:
            values = list(values[0].value.items) + values[1:]
        functions: List[Function] = []
        i = 0
        while i < len(values) and values[i].type == TYPE_FUNCTION:
            function: Function = values[i].value
            if len(function.params) != 1:
                raise LangRuntimeError(
                    "a function can only have 1 argument to be graphable, for now at least",
                    kind=ARITY_MISMATCH,
                )
            functions.append(function)
            i += 1
        if not functions:
            raise LangRuntimeError("arguments to graph are like ...functions, domainStart, domainEnd", kind=TYPE_MISMATCH)
        if i != len(values) - 2:
            raise LangRuntimeError(
                "specify the start and end after the list of functions. eg: graph(f(x) := x, 0, 1)",
                kind=ARITY_MISMATCH,
            )
        start = self._expect_number("graph", i, values[i])
        end = self._expect_number("graph", i + 1, values[i + 1])
        interpreter.ctx.results.append(Result(RESULT_GRAPH, GraphPayload(functions, start, end)))
        return NULL

    def _plot(self, interpreter: "Interpreter", args: List[Value], _: List[Node]) -> Value:
        values = list(args)
        if values[0].type == TYPE_LIST:
            values = list(values[0].value.items) + values[1:]
        point_lists: List[Tensor] = []
        for value in values:
            if value.type != TYPE_TENSOR or value.value.rank != 2 or value.value.shape[-1] != 2:
                raise LangRuntimeError("can only plot lists of 2D vectors", kind=TYPE_MISMATCH)
            point_lists.append(self._snapshot(value).value)
        if not point_lists:
            raise LangRuntimeError("can only plot lists of 2D vectors", kind=TYPE_MISMATCH)
        interpreter.ctx.results.append(Result(RESULT_PLOT, PlotPayload(point_lists)))
        return NULL


class Interpreter:
    """Tree-walking evaluator.

    Rules return values; failures become error values. Helpers deeper down
    raise ``LangRuntimeError``, which ``evaluate`` converts into an error value
    attributed to the node being evaluated and records exactly once.
    """

    def __init__(
        self,
        source: str = "",
        options: Optional[EvalOptions] = None,
        *,
        context: Optional[ProgramContext] = None,
    ) -> None:
        self.options = options or (context.options if context else EvalOptions())
        self.ctx = context or ProgramContext(text=source, options=self.options)
        self.builtins = Builtins()
        self.call_depth = 0
        self._rules: Dict[str, Callable[[Any], Value]] = {
            "Number": self._eval_number,
            "String": self._eval_string,
            "Identifier": self._eval_identifier,
            "BuiltinConstant": self._eval_builtin_constant,
            "UnaryExpr": self._eval_unary,
            "Chain": self._eval_chain,
            "FunctionCall": self._eval_call,
            "Assignment": self._eval_assignment,
            "Ternary": self._eval_ternary,
            "TensorLiteral": self._eval_tensor_literal,
            "ForLoop": self._eval_for_loop,
            "Block": self._eval_block,
            "ListLiteral": self._eval_list,
            "Indexation": self._eval_indexation,
        }

    # ---- entry points

    def run(self, program: Program) -> ProgramContext:
        ctx = self.ctx
        ctx.program = program
        ctx.text = program.text
        if program.parse_error:
            ctx.program_result = self._record_error(PARSE_ERROR, program.parse_error, None)
            return ctx
        with self.recursion_headroom():
            # Every statement runs, even after an earlier one failed.
            for statement in program.statements:
                ctx.program_result = self.evaluate(statement)
                if statement.show:
                    ctx.displayed.append((statement.line, ctx.program_result))
        return ctx

    def run_source(self, source: str) -> ProgramContext:
        return self.run(parse_program(source))

    @contextmanager
    def recursion_headroom(self) -> Iterator[None]:
        previous = sys.getrecursionlimit()
        wanted = FRAMES_PER_CALL * self.options.max_call_depth + 1000
        if wanted > previous:
            sys.setrecursionlimit(wanted)
        try:
            yield
        finally:
            sys.setrecursionlimit(previous)

    def evaluate(self, node: Node) -> Value:
        ctx = self.ctx
        previous = ctx.current_node
        ctx.current_node = node
        if ctx.logger.verbose:
            self._log_step(node)
        try:
            return self._rules[node.kind](node)
        except LangRuntimeError as exc:
            return self._record_error(exc.kind, exc.message, node)
        finally:
            ctx.current_node = previous

    def _record_error(self, kind: str, message: str, node: Optional[Node]) -> Value:
        error = make_error(kind, message, node)
        self.ctx.errors.append(error)
        return error

    def _log_step(self, node: Node) -> None:
        ctx = self.ctx
        line, column = ctx.line_col(node.start)
        snippet = ctx.node_text(node).replace("\n", " ")
        if len(snippet) > 40:
            snippet = snippet[:37] + "..."
        ctx.logger.record(rule=node.kind, line=line, column=column, snippet=snippet)

    def _evaluate_all(self, nodes: List[Node]) -> Tuple[List[Value], Optional[Value]]:
        values: List[Value] = []
        for node in nodes:
            value = self.evaluate(node)
            if value.is_error:
                return values, value
            values.append(value)
        return values, None

    def _run_statements(self, statements: List[Node]) -> Value:
        # The caller owns the frame.
        last = NULL
        for statement in statements:
            last = self.evaluate(statement)
            if last.is_error:
                return last
        return last

    @staticmethod
    def _is_true(value: Value) -> bool:
        if value.type != TYPE_NUMBER:
            raise LangRuntimeError(CONDITION_MESSAGE, kind=TYPE_MISMATCH)
        return value.value >= 0.5

    # ---- leaves

    def _eval_number(self, node: Number) -> Value:
        return make_number(node.value)

    def _eval_string(self, node: String) -> Value:
        return make_string(node.value)

    def _eval_builtin_constant(self, node: BuiltinConstant) -> Value:
        return make_number(BUILTIN_CONSTANTS[node.name])

    def _eval_identifier(self, node: Identifier) -> Value:
        name = node.name
        value = self.ctx.scopes.get(name)
        if value is not None:
            return value
        if name in self.builtins:
            raise LangRuntimeError(
                f"{name} is a builtin function, it can only be called like {name}(...)",
                kind=TYPE_MISMATCH,
            )
        raise LangRuntimeError(
            f"the variable {name} hasn't been declared yet. You can do something like {name} := 2; to declare it.",
            kind=UNDECLARED_VARIABLE,
        )

    # ---- expressions

    def _eval_chain(self, node: Chain) -> Value:
        items = node.items
        value = self.evaluate(items[0])
        if value.is_error:
            return value
        for i in range(1, len(items), 2):
            operand = self.evaluate(items[i + 1])
            if operand.is_error:
                return operand
            value = apply_binary(items[i].symbol, value, operand)
        return value

    def _eval_unary(self, node: UnaryExpr) -> Value:
        value = self.evaluate(node.expr)
        if value.is_error:
            return value
        return apply_unary(node.op.symbol, value)

    def _eval_ternary(self, node: Ternary) -> Value:
        condition = self.evaluate(node.condition)
        if condition.is_error:
            return condition
        if self._is_true(condition):
            return self.evaluate(node.if_true)
        return self.evaluate(node.if_false)

    def _eval_tensor_literal(self, node: TensorLiteral) -> Value:
        if not node.rows:
            raise LangRuntimeError("can't have a zero-length vector", kind=SHAPE_MISMATCH)
        parts: List[np.ndarray] = []
        row_shape: Optional[Tuple[int, ...]] = None
        for row in node.rows:
            value = self.evaluate(row)
            if value.is_error:
                return value
            if value.type == TYPE_TENSOR:
                shape = value.value.shape
                parts.append(value.value.data)
            elif value.type == TYPE_NUMBER:
                shape = ()
                parts.append(np.array([value.value]))
            else:
                raise LangRuntimeError(
                    f"bottom level item {self.ctx.node_text(row)} in tensor not of correct type - {value.type}",
                    kind=TYPE_MISMATCH,
                )
            if row_shape is None:
                row_shape = shape
            elif shape != row_shape:
                raise LangRuntimeError(
                    f"one of the elements of the tensor was the wrong size: {self.ctx.node_text(row)}",
                    kind=SHAPE_MISMATCH,
                )
        assert row_shape is not None
        return make_tensor((len(node.rows),) + row_shape, np.concatenate(parts))

    def _eval_list(self, node: ListLiteral) -> Value:
        items, error = self._evaluate_all(node.items)
        if error is not None:
            return error
        return make_list(items)

    def _eval_indexation(self, node: Indexation) -> Value:
        target = self.evaluate(node.expr)
        if target.is_error:
            return target
        if target.type not in (TYPE_TENSOR, TYPE_LIST):
            raise LangRuntimeError(f"the type {target.type} cannot be indexed yet", kind=TYPE_MISMATCH)
        indexes, error = self._evaluate_all(node.indexes)
        if error is not None:
            return error
        text = self.ctx.node_text(node)
        if target.type == TYPE_LIST:
            items = target.value.items
            return items[self._list_position(items, indexes, text)]
        return tensors.read_index(target.value, indexes, text)

    @staticmethod
    def _list_position(items: List[Value], indexes: List[Value], text: str) -> int:
        if len(indexes) != 1:
            raise LangRuntimeError("can't index thing inside a thing yet", kind=TYPE_MISMATCH)
        index = indexes[0]
        if index.type != TYPE_NUMBER:
            raise LangRuntimeError(f"a list can only be indexed with a number, not {index.type}", kind=TYPE_MISMATCH)
        return tensors.checked_index(index.value, len(items), text)

    # ---- scopes and control flow

    def _eval_block(self, node: Block) -> Value:
        scopes = self.ctx.scopes
        scopes.push_frame()
        try:
            return self._run_statements(node.body)
        finally:
            scopes.pop_frame()

    def _eval_for_loop(self, node: ForLoop) -> Value:
        scopes = self.ctx.scopes
        limit = self.options.max_iterations
        scopes.push_frame()
        try:
            for initializer in node.initializers:
                value = self.evaluate(initializer)
                if value.is_error:
                    return value
            iterations = 0
            while True:
                if iterations >= limit:
                    raise LangRuntimeError(
                        "you may have an infinite loop in your program - they are very easy to run into, "
                        f"which is why I have a limiter of {limit:,} iterations per loop for now",
                        kind=ITERATION_LIMIT_EXCEEDED,
                    )
                condition = self.evaluate(node.condition)
                if condition.is_error:
                    return condition
                if not self._is_true(condition):
                    break
                scopes.push_frame()
                try:
                    # A failing iteration is already recorded; the loop carries on.
                    self._run_statements(node.body.body)
                finally:
                    scopes.pop_frame()
                for step in node.steps:
                    value = self.evaluate(step)
                    if value.is_error:
                        return value
                iterations += 1
        finally:
            scopes.pop_frame()
        return NULL

    # ---- functions

    def _eval_call(self, node: FunctionCall) -> Value:
        name = node.name.name
        if name in self.builtins:
            args, error = self._evaluate_all(node.args)
            if error is not None:
                return error
            return self.builtins.invoke(self, name, args, node.args)
        binding = self.ctx.scopes.lookup(name)
        if binding is None:
            raise LangRuntimeError(f"function '{name}' not found", kind=UNDECLARED_VARIABLE)
        if binding.value.type != TYPE_FUNCTION:
            raise LangRuntimeError(f"'{name}' is not a function that can be called", kind=TYPE_MISMATCH)
        function: Function = binding.value.value
        if len(node.args) != len(function.params):
            raise LangRuntimeError(
                f"user defined function {name} wants {len(function.params)} arguments, "
                f"only {len(node.args)} were provided",
                kind=ARITY_MISMATCH,
            )
        # Arguments belong to the caller's scope, so evaluate them before the new frame.
        args, error = self._evaluate_all(node.args)
        if error is not None:
            return error
        return self.call_function(function, args)

    def call_function(self, function: Function, args: List[Value]) -> Value:
        if self.call_depth >= self.options.max_call_depth:
            raise LangRuntimeError(
                f"function {function.name} went more than {self.options.max_call_depth} calls deep",
                kind=RECURSION_LIMIT_EXCEEDED,
            )
        scopes = self.ctx.scopes
        scopes.push_frame()
        self.call_depth += 1
        try:
            for param, arg in zip(function.params, args):
                scopes.declare(param, arg)
            for name, binding in function.captures:
                scopes.install(name, binding)
            return self.evaluate(function.body)
        finally:
            self.call_depth -= 1
            scopes.pop_frame()

    def _define_function(self, node: Assignment) -> Value:
        call: FunctionCall = node.lhs  # type: ignore[assignment]
        name = call.name.name
        if name in self.builtins:
            raise LangRuntimeError("a builtin function already exists with this name", kind=INVALID_LVALUE)
        if node.assign_type in (ASSIGN_INCREMENT, ASSIGN_DECREMENT):
            raise LangRuntimeError(f"function {name} can only be defined with := or =", kind=INVALID_LVALUE)
        params: List[str] = []
        for arg in call.args:
            if not isinstance(arg, Identifier):
                raise LangRuntimeError(
                    f"declaration of function {name} accepts an invalid variable: '{self.ctx.node_text(arg)}' "
                    "(hint: variable names have no spaces or punctuation, and don't start with numbers)",
                    kind=INVALID_LVALUE,
                )
            params.append(arg.name)
        rhs = node.rhs
        body = rhs if isinstance(rhs, Block) else Block(rhs.start, rhs.end, [rhs])
        captures = find_captures(params, rhs, self.ctx.scopes, self.builtins.names)
        function = Function(name=name, params=params, captures=captures, body=body, text=self.ctx.node_text(node))
        value = Value(TYPE_FUNCTION, function)
        self.ctx.scopes.assign(name, value, node.assign_type)
        return value

    # ---- assignment

    def _eval_assignment(self, node: Assignment) -> Value:
        lhs = node.lhs
        if isinstance(lhs, FunctionCall):
            return self._define_function(node)
        indexes: Optional[List[Node]] = None
        if isinstance(lhs, Identifier):
            name = lhs.name
        elif isinstance(lhs, Indexation) and isinstance(lhs.expr, Identifier):
            name = lhs.expr.name
            indexes = lhs.indexes
        elif isinstance(lhs, BuiltinConstant):
            raise LangRuntimeError(f"{lhs.name} is a builtin constant and can't be assigned to", kind=INVALID_LVALUE)
        else:
            raise LangRuntimeError(f"can't assign to lhs type {lhs.kind}", kind=INVALID_LVALUE)
        if name in self.builtins:
            raise LangRuntimeError("a builtin function already exists with this name", kind=INVALID_LVALUE)
        if indexes is not None and node.assign_type == ASSIGN_DECLARE:
            raise LangRuntimeError(
                f"{self.ctx.node_text(node)} - can't declare a new variable inside a thing, "
                "doesn't make sense conceptually (hint: just use '=')",
                kind=INVALID_LVALUE,
            )
        rhs = self.evaluate(node.rhs)
        if rhs.is_error:
            return rhs
        if indexes is None:
            return self.ctx.scopes.assign(name, rhs, node.assign_type)
        return self._assign_index(node, name, indexes, rhs)

    def _assign_index(self, node: Assignment, name: str, index_nodes: List[Node], rhs: Value) -> Value:
        binding = self.ctx.scopes.lookup(name)
        if binding is None:
            raise LangRuntimeError(f"couldn't set {name}, it wasn't found anywhere", kind=UNDECLARED_VARIABLE)
        target = binding.value
        if target.type not in (TYPE_TENSOR, TYPE_LIST):
            raise LangRuntimeError(f"the type {target.type} cannot be indexed yet", kind=TYPE_MISMATCH)
        indexes, error = self._evaluate_all(index_nodes)
        if error is not None:
            return error
        text = self.ctx.node_text(node.lhs)
        combine = {ASSIGN_INCREMENT: "+", ASSIGN_DECREMENT: "-"}.get(node.assign_type)
        if target.type == TYPE_LIST:
            items = target.value.items
            position = self._list_position(items, indexes, text)
            if combine is not None:
                rhs = apply_binary(combine, items[position], rhs)
            items[position] = rhs
            return rhs
        if combine is not None:
            current = tensors.read_index(target.value, indexes, text)
            rhs = apply_binary(combine, current, rhs)
        tensors.write_index(target.value, indexes, rhs, text)
        return rhs


def evaluate_program(source: str, options: Optional[EvalOptions] = None) -> ProgramContext:
    """Parse and run ``source`` in a fresh context."""
    interpreter = Interpreter(source, options)
    return interpreter.run(parse_program(source))


def sample_function(
    function: Function,
    start: float,
    end: float,
    count: int,
    *,
    options: Optional[EvalOptions] = None,
) -> Value:
    """Evaluate a one-parameter function at ``count`` evenly spaced points.

    Runs in its own context with the function's captures installed by
    reference, so sampling never touches the program that defined it.
    Returns a ``count`` x 2 tensor of (x, y) rows, or the first error.
    """
    if len(function.params) != 1:
        return make_error(ARITY_MISMATCH, "a function can only have 1 argument to be graphable, for now at least", None)
    if count < 2:
        return make_error(SHAPE_MISMATCH, "need at least 2 sample points", None)
    interpreter = Interpreter(function.text, options)
    scopes = interpreter.ctx.scopes
    # Lets a function that calls itself by name be sampled on its own.
    if all(name != function.name for name, _ in function.captures):
        scopes.declare(function.name, Value(TYPE_FUNCTION, function))
    points = np.empty((count, 2), dtype=np.float64)
    with interpreter.recursion_headroom():
        for i in range(count):
            x = _lerp(start, end, i / (count - 1))
            try:
                y = interpreter.call_function(function, [make_number(x)])
            except LangRuntimeError as exc:
                return interpreter._record_error(exc.kind, exc.message, None)
            if y.is_error:
                return y
            if y.type != TYPE_NUMBER:
                return interpreter._record_error(
                    TYPE_MISMATCH, f"graphed function {function.name} returned {y.type}, it needs to return a NUMBER", None
                )
            points[i] = (x, y.value)
    return make_tensor((count, 2), points)


class ErrorFormatter:
    """Renders a context's errors as text or JSON."""

    def __init__(self, ctx: ProgramContext) -> None:
        self.ctx = ctx

    def _location(self, info: ErrorInfo) -> Optional[Tuple[int, int]]:
        node = info.node
        if node is None or node.start > len(self.ctx.text):
            return None
        return self.ctx.line_col(node.start)

    def format_error(self, error: Value) -> str:
        info: ErrorInfo = error.value
        lines = [f"{info.kind}: {info.message}"]
        location = self._location(info)
        if location is not None:
            line, column = location
            lines.append(f"  line {line}, col {column}")
            source_lines = self.ctx.text.split("\n")
            if line - 1 < len(source_lines):
                lines.append(f"    {source_lines[line - 1]}")
                lines.append("    " + " " * (column - 1) + "^")
        return "\n".join(lines)

    def format_steps(self) -> str:
        steps = ["Recent steps:"]
        for entry in self.ctx.logger.entries:
            steps.append(f"  #{entry.step_index} {entry.rule} at {entry.line}:{entry.column}  {entry.snippet}")
        return "\n".join(steps)

    def format_text(self, verbose: bool = False) -> str:
        blocks = [self.format_error(error) for error in self.ctx.errors]
        if verbose and self.ctx.logger.entries:
            blocks.append(self.format_steps())
        return "\n\n".join(blocks)

    @staticmethod
    def _result_json(result: Result) -> Dict[str, Any]:
        payload = result.payload
        if isinstance(payload, PrintPayload):
            return {"kind": result.kind, "title": payload.title, "value": value_to_json(payload.value)}
        if isinstance(payload, GraphPayload):
            return {
                "kind": result.kind,
                "functions": [function.text for function in payload.functions],
                "domain_start": payload.domain_start,
                "domain_end": payload.domain_end,
            }
        return {
            "kind": result.kind,
            "point_lists": [value_to_json(Value(TYPE_TENSOR, points)) for points in payload.point_lists],
        }

    def to_json(self) -> str:
        errors_json: List[Dict[str, Any]] = []
        for error in self.ctx.errors:
            info: ErrorInfo = error.value
            entry: Dict[str, Any] = {"kind": info.kind, "message": info.message}
            location = self._location(info)
            if location is not None:
                entry["line"], entry["column"] = location
            errors_json.append(entry)
        data: Dict[str, Any] = {
            "result": value_to_json(self.ctx.program_result),
            "results": [self._result_json(result) for result in self.ctx.results],
            "errors": errors_json,
            "variables": self.ctx.scopes.snapshot(),
        }
        if self.ctx.logger.verbose:
            data["steps"] = [
                {
                    "step_index": entry.step_index,
                    "rule": entry.rule,
                    "line": entry.line,
                    "column": entry.column,
                    "snippet": entry.snippet,
                }
                for entry in self.ctx.logger.entries
            ]
        return json.dumps(data, indent=2)
