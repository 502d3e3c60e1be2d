from __future__ import annotations
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from lexer import CalcError

if TYPE_CHECKING:
    from parser import Block, Node
    from scope import Binding


TYPE_NUMBER = "NUMBER"
TYPE_TENSOR = "TENSOR"
TYPE_STRING = "STRING"
TYPE_FUNCTION = "FUNCTION"
TYPE_LIST = "LIST"
TYPE_NULL = "NULL"
TYPE_ERROR = "ERROR"
# Only used as a wildcard in the operator tables, never as a value's type.
TYPE_ANY = "ANY"

EPSILON = 1e-10

UNDECLARED_VARIABLE = "UndeclaredVariable"
REDECLARED_VARIABLE = "RedeclaredVariable"
TYPE_MISMATCH = "TypeMismatch"
SHAPE_MISMATCH = "ShapeMismatch"
INDEX_OUT_OF_BOUNDS = "IndexOutOfBounds"
ARITY_MISMATCH = "ArityMismatch"
INVALID_LVALUE = "InvalidLValue"
ITERATION_LIMIT_EXCEEDED = "IterationLimitExceeded"
RECURSION_LIMIT_EXCEEDED = "RecursionLimitExceeded"
PARSE_ERROR = "ParseError"


class LangRuntimeError(CalcError):
    """Raised by evaluation helpers; the evaluator turns it into an error value."""

    def __init__(self, message: str, *, kind: str = TYPE_MISMATCH) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind


@dataclass(frozen=True)
class Tensor:
    shape: Tuple[int, ...]
    data: NDArray[np.float64]
    strides: Tuple[int, ...] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        # Row-major strides: for shape [d0, d1, d2] they are [d1*d2, d2, 1].
        stride = 1
        out: List[int] = [0] * len(self.shape)
        for i in range(len(self.shape) - 1, -1, -1):
            out[i] = stride
            stride *= int(self.shape[i])
        object.__setattr__(self, "strides", tuple(out))

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def size(self) -> int:
        return int(self.data.size)


@dataclass(eq=False)
class ListValue:
    items: List["Value"]


@dataclass(eq=False)
class Function:
    name: str
    params: List[str]
    captures: List[Tuple[str, "Binding"]]
    body: "Block"
    text: str


@dataclass(eq=False)
class ErrorInfo:
    kind: str
    message: str
    node: Optional["Node"]


@dataclass
class Value:
    type: str
    value: Any

    @property
    def is_error(self) -> bool:
        return self.type == TYPE_ERROR


NULL = Value(TYPE_NULL, None)


def make_number(number: float) -> Value:
    return Value(TYPE_NUMBER, float(number))


def make_string(text: str) -> Value:
    return Value(TYPE_STRING, text)


def make_tensor(shape: Tuple[int, ...], data: Any) -> Value:
    flat = np.asarray(data, dtype=np.float64).reshape(-1)
    shape = tuple(int(d) for d in shape)
    if int(np.prod(shape, dtype=np.int64)) != flat.size:
        raise CalcError(f"tensor data of length {flat.size} does not fit shape {list(shape)}")
    return Value(TYPE_TENSOR, Tensor(shape, flat))


def make_list(items: List[Value]) -> Value:
    return Value(TYPE_LIST, ListValue(items))


def make_error(kind: str, message: str, node: Optional["Node"] = None) -> Value:
    return Value(TYPE_ERROR, ErrorInfo(kind, message, node))


# ---- rendering


def format_number(number: float) -> str:
    """Shortest round-trip text, spelled the way a browser console would."""
    if np.isnan(number):
        return "NaN"
    if np.isinf(number):
        return "Infinity" if number > 0 else "-Infinity"
    if number == 0:
        return "0"
    if 1e-7 <= abs(number) < 1e21:
        return np.format_float_positional(number, trim="-")
    return np.format_float_scientific(number, trim="-", exp_digits=1)


def format_shape(shape: Tuple[int, ...], sep: str = ",") -> str:
    return sep.join(str(d) for d in shape)


def tensor_to_string(tensor: Tensor) -> str:
    data = tensor.data
    shape = tensor.shape
    counter = 0

    def render(level: int) -> str:
        nonlocal counter
        if level == len(shape):
            text = format_number(float(data[counter]))
            counter += 1
            return text
        parts = []
        for i in range(shape[level]):
            text = render(level + 1)
            if i > 0:
                text = " " + text
            parts.append(text)
        joiner = ", " if level == len(shape) - 1 else ", \n"
        return "[" + joiner.join(parts) + "]"

    body = render(0).replace("\n", "\n\t")
    return f"shape: {format_shape(shape, 'x')}, data: \n\t{body}"


def _capture_to_string(value: Value) -> str:
    # A function can capture the binding that holds itself.
    if value.type == TYPE_FUNCTION:
        return value.value.name
    return value_to_string(value)


def value_to_string(value: Optional[Value]) -> str:
    if value is None or value.type == TYPE_NULL:
        return "{}"
    if value.type == TYPE_NUMBER:
        return format_number(value.value)
    if value.type == TYPE_TENSOR:
        return tensor_to_string(value.value)
    if value.type == TYPE_STRING:
        return value.value
    if value.type == TYPE_FUNCTION:
        fn: Function = value.value
        if not fn.captures:
            return fn.text
        where = ", ".join(f"{name}={_capture_to_string(binding.value)}" for name, binding in fn.captures)
        return f"{fn.text} where {where}"
    if value.type == TYPE_LIST:
        return "<" + ",\n".join(value_to_string(item) for item in value.value.items) + ">"
    if value.type == TYPE_ERROR:
        return value.value.message
    return str(value.value)


def describe_value(value: Value) -> str:
    return f"[{value.type}] {value_to_string(value)}"


def _json_number(number: float) -> Any:
    # NaN and infinities are not valid JSON numbers.
    if np.isfinite(number):
        return float(number)
    return format_number(float(number))


def value_to_json(value: Value) -> Any:
    """Plain JSON-able form of a value."""
    if value.type == TYPE_NUMBER:
        return {"type": value.type, "value": _json_number(value.value)}
    if value.type == TYPE_TENSOR:
        tensor: Tensor = value.value
        return {"type": value.type, "shape": list(tensor.shape), "data": [_json_number(x) for x in tensor.data]}
    if value.type == TYPE_LIST:
        return {"type": value.type, "items": [value_to_json(item) for item in value.value.items]}
    if value.type == TYPE_ERROR:
        return {"type": value.type, "kind": value.value.kind, "message": value.value.message}
    if value.type == TYPE_NULL:
        return {"type": value.type}
    return {"type": value.type, "value": value_to_string(value)}
