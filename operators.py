from __future__ import annotations
from typing import Callable, Dict

import numpy as np

import tensors
from values import (
    EPSILON,
    TYPE_ANY,
    TYPE_LIST,
    TYPE_MISMATCH,
    TYPE_NUMBER,
    TYPE_STRING,
    TYPE_TENSOR,
    LangRuntimeError,
    Value,
    make_number,
    make_string,
)


BinaryImpl = Callable[[Value, Value], Value]
UnaryImpl = Callable[[Value], Value]

TENSOR_NUMBER_HINT = " (hint: for now you have to put [] around the number)"


def _as_flag(condition: object) -> np.ndarray:
    return np.asarray(condition, dtype=np.float64)


# Elementwise kernels shared by scalars and tensors; all IEEE-754, so
# 1 / 0 is inf and % keeps the sign of the dividend.
ARITHMETIC: Dict[str, Callable[[np.ndarray, np.ndarray], np.ndarray]] = {
    "+": np.add,
    "-": np.subtract,
    "*": np.multiply,
    "/": np.divide,
    "%": np.fmod,
    "^": np.power,
    "<": lambda a, b: _as_flag(np.less(a, b)),
    ">": lambda a, b: _as_flag(np.greater(a, b)),
    "<=": lambda a, b: _as_flag(np.less_equal(a, b)),
    ">=": lambda a, b: _as_flag(np.greater_equal(a, b)),
    "==": lambda a, b: _as_flag(np.abs(np.subtract(a, b)) < EPSILON),
}


def _number_op(symbol: str) -> BinaryImpl:
    kernel = ARITHMETIC[symbol]

    def apply(a: Value, b: Value) -> Value:
        with np.errstate(all="ignore"):
            return make_number(float(kernel(np.float64(a.value), np.float64(b.value))))

    return apply


def _tensor_op(symbol: str) -> BinaryImpl:
    kernel = ARITHMETIC[symbol]

    def apply(a: Value, b: Value) -> Value:
        return tensors.elementwise(a.value, b.value, kernel)

    return apply


def _matmul(a: Value, b: Value) -> Value:
    return tensors.matmul(a.value, b.value)


def _concat(a: Value, b: Value) -> Value:
    return make_string(a.value + b.value)


def _append(a: Value, b: Value) -> Value:
    # Appends in place: every name holding this list sees the new item.
    a.value.items.append(b)
    return a


# left type -> right type -> operator
BINARY_OPERATORS: Dict[str, Dict[str, Dict[str, BinaryImpl]]] = {
    TYPE_NUMBER: {
        TYPE_NUMBER: {symbol: _number_op(symbol) for symbol in ARITHMETIC},
    },
    TYPE_TENSOR: {
        TYPE_TENSOR: {"**": _matmul, **{symbol: _tensor_op(symbol) for symbol in ARITHMETIC}},
    },
    TYPE_STRING: {
        TYPE_STRING: {"+": _concat},
    },
    TYPE_LIST: {
        TYPE_ANY: {"+": _append},
    },
}


def _transpose(value: Value) -> Value:
    return tensors.transpose(value.value)


UNARY_OPERATORS: Dict[str, Dict[str, UnaryImpl]] = {
    TYPE_NUMBER: {
        "+": lambda value: value,
        "-": lambda value: make_number(-value.value),
    },
    TYPE_TENSOR: {
        "-": lambda value: tensors.negate(value.value),
        "~": _transpose,
    },
}


def apply_binary(symbol: str, left: Value, right: Value) -> Value:
    impl = None
    by_right = BINARY_OPERATORS.get(left.type) or BINARY_OPERATORS.get(TYPE_ANY)
    if by_right is not None:
        by_symbol = by_right.get(right.type) or by_right.get(TYPE_ANY)
        if by_symbol is not None:
            impl = by_symbol.get(symbol)
    if impl is None:
        message = f"the operation {left.type} {symbol} {right.type} doesn't exist yet"
        if {left.type, right.type} == {TYPE_TENSOR, TYPE_NUMBER}:
            message += TENSOR_NUMBER_HINT
        raise LangRuntimeError(message, kind=TYPE_MISMATCH)
    return impl(left, right)


def apply_unary(symbol: str, value: Value) -> Value:
    impl = UNARY_OPERATORS.get(value.type, {}).get(symbol)
    if impl is None:
        raise LangRuntimeError(f"unary op {symbol} can't be used on {value.type}", kind=TYPE_MISMATCH)
    return impl(value)
