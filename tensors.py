from __future__ import annotations
import math
from typing import Callable, List, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from values import (
    INDEX_OUT_OF_BOUNDS,
    SHAPE_MISMATCH,
    TYPE_MISMATCH,
    TYPE_NUMBER,
    TYPE_TENSOR,
    LangRuntimeError,
    Tensor,
    Value,
    format_number,
    format_shape,
    make_number,
    make_tensor,
)


ElementwiseOp = Callable[[NDArray[np.float64], NDArray[np.float64]], NDArray[np.float64]]

INDEX_TYPES_MESSAGE = (
    "only numbers, lists of numbers, or lists of vectors can be used as indices. \n\t"
    "(Note that this doesn't include vectors, as they can be misconstrued as a list of numbers. "
    "You will need to wrap your vector in a list)"
)


def shape_product(shape: Sequence[int]) -> int:
    total = 1
    for dim in shape:
        total *= int(dim)
    return total


def zeros(dims: Sequence[float]) -> Value:
    shape: List[int] = []
    for dim in dims:
        if not math.isfinite(dim) or dim < 1 or dim != math.floor(dim):
            raise LangRuntimeError(
                f"tensor dimensions must be positive whole numbers, got [{', '.join(format_number(d) for d in dims)}]",
                kind=SHAPE_MISMATCH,
            )
        shape.append(int(dim))
    if not shape:
        raise LangRuntimeError("can't have a zero-length vector", kind=SHAPE_MISMATCH)
    return make_tensor(tuple(shape), np.zeros(shape_product(shape)))


def identity(size: float) -> Value:
    result = zeros([size, size])
    n = int(size)
    # Diagonal of an n x n row-major buffer sits every n + 1 cells.
    result.value.data[:: n + 1] = 1.0
    return result


def broadcast_block(a: Tensor, b: Tensor) -> int:
    """Length of the trailing block of ``a`` that ``b`` lines up against."""
    if a.rank == 1 and b.rank == 1 and b.shape[0] == 1:
        return 1
    if b.rank <= a.rank and a.shape[a.rank - b.rank :] == b.shape:
        return shape_product(b.shape)
    raise LangRuntimeError(
        f"wrong sizes: [{format_shape(a.shape)}], [{format_shape(b.shape)}]",
        kind=SHAPE_MISMATCH,
    )


def elementwise(a: Tensor, b: Tensor, op: ElementwiseOp) -> Value:
    block = broadcast_block(a, b)
    with np.errstate(all="ignore"):
        out = op(a.data.reshape(-1, block), b.data.reshape(-1)[:block])
    return make_tensor(a.shape, np.asarray(out, dtype=np.float64))


def matmul(a: Tensor, b: Tensor) -> Value:
    if a.rank == 1 and b.rank == 1 and a.shape[0] == b.shape[0]:
        return make_number(float(np.dot(a.data, b.data)))
    if a.rank > 2 or b.rank > 2:
        raise LangRuntimeError(
            "matrix multiplication only works with matrices/vectors for now",
            kind=SHAPE_MISMATCH,
        )
    # A vector on the left is a 1 x n row, a vector on the right an n x 1 column.
    a_height, a_width = (1, a.shape[0]) if a.rank == 1 else a.shape
    b_height, b_width = (b.shape[0], 1) if b.rank == 1 else b.shape
    if a_width != b_height:
        raise LangRuntimeError(
            f"second matrix row count ({b_height}) must equal first matrix column count {a_width}",
            kind=SHAPE_MISMATCH,
        )
    with np.errstate(all="ignore"):
        product = a.data.reshape(a_height, a_width) @ b.data.reshape(b_height, b_width)
    if b.rank == 1:
        shape: Tuple[int, ...] = (a_height,)
    elif a.rank == 1:
        shape = (b_width,)
    else:
        shape = (a_height, b_width)
    return make_tensor(shape, product)


def transpose(t: Tensor) -> Value:
    if t.rank > 2:
        raise LangRuntimeError(
            "transposing is only defined on matrices and vectors at the moment (tensors with 1 or 2 shape components)",
            kind=SHAPE_MISMATCH,
        )
    if t.rank == 1:
        return make_tensor((1, t.shape[0]), t.data.copy())
    height, width = t.shape
    return make_tensor((width, height), t.data.reshape(height, width).T.copy())


def negate(t: Tensor) -> Value:
    return make_tensor(t.shape, -t.data)


def dot(a: Tensor, b: Tensor) -> float:
    if a.shape != b.shape:
        raise LangRuntimeError("two tensors must have the same shape for a dot product", kind=SHAPE_MISMATCH)
    return float(np.dot(a.data, b.data))


# ---- indexing


def checked_index(raw: float, dim: int, text: str) -> int:
    index = math.floor(raw) if math.isfinite(raw) else -1
    if index < 0 or index >= dim:
        raise LangRuntimeError(f"index {format_number(raw)} in {text} was out of bounds", kind=INDEX_OUT_OF_BOUNDS)
    return index


def _too_many_dimensions(text: str) -> LangRuntimeError:
    return LangRuntimeError(f"the indexing part of {text} has too many dimensions", kind=INDEX_OUT_OF_BOUNDS)


def resolve_offsets(tensor: Tensor, indexes: Sequence[Value], text: str) -> Tuple[NDArray[np.int64], Tuple[int, ...]]:
    """Flat offsets selected by ``indexes`` plus the shape left unconsumed.

    Each selector consumes one or more leading dimensions. Selecting several
    values repeats the offsets gathered so far once per value, with the new
    value varying slowest.
    """
    shape = tensor.shape
    strides = tensor.strides
    offsets: List[int] = [0]
    dim = 0
    for index in indexes:
        if index.type == TYPE_NUMBER:
            if dim >= len(shape):
                raise _too_many_dimensions(text)
            step = strides[dim] * checked_index(index.value, shape[dim], text)
            offsets = [offset + step for offset in offsets]
            dim += 1
            continue
        if index.type != TYPE_TENSOR or index.value.rank not in (1, 2):
            raise LangRuntimeError(INDEX_TYPES_MESSAGE, kind=TYPE_MISMATCH)
        selector: Tensor = index.value
        if selector.rank == 1:
            # list of numbers
            if dim >= len(shape):
                raise _too_many_dimensions(text)
            steps = [strides[dim] * checked_index(float(raw), shape[dim], text) for raw in selector.data]
            offsets = [offset + step for step in steps for offset in offsets]
            dim += 1
            continue
        # list of vectors, each row addresses several dimensions at once
        count, width = selector.shape
        if dim + width > len(shape):
            raise _too_many_dimensions(text)
        rows = selector.data.reshape(count, width)
        steps = []
        for row in rows:
            step = 0
            for k, raw in enumerate(row):
                step += strides[dim + k] * checked_index(float(raw), shape[dim + k], text)
            steps.append(step)
        offsets = [offset + step for step in steps for offset in offsets]
        dim += width
    return np.asarray(offsets, dtype=np.int64), tuple(shape[dim:])


def _block_cells(offsets: NDArray[np.int64], remaining: Tuple[int, ...]) -> NDArray[np.int64]:
    block = shape_product(remaining)
    return (offsets[:, None] + np.arange(block, dtype=np.int64)[None, :]).reshape(-1)


def read_index(tensor: Tensor, indexes: Sequence[Value], text: str) -> Value:
    offsets, remaining = resolve_offsets(tensor, indexes, text)
    if not remaining:
        if offsets.size == 1:
            return make_number(float(tensor.data[offsets[0]]))
        return make_tensor((offsets.size,), tensor.data[offsets])
    cells = tensor.data[_block_cells(offsets, remaining)]
    if offsets.size == 1:
        return make_tensor(remaining, cells)
    return make_tensor((offsets.size,) + remaining, cells)


def write_index(tensor: Tensor, indexes: Sequence[Value], rhs: Value, text: str) -> None:
    """Store ``rhs`` into the selected cells of ``tensor`` in place."""
    offsets, remaining = resolve_offsets(tensor, indexes, text)
    if not remaining:
        if rhs.type == TYPE_NUMBER:
            tensor.data[offsets] = rhs.value
            return
        if rhs.type != TYPE_TENSOR:
            raise LangRuntimeError("rhs must be a number or tensor", kind=TYPE_MISMATCH)
        if rhs.value.size != offsets.size:
            raise LangRuntimeError(
                f"rhs of {text} needs the same number of elements as indices ({offsets.size}), "
                f"instead {rhs.value.size} were provided",
                kind=SHAPE_MISMATCH,
            )
        tensor.data[offsets] = rhs.value.data
        return

    cells = _block_cells(offsets, remaining)
    if rhs.type == TYPE_NUMBER:
        tensor.data[cells] = rhs.value
        return
    if rhs.type != TYPE_TENSOR:
        raise LangRuntimeError("rhs must be a number or tensor", kind=TYPE_MISMATCH)
    source: Tensor = rhs.value
    if source.shape == remaining:
        tensor.data[cells] = np.tile(source.data, offsets.size)
    elif source.shape == (offsets.size,) + remaining:
        tensor.data[cells] = source.data
    else:
        raise LangRuntimeError(
            f"rhs must be a tensor with shape {format_shape(remaining, 'x')}",
            kind=SHAPE_MISMATCH,
        )
