import json
import math

import numpy as np
import pytest

from interpreter import EvalOptions, ErrorFormatter, Interpreter, ProgramContext, evaluate_program
from values import (
    ARITY_MISMATCH,
    INDEX_OUT_OF_BOUNDS,
    INVALID_LVALUE,
    ITERATION_LIMIT_EXCEEDED,
    PARSE_ERROR,
    RECURSION_LIMIT_EXCEEDED,
    SHAPE_MISMATCH,
    TYPE_ERROR,
    TYPE_LIST,
    TYPE_MISMATCH,
    TYPE_NUMBER,
    TYPE_TENSOR,
    UNDECLARED_VARIABLE,
    value_to_string,
)


def run(src: str, **options):
    return evaluate_program(src, EvalOptions(**options))


def result_text(src: str) -> str:
    return value_to_string(run(src).program_result)


def same_text(actual: str, expected: str) -> bool:
    return "".join(actual.split()) == "".join(expected.split())


def assert_ok(ctx, expected=None):
    assert not ctx.errors, [e.value.message for e in ctx.errors]
    if expected is not None:
        assert ctx.program_result.type == TYPE_NUMBER
        assert ctx.program_result.value == expected


def assert_error(ctx, kind: str, contains: str = ""):
    result = ctx.program_result
    assert result.type == TYPE_ERROR, f"expected an error, got {value_to_string(result)!r}"
    assert result.value.kind == kind
    assert contains in result.value.message, result.value.message


# ---- whole programs


@pytest.mark.parametrize(
    "src, expected",
    [
        ("1 + 2 * 3 + 4^(sin(PI/2)*2)", "23"),
        ("fib(x) := x <= 1 ? 1 : fib(x - 1) + fib(x-2)\n\nfib(10)", "89"),
        ("// was failing for the longest time\n-1 + 1", "0"),
        ("1 * 2 + 3 * 2^2", "14"),
        ("2^(1+1) + (2 * 3)", "10"),
        ("x := 3;\ny := 33 * x;\nx = y * x + x", "300"),
        ("y := 3; y := 3", "variable y already defined, with value: 3"),
        ("sin(PI) + cos(PI)", "-0.9999999999999999"),
        ("sin(x)", "the variable x hasn't been declared yet. You can do something like x := 2; to declare it."),
        ("x := // 324234 * sin(x)\n3; x", "3"),
        ("0 ? 100 : 2^2", "4"),
        ("x := 0;\nfor i := 0; i < 5; i=i+1 { x = x + 1; }\nx", "5"),
        ("x := 0;\nfor i := 0; i < 5; i=i+1 { x = x + 1; }\nfor i := 0; i < 5; i=i+1 { x = x + 1; }\nx", "10"),
        ("x := [[1,2,3], [4,5,6]]; x[1][0]", "4"),
        ("f(x) := x^2\ng(y, func) := 2 * func(y)\ng(2, f)", "8"),
        ("x := 2 * {\n\ty := 0;\n    for i := 0; i < 10; i = i+1 {\n        y += 1\n    }\n    y\n};\n\nx", "20"),
        ('"<p onclick=\'alert(\\"efaf\\")\'>dasdas</p>"', "<p onclick='alert(\"efaf\")'>dasdas</p>"),
        ("2^3^2", "64"),
        ("lunch := 12:15pm; lunch - 7:30am", "285"),
        ("s := \"ab\"; s += \"cd\"; s", "abcd"),
        ("1 / 0", "Infinity"),
        ("0 / 0", "NaN"),
    ],
)
def test_program_results(src, expected):
    assert result_text(src) == expected


@pytest.mark.parametrize(
    "src, expected",
    [
        ("[[1, 2, 3], [1, 2, 3]]", "shape: 2x3, data: [[1, 2, 3], [1, 2, 3]]"),
        ("[[1,2,3],[4,5,6]][0]", "shape: 3, data: [1, 2, 3]"),
        ("x := T(3,3); x[[[0,0],[1,1],[2,2]]] = [1,1,1]; x", "shape: 3x3, data: [[1, 0, 0], [0, 1, 0], [0, 0, 1]]"),
        ("x := [1,2,3]; x[0]=2; x\nx = T(2,3); x[0] = [1,2,3]; x", "shape: 2x3, data: [[1, 2, 3], [0, 0, 0]]"),
        (
            "A:= [[1,  2,  3],\n\t [1,  2,  3],\n\t [2,  4,  6]]\n~A",
            "shape: 3x3, data: \t[[1,  1,  2], \t [2,  2,  4], \t [3,  3,  6]]",
        ),
        (
            "[[[1,2,3],[4,5,6]], [[4,4,4],[4,5,6]]][[0, 1]]",
            "shape: 2x2x3, data: [[[1, 2, 3], [4, 5, 6]], [[4, 4, 4], [4, 5, 6]]]",
        ),
        ("[1, 2, 3] + [1]", "shape: 3, data: [2, 3, 4]"),
        ("-[1, -2]", "shape: 2, data: [-1, 2]"),
    ],
)
def test_tensor_program_results(src, expected):
    text = result_text(src)
    assert same_text(text, expected), text


def test_contexts_start_with_an_empty_result():
    assert value_to_string(ProgramContext("").program_result) == "{}"
    assert value_to_string(run("").program_result) == "{}"


def test_identity_matrix_for_loop():
    ctx = run("x := T(10, 10);\nfor i:=0; i < 10; i = i+1 {\n\tx[i][i]=1\n}\n\nx")
    assert_ok(ctx)
    tensor = ctx.program_result.value
    assert tensor.shape == (10, 10)
    assert np.array_equal(tensor.data.reshape(10, 10), np.eye(10))


def test_identity_times_vector():
    ctx = run("A := I(4);\n\nv := [1,2,3,4]\n\nA ** v")
    assert_ok(ctx)
    assert ctx.program_result.type == TYPE_TENSOR
    assert ctx.program_result.value.shape == (4,)
    assert ctx.program_result.value.data.tolist() == [1, 2, 3, 4]


def test_matrix_multiply_then_transpose():
    src = """
line := ~[
    [1, 1],
    [1, 1],
    [1, 1],
    [1, 1],
]
A := [[1, 0],
      [0, 0]]
print(A)
print(~A)
print(line)
~(A ** line)
"""
    ctx = run(src)
    assert_ok(ctx)
    mat = ctx.program_result.value
    assert mat.shape == (4, 2)
    assert mat.data.reshape(4, 2)[:, 0].tolist() == [1, 1, 1, 1]
    assert mat.data.reshape(4, 2)[:, 1].tolist() == [0, 0, 0, 0]
    assert [r.payload.title for r in ctx.results] == ["A", None, "line"]


def test_variable_shadowed_by_loop_counter():
    src = "x := 1\nx = 2\ni := -42\nfor i := 0; i < 3; i=i+1 {\n\tprint(i)\n}\ni"
    ctx = run(src)
    assert_ok(ctx, -42)
    assert [r.payload.value.value for r in ctx.results] == [0, 1, 2]


def test_every_statement_runs_after_an_error():
    ctx = run("a := 1\nb := nope\nc := a + 1\nc")
    assert len(ctx.errors) == 1
    assert ctx.errors[0].value.kind == UNDECLARED_VARIABLE
    assert ctx.program_result.value == 2


def test_assignment_returns_stored_value():
    ctx = run("x := 1; x += 4")
    assert_ok(ctx, 5)


# ---- closures


def test_closure_sees_outer_mutation():
    ctx = run("i := 0\nf(x) := {\n    i += x\n    i\n}\n\nf(4)")
    assert_ok(ctx, 4)
    ctx = run("i := 1; f(x) := x * i; i = 10; f(2)")
    assert_ok(ctx, 20)


def test_closure_mutation_visible_outside():
    ctx = run("i := 0; bump(x) := { i += x }; bump(2); bump(3); i")
    assert_ok(ctx, 5)


def test_closures_from_loop_iterations_keep_their_own_binding():
    src = """
funcs := <>;
for i := 0; i < 3; i+=1 {
    j := i + 1
    f(x) := j * x
    funcs += f;
}
total := 0
for k := 0; k < len(funcs); k += 1 {
    g := funcs[k]
    total += g(10)
}
total
"""
    ctx = run(src)
    assert_ok(ctx, 60)


def test_local_declaration_does_not_leak():
    ctx = run("f(x) := { y := x * 2; y }; f(3); y")
    assert_error(ctx, UNDECLARED_VARIABLE)


def test_arguments_are_evaluated_in_the_callers_scope():
    ctx = run("x := 5; f(x) := x + 1; f(x * 2)")
    assert_ok(ctx, 11)


def test_function_display_text_lists_captures():
    ctx = run("k := 2; f(x) := k * x; f")
    assert value_to_string(ctx.program_result) == "f(x) := k * x where k=2"


def test_function_name_can_be_reassigned():
    ctx = run("f(x) := x; f = 3; f")
    assert_ok(ctx, 3)


# ---- for loops and limits


def test_for_loop_body_errors_are_recorded_per_iteration():
    src = 'print(1 + 1)\n\nfor i := 0; i < 10; i+=1 {\n    print(123123 + "a") // should error\n}\n'
    ctx = run(src)
    assert len(ctx.errors) == 10
    assert all(e.value.message == "the operation NUMBER + STRING doesn't exist yet" for e in ctx.errors)
    assert len(ctx.results) == 1


def test_loop_iteration_limit_is_configurable():
    ctx = run("n := 0; for ; 1; { n += 1 }; n", max_iterations=50)
    assert len(ctx.errors) == 1
    assert ctx.errors[0].value.kind == ITERATION_LIMIT_EXCEEDED
    assert "limiter of 50 iterations" in ctx.errors[0].value.message
    assert ctx.program_result.value == 50


def test_infinite_loop_stops_at_one_million():
    ctx = run("for ; 1; {}")
    assert_error(ctx, ITERATION_LIMIT_EXCEEDED, "1,000,000 iterations per loop")


def test_loop_frame_is_popped_after_limit():
    interpreter = Interpreter("", EvalOptions(max_iterations=3))
    ctx = interpreter.run_source("for i := 0; 1; i += 1 {}")
    assert ctx.scopes.depth == 1
    assert not ctx.scopes.has("i")


def test_condition_must_be_a_number():
    assert_error(run('for ; "yes"; {}'), TYPE_MISMATCH, "condition needs to be a number")
    assert_error(run("[1] ? 1 : 2"), TYPE_MISMATCH, "anything less than 0.5 is false")


def test_recursion_limit():
    ctx = run("down(x) := down(x + 1); down(0)")
    assert_error(ctx, RECURSION_LIMIT_EXCEEDED, "more than 1000 calls deep")
    assert len(ctx.errors) == 1


def test_default_depth_allows_ordinary_recursion():
    assert_ok(run("count(x) := x <= 0 ? 0 : 1 + count(x - 1); count(500)"), 500)


def test_recursion_limit_is_configurable():
    ctx = run("count(x) := x <= 0 ? 0 : 1 + count(x - 1); count(30)", max_call_depth=20)
    assert_error(ctx, RECURSION_LIMIT_EXCEEDED)
    ctx = run("count(x) := x <= 0 ? 0 : 1 + count(x - 1); count(30)", max_call_depth=40)
    assert_ok(ctx, 30)


# ---- errors


def test_chain_propagates_later_operand_error():
    ctx = run("1 + x")
    assert_error(ctx, UNDECLARED_VARIABLE)
    assert len(ctx.errors) == 1


def test_shape_mismatch_error():
    assert_error(run("[1, 2] + [1, 2, 3]"), SHAPE_MISMATCH, "wrong sizes: [2], [3]")


def test_tensor_literal_errors():
    assert_error(run("[]"), SHAPE_MISMATCH, "can't have a zero-length vector")
    assert_error(run("[[1, 2], [1]]"), SHAPE_MISMATCH, "one of the elements of the tensor was the wrong size: [1]")
    assert_error(run('[1, "a"]'), TYPE_MISMATCH, 'bottom level item "a" in tensor not of correct type - STRING')


def test_builtin_name_is_not_a_value():
    assert_error(run("s := sin"), TYPE_MISMATCH, "sin is a builtin function")


@pytest.mark.parametrize(
    "src, kind, message",
    [
        ("sin := 3", INVALID_LVALUE, "a builtin function already exists with this name"),
        ("sin(x) := x", INVALID_LVALUE, "a builtin function already exists with this name"),
        ("PI := 3", INVALID_LVALUE, "PI is a builtin constant"),
        ("1 := 3", INVALID_LVALUE, "can't assign to lhs type Number"),
        ("x := [1]; x[0] := 2", INVALID_LVALUE, "can't declare a new variable inside a thing"),
        ("f(1) := 2", INVALID_LVALUE, "declaration of function f accepts an invalid variable: '1'"),
        ("f(x) += 2", INVALID_LVALUE, "can only be defined with := or ="),
        ("f(x) := x; f(1, 2)", ARITY_MISMATCH, "user defined function f wants 1 arguments, only 2 were provided"),
        ("nope(1)", UNDECLARED_VARIABLE, "function 'nope' not found"),
        ("x := 3; x(1)", TYPE_MISMATCH, "'x' is not a function that can be called"),
        ("x = 3", UNDECLARED_VARIABLE, "couldn't set x, it wasn't found anywhere"),
        ("x := 3; x[0]", TYPE_MISMATCH, "the type NUMBER cannot be indexed yet"),
        ("x := [1, 2]; x[2]", INDEX_OUT_OF_BOUNDS, "index 2 in x[2] was out of bounds"),
        ("-\"a\"", TYPE_MISMATCH, "unary op - can't be used on STRING"),
        ("[1, 2] * 2", TYPE_MISMATCH, "hint: for now you have to put [] around the number"),
    ],
)
def test_runtime_errors(src, kind, message):
    assert_error(run(src), kind, message)


def test_error_is_recorded_once_at_innermost_node():
    ctx = run("f(x) := x + nope; g(x) := f(x) * 2; g(1)")
    assert len(ctx.errors) == 1
    node = ctx.errors[0].value.node
    assert ctx.text[node.start : node.end] == "nope"


def test_parse_error_skips_evaluation():
    ctx = run("print(1)\nx := (1 +")
    assert_error(ctx, PARSE_ERROR, "Couldn't read line 2 pos 1")
    assert ctx.results == []
    assert len(ctx.errors) == 1


# ---- lists


def test_list_indexing_and_assignment():
    ctx = run("l := <1, 2, 3>; l[1] = 5; l[1] += 1; l[1]")
    assert_ok(ctx, 6)


def test_list_append_aliases():
    ctx = run("a := <>; b := a; b += 1; a += 2; len(a) + len(b)")
    assert_ok(ctx, 4)


def test_nested_list_indexing_is_an_error():
    assert_error(run("l := <<1>>; l[0][0]"), TYPE_MISMATCH, "can't index thing inside a thing yet")


def test_tensor_index_increment():
    ctx = run("x := [1, 2, 3]; x[[0, 2]] += [10, 20]; x")
    assert_ok(ctx)
    assert ctx.program_result.value.data.tolist() == [11, 2, 23]


# ---- error formatting


def test_error_formatter_points_at_node():
    ctx = run("x := 1\ny := [1,2] + [1,2,3]")
    text = ErrorFormatter(ctx).format_error(ctx.errors[0])
    assert text.splitlines() == [
        "ShapeMismatch: wrong sizes: [2], [3]",
        "  line 2, col 6",
        "    y := [1,2] + [1,2,3]",
        "         ^",
    ]


def test_verbose_run_records_steps():
    ctx = run("x := 1 + 2\nnope", verbose=True, step_log_limit=5)
    entries = list(ctx.logger.entries)
    assert len(entries) == 5
    assert entries[-1].rule == "Identifier"
    assert entries[-1].line == 2
    assert entries[-1].snippet == "nope"
    text = ErrorFormatter(ctx).format_text(verbose=True)
    assert "Recent steps:" in text


def test_quiet_run_records_nothing():
    assert not run("x := 1 + 2").logger.entries


def test_json_output_is_plain_data():
    ctx = run("x := [1, 2]; print(x); 1 / 0")
    data = json.loads(ErrorFormatter(ctx).to_json())
    assert data["result"] == {"type": "NUMBER", "value": "Infinity"}
    assert data["results"][0]["title"] == "x"
    assert data["results"][0]["value"]["data"] == [1.0, 2.0]
    assert data["errors"] == []
    assert data["variables"]["x"].startswith("TENSOR:")


def test_contexts_are_independent():
    first = run("x := 1")
    second = run("x := 2")
    assert first.scopes.get("x").value == 1
    assert second.scopes.get("x").value == 2


def test_interpreter_keeps_declarations_between_sources():
    interpreter = Interpreter()
    interpreter.run_source("x := 2")
    ctx = interpreter.run_source("x * 21")
    assert ctx.program_result.value == 42
    assert not ctx.errors


def test_lists_render_with_angle_brackets():
    ctx = run("<1, \"a\">")
    assert ctx.program_result.type == TYPE_LIST
    assert value_to_string(ctx.program_result) == "<1,\na>"


def test_nan_comparisons():
    ctx = run("(0 / 0) == (0 / 0)")
    assert_ok(ctx, 0)
    assert math.isnan(run("sqrt(-1)").program_result.value)
