import pytest

from captures import find_captures
from lexer import CalcError
from parser import ASSIGN_DECLARE, ASSIGN_DECREMENT, ASSIGN_INCREMENT, ASSIGN_SET, parse_program
from scope import Binding, ScopeStack
from values import (
    REDECLARED_VARIABLE,
    UNDECLARED_VARIABLE,
    LangRuntimeError,
    make_list,
    make_number,
)

BUILTINS = {"sin", "cos", "len"}


def test_lookup_goes_innermost_first():
    scopes = ScopeStack()
    scopes.declare("x", make_number(1))
    scopes.push_frame()
    scopes.declare("x", make_number(2))
    assert scopes.get("x").value == 2
    scopes.pop_frame()
    assert scopes.get("x").value == 1


def test_redeclare_in_same_frame_names_existing_value():
    scopes = ScopeStack()
    scopes.declare("y", make_number(3))
    with pytest.raises(LangRuntimeError) as exc:
        scopes.assign("y", make_number(3), ASSIGN_DECLARE)
    assert exc.value.kind == REDECLARED_VARIABLE
    assert exc.value.message == "variable y already defined, with value: 3"


def test_pushed_frames_are_reused_and_cleared():
    scopes = ScopeStack()
    scopes.push_frame()
    first = scopes.frames[scopes.top]
    scopes.declare("tmp", make_number(1))
    scopes.pop_frame()
    scopes.push_frame()
    assert scopes.frames[scopes.top] is first
    assert not scopes.has("tmp")
    assert scopes.depth == 2


def test_cannot_pop_global_frame():
    with pytest.raises(CalcError):
        ScopeStack().pop_frame()


def test_set_updates_innermost_binding():
    scopes = ScopeStack()
    scopes.declare("x", make_number(1))
    scopes.push_frame()
    stored = scopes.assign("x", make_number(5), ASSIGN_SET)
    scopes.pop_frame()
    assert stored.value == 5
    assert scopes.get("x").value == 5


def test_set_unknown_name():
    with pytest.raises(LangRuntimeError) as exc:
        ScopeStack().assign("nope", make_number(1), ASSIGN_SET)
    assert exc.value.kind == UNDECLARED_VARIABLE
    assert exc.value.message == "couldn't set nope, it wasn't found anywhere"


def test_increment_and_decrement_go_through_operators():
    scopes = ScopeStack()
    scopes.declare("x", make_number(10))
    assert scopes.assign("x", make_number(5), ASSIGN_INCREMENT).value == 15
    assert scopes.assign("x", make_number(1), ASSIGN_DECREMENT).value == 14
    items = make_list([])
    scopes.declare("items", items)
    scopes.assign("items", make_number(1), ASSIGN_INCREMENT)
    assert scopes.get("items") is items
    assert len(items.value.items) == 1


def test_installed_binding_is_shared():
    scopes = ScopeStack()
    binding = scopes.declare("i", make_number(0))
    scopes.push_frame()
    scopes.install("i", binding)
    scopes.assign("i", make_number(4), ASSIGN_SET)
    scopes.pop_frame()
    assert binding.value.value == 4
    assert scopes.get("i").value == 4


def test_snapshot_shows_visible_names():
    scopes = ScopeStack()
    scopes.declare("x", make_number(1))
    scopes.push_frame()
    scopes.declare("x", make_number(2))
    scopes.declare("y", make_number(3))
    assert scopes.snapshot() == {"x": "NUMBER:2", "y": "NUMBER:3"}


def definition(src: str):
    node = parse_program(src).statements[-1]
    params = [arg.name for arg in node.lhs.args]
    return params, node.rhs


def captured_names(src: str, scopes: ScopeStack):
    params, body = definition(src)
    return [name for name, _ in find_captures(params, body, scopes, BUILTINS)]


def outer(*names):
    scopes = ScopeStack()
    for name in names:
        scopes.declare(name, make_number(1))
    return scopes


def test_captures_free_names_in_first_use_order():
    scopes = outer("i", "k", "unused")
    assert captured_names("f(x) := { k * x + i + k }", scopes) == ["k", "i"]


def test_captures_keep_the_outer_binding():
    scopes = outer("i")
    params, body = definition("f(x) := { i += x; i }")
    [(name, binding)] = find_captures(params, body, scopes, BUILTINS)
    assert name == "i"
    assert binding is scopes.lookup("i")


def test_parameters_are_not_captured():
    assert captured_names("f(x, y) := x * y", outer("x", "y")) == []


def test_locals_declared_before_use_are_not_captured():
    scopes = outer("sum", "funcs")
    src = "g(x) := { sum := 0; for i := 0; i < len(funcs); i += 1 { f := funcs[i]; sum += f(x) }; sum }"
    assert captured_names(src, scopes) == ["funcs"]


def test_use_before_local_declaration_is_captured():
    assert captured_names("f(x) := { y := y + x; y }", outer("y")) == ["y"]


def test_local_declaration_ends_with_its_block():
    scopes = outer("t")
    assert captured_names("f(x) := { { t := 1 }; t }", scopes) == ["t"]


def test_builtins_and_constants_are_not_captured():
    scopes = outer("sin")
    assert captured_names("f(x) := sin(x) * PI", scopes) == []


def test_unresolved_names_are_left_for_call_time():
    assert captured_names("fib(x) := x <= 1 ? 1 : fib(x - 1) + fib(x - 2)", ScopeStack()) == []


def test_nested_definition_parameters_are_local():
    scopes = outer("a", "z")
    assert captured_names("f(x) := { g(z) := z + a; g(x) }", scopes) == ["a"]


def test_binding_repr():
    assert repr(Binding(make_number(2))).startswith("Binding(")
