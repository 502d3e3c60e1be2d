from __future__ import annotations
from typing import Dict, List, Optional

from lexer import CalcError
from operators import apply_binary
from parser import ASSIGN_DECLARE, ASSIGN_DECREMENT, ASSIGN_INCREMENT
from values import REDECLARED_VARIABLE, UNDECLARED_VARIABLE, LangRuntimeError, Value, value_to_string


class Binding:
    """One variable's storage, shared by every frame and closure that holds it."""

    __slots__ = ("value",)

    def __init__(self, value: Value) -> None:
        self.value = value

    def __repr__(self) -> str:
        return f"Binding({self.value!r})"


class ScopeStack:
    """Stack of name -> Binding frames.

    Popped frames stay allocated and are cleared when pushed again, so deep
    loops and recursive calls do not allocate a new dict per frame.
    """

    def __init__(self) -> None:
        self.frames: List[Dict[str, Binding]] = [{}]
        self.top = 0

    @property
    def depth(self) -> int:
        return self.top + 1

    def push_frame(self) -> None:
        if self.top == len(self.frames) - 1:
            self.frames.append({})
        self.top += 1
        self.frames[self.top].clear()

    def pop_frame(self) -> None:
        if self.top == 0:
            raise CalcError("cannot pop the global frame")
        self.top -= 1

    def lookup(self, name: str) -> Optional[Binding]:
        for i in range(self.top, -1, -1):
            binding = self.frames[i].get(name)
            if binding is not None:
                return binding
        return None

    def get(self, name: str) -> Optional[Value]:
        binding = self.lookup(name)
        if binding is None:
            return None
        return binding.value

    def has(self, name: str) -> bool:
        return self.lookup(name) is not None

    def declare(self, name: str, value: Value) -> Binding:
        binding = Binding(value)
        self.install(name, binding)
        return binding

    def install(self, name: str, binding: Binding) -> None:
        frame = self.frames[self.top]
        existing = frame.get(name)
        if existing is not None:
            raise LangRuntimeError(
                f"variable {name} already defined, with value: {value_to_string(existing.value)}",
                kind=REDECLARED_VARIABLE,
            )
        frame[name] = binding

    def assign(self, name: str, value: Value, assign_type: str) -> Value:
        """Apply ``=``, ``:=``, ``+=`` or ``-=`` and return the stored value."""
        if assign_type == ASSIGN_DECLARE:
            self.declare(name, value)
            return value
        binding = self.lookup(name)
        if binding is None:
            raise LangRuntimeError(f"couldn't set {name}, it wasn't found anywhere", kind=UNDECLARED_VARIABLE)
        if assign_type == ASSIGN_INCREMENT:
            value = apply_binary("+", binding.value, value)
        elif assign_type == ASSIGN_DECREMENT:
            value = apply_binary("-", binding.value, value)
        binding.value = value
        return value

    def snapshot(self) -> Dict[str, str]:
        """Visible names rendered as ``TYPE:text``, innermost binding winning."""

        def _render(value: Value) -> str:
            rendered = value_to_string(value).replace("\n", " ")
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            return f"{value.type}:{rendered}"

        visible: Dict[str, Binding] = {}
        for i in range(self.top + 1):
            visible.update(self.frames[i])
        return {name: _render(binding.value) for name, binding in visible.items()}
