from __future__ import annotations
from typing import Collection, List, Set, Tuple

from parser import (
    ASSIGN_DECLARE,
    Assignment,
    Block,
    BuiltinConstant,
    ForLoop,
    FunctionCall,
    Identifier,
    Node,
    child_nodes,
)
from scope import Binding, ScopeStack


def parameter_names(call: FunctionCall) -> List[str]:
    return [arg.name for arg in call.args if isinstance(arg, Identifier)]


class CaptureAnalyzer:
    """Find the free variables of a function body at definition time.

    A name is free unless it is a parameter, a builtin, or was declared with
    ``:=`` earlier in a block that is still open. Free names that resolve in
    the defining scope are captured as their Binding, so the closure and the
    outer scope keep sharing one variable. Names that do not resolve yet
    (a function calling itself, for one) are looked up when the function
    runs.
    """

    def __init__(self, scopes: ScopeStack, builtin_names: Collection[str]) -> None:
        self.scopes = scopes
        self.builtin_names = builtin_names

    def analyze(self, params: List[str], body: Node) -> List[Tuple[str, Binding]]:
        self._captures: List[Tuple[str, Binding]] = []
        self._seen: Set[str] = set()
        self._locals: List[Set[str]] = [set(params)]
        self._walk(body)
        return self._captures

    def _is_local(self, name: str) -> bool:
        return any(name in names for names in self._locals)

    def _reference(self, name: str) -> None:
        if name in self._seen or name in self.builtin_names or self._is_local(name):
            return
        binding = self.scopes.lookup(name)
        if binding is None:
            return
        self._seen.add(name)
        self._captures.append((name, binding))

    def _walk_scoped(self, names: Set[str], nodes: List[Node]) -> None:
        self._locals.append(names)
        try:
            for node in nodes:
                self._walk(node)
        finally:
            self._locals.pop()

    def _walk(self, node: Node) -> None:
        if isinstance(node, Identifier):
            self._reference(node.name)
        elif isinstance(node, BuiltinConstant):
            return
        elif isinstance(node, Assignment):
            self._walk_assignment(node)
        elif isinstance(node, Block):
            self._walk_scoped(set(), node.body)
        elif isinstance(node, ForLoop):
            self._walk_scoped(set(), [*node.initializers, node.condition, *node.steps, node.body])
        elif isinstance(node, FunctionCall):
            self._reference(node.name.name)
            for arg in node.args:
                self._walk(arg)
        else:
            for child in child_nodes(node):
                self._walk(child)

    def _walk_assignment(self, node: Assignment) -> None:
        lhs = node.lhs
        if isinstance(lhs, FunctionCall):
            # nested function definition
            if node.assign_type == ASSIGN_DECLARE:
                self._locals[-1].add(lhs.name.name)
            else:
                self._reference(lhs.name.name)
            self._walk_scoped(set(parameter_names(lhs)), [node.rhs])
            return
        if node.assign_type == ASSIGN_DECLARE and isinstance(lhs, Identifier):
            # The right side still sees the outer name: x := x + 1
            self._walk(node.rhs)
            self._locals[-1].add(lhs.name)
            return
        self._walk(lhs)
        self._walk(node.rhs)


def find_captures(
    params: List[str], body: Node, scopes: ScopeStack, builtin_names: Collection[str]
) -> List[Tuple[str, Binding]]:
    return CaptureAnalyzer(scopes, builtin_names).analyze(params, body)
