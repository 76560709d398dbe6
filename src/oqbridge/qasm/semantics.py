# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
import enum
from dataclasses import dataclass, field
from typing import Optional

from openqasm3 import ast
from openqasm3.visitor import QASMVisitor

from oqbridge.exceptions import QASM3ImporterError
from oqbridge.qasm.nodes import hardware_index, position, type_size
from oqbridge.utils.logger import get_default_logger

log = get_default_logger()

BUILTIN_CONSTANTS = {
    "pi": "pi",
    "π": "pi",
    "tau": "tau",
    "τ": "tau",
    "euler": "euler",
    "ℇ": "euler",
}
"""Builtin constant spellings, mapped to their canonical name."""

BUILTIN_FUNCTIONS = ("sin", "cos", "tan", "arcsin", "arccos", "arctan", "exp", "ln", "sqrt")


@dataclass
class Diagnostic:
    """A problem reported by the front-end, with the source span it applies to."""

    message: str
    span: Optional[ast.Span] = None

    @property
    def position(self) -> Optional[tuple[int, int]]:
        return position(self)

    def __str__(self):
        if self.position is None:
            return self.message
        return f"{self.position[0]}:{self.position[1]}: {self.message}"


class Scope(enum.Enum):
    """Types of scope in OpenQASM 3 programs."""

    GLOBAL = enum.auto()
    GATE = enum.auto()
    LOCAL = enum.auto()
    BUILTIN = enum.auto()


class SymbolKind(enum.Enum):
    QUBIT = enum.auto()
    BIT = enum.auto()
    VARIABLE = enum.auto()
    CONSTANT = enum.auto()
    INPUT = enum.auto()
    OUTPUT = enum.auto()
    ALIAS = enum.auto()
    GATE = enum.auto()
    LOOP_VARIABLE = enum.auto()


class Symbol:
    """A name declared by the program, together with the node that declared it."""

    __slots__ = ("name", "kind", "scope", "definer")

    def __init__(
        self,
        name: str,
        kind: SymbolKind,
        scope: Scope,
        definer: Optional[ast.QASMNode] = None,
    ):
        self.name = name
        self.kind = kind
        self.scope = scope
        self.definer = definer

    def __repr__(self):
        return f"Symbol(name={self.name}, kind={self.kind}, scope={self.scope})"


@dataclass
class SymbolTable:
    """
    Global view of a program: the symbols declared at global scope in declaration
    order, the library includes, the hardware qubits addressed anywhere, and the
    program inputs.
    """

    symbols: dict[str, Symbol] = field(default_factory=dict)
    includes: list[str] = field(default_factory=list)
    hardware_qubits: list[int] = field(default_factory=list)
    inputs: list[str] = field(default_factory=list)

    def __contains__(self, name: str) -> bool:
        return name in self.symbols

    def __getitem__(self, name: str) -> Symbol:
        return self.symbols[name]

    def lookup(self, name: str) -> Optional[Symbol]:
        return self.symbols.get(name, None)


@dataclass
class SemanticResult:
    """Outcome of :func:`analyse`. Coerces to ``True`` when no diagnostics were raised."""

    program: ast.Program
    symbol_table: SymbolTable
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def __bool__(self):
        return len(self.diagnostics) == 0

    def raise_for_errors(self):
        if self.diagnostics:
            for diagnostic in self.diagnostics:
                log.error(f"OpenQASM 3 diagnostic: {diagnostic}")
            raise QASM3ImporterError(
                "errors during semantic analysis; see logged errors", self.diagnostics
            )


class SemanticAnalyser(QASMVisitor):
    """
    Checks declarations and name usage of a parsed program and builds its
    :class:`SymbolTable`. The analyser never raises on program errors; everything it
    finds is recorded as a :class:`Diagnostic`.
    """

    def __init__(self):
        self.symbol_table = SymbolTable()
        self.diagnostics: list[Diagnostic] = []
        self._scopes: list[tuple[Scope, dict[str, Symbol]]] = []

    def analyse(self, program: ast.Program) -> SemanticResult:
        if program.version is not None and program.version.split(".")[0] != "3":
            self._report(f"unsupported OpenQASM version '{program.version}'", program)
        self._scopes = [(Scope.GLOBAL, self.symbol_table.symbols)]
        for statement in program.statements:
            self.visit(statement)
        return SemanticResult(program, self.symbol_table, self.diagnostics)

    def _report(self, message: str, node: Optional[ast.QASMNode]):
        self.diagnostics.append(Diagnostic(message, None if node is None else node.span))

    @property
    def _scope(self) -> Scope:
        return self._scopes[-1][0]

    def _declare(self, identifier: ast.Identifier, kind: SymbolKind, definer):
        name = identifier.name
        scope, symbols = self._scopes[-1]
        if name in symbols:
            self._report(f"'{name}' is already declared in this scope", identifier)
            return
        if name in BUILTIN_CONSTANTS:
            self._report(f"cannot redeclare builtin constant '{name}'", identifier)
            return
        symbols[name] = Symbol(name, kind, scope, definer)

    def _lookup(self, name: str) -> Optional[Symbol]:
        in_gate = False
        for scope, symbols in reversed(self._scopes):
            if (symbol := symbols.get(name, None)) is not None:
                if in_gate and symbol.kind not in (SymbolKind.CONSTANT, SymbolKind.GATE):
                    return None
                return symbol
            in_gate = in_gate or scope is Scope.GATE
        return None

    def _push(self, scope: Scope):
        self._scopes.append((scope, {}))

    def _pop(self):
        self._scopes.pop()

    def _visit_block(self, statements: list[ast.Statement], scope=Scope.LOCAL):
        self._push(scope)
        for statement in statements:
            self.visit(statement)
        self._pop()

    def _require_global(self, what: str, node: ast.QASMNode):
        if self._scope is not Scope.GLOBAL:
            self._report(f"{what} must be declared at global scope", node)

    def visit_Include(self, node: ast.Include):
        self._require_global("includes", node)
        if node.filename not in self.symbol_table.includes:
            self.symbol_table.includes.append(node.filename)

    def visit_QubitDeclaration(self, node: ast.QubitDeclaration):
        self._require_global("qubits", node)
        if node.size is not None:
            self.visit(node.size)
        self._declare(node.qubit, SymbolKind.QUBIT, node)

    def visit_ClassicalDeclaration(self, node: ast.ClassicalDeclaration):
        self._visit_type(node.type)
        if node.init_expression is not None:
            self.visit(node.init_expression)
        if isinstance(node.type, ast.BitType):
            kind = SymbolKind.BIT
        else:
            kind = SymbolKind.VARIABLE
        self._declare(node.identifier, kind, node)

    def visit_ConstantDeclaration(self, node: ast.ConstantDeclaration):
        self._visit_type(node.type)
        self.visit(node.init_expression)
        self._declare(node.identifier, SymbolKind.CONSTANT, node)

    def visit_IODeclaration(self, node: ast.IODeclaration):
        self._require_global("inputs and outputs", node)
        self._visit_type(node.type)
        if node.io_identifier is ast.IOKeyword.input:
            kind = SymbolKind.INPUT
            self.symbol_table.inputs.append(node.identifier.name)
        else:
            kind = SymbolKind.OUTPUT
        self._declare(node.identifier, kind, node)

    def _visit_type(self, node: ast.ClassicalType):
        if (size := type_size(node)) is not None:
            self.visit(size)

    def visit_AliasStatement(self, node: ast.AliasStatement):
        self.visit(node.value)
        self._declare(node.target, SymbolKind.ALIAS, node)

    def visit_QuantumGateDefinition(self, node: ast.QuantumGateDefinition):
        self._require_global("gates", node)
        self._declare(node.name, SymbolKind.GATE, node)
        self._push(Scope.GATE)
        for argument in node.arguments:
            self._declare(argument, SymbolKind.CONSTANT, node)
        for qubit in node.qubits:
            self._declare(qubit, SymbolKind.QUBIT, node)
        for statement in node.body:
            if isinstance(
                statement,
                (
                    ast.QubitDeclaration,
                    ast.ClassicalDeclaration,
                    ast.IODeclaration,
                    ast.QuantumMeasurementStatement,
                    ast.QuantumReset,
                ),
            ):
                self._report(
                    f"'{type(statement).__name__}' is not allowed in a gate body", statement
                )
            self.visit(statement)
        self._pop()

    def visit_QuantumGate(self, node: ast.QuantumGate):
        for modifier in node.modifiers:
            if modifier.argument is not None:
                self.visit(modifier.argument)
        for argument in node.arguments:
            self.visit(argument)
        for qubit in node.qubits:
            self.visit(qubit)

    def visit_QuantumMeasurementStatement(self, node: ast.QuantumMeasurementStatement):
        self.visit(node.measure)
        if node.target is not None:
            self.visit(node.target)

    def visit_QuantumMeasurement(self, node: ast.QuantumMeasurement):
        self.visit(node.qubit)

    def visit_QuantumPhase(self, node: ast.QuantumPhase):
        for modifier in node.modifiers:
            if modifier.argument is not None:
                self.visit(modifier.argument)
        self.visit(node.argument)
        for qubit in node.qubits:
            self.visit(qubit)

    def visit_QuantumReset(self, node: ast.QuantumReset):
        self.visit(node.qubits)

    def visit_QuantumBarrier(self, node: ast.QuantumBarrier):
        for qubit in node.qubits:
            self.visit(qubit)

    def visit_ClassicalAssignment(self, node: ast.ClassicalAssignment):
        self.visit(node.lvalue)
        self.visit(node.rvalue)
        target = node.lvalue
        if isinstance(target, ast.IndexedIdentifier):
            target = target.name
        if isinstance(target, ast.Identifier) and (symbol := self._lookup(target.name)):
            if symbol.kind in (
                SymbolKind.CONSTANT,
                SymbolKind.INPUT,
                SymbolKind.LOOP_VARIABLE,
            ):
                self._report(f"cannot assign to '{target.name}'", node)

    def visit_BranchingStatement(self, node: ast.BranchingStatement):
        self.visit(node.condition)
        self._visit_block(node.if_block)
        self._visit_block(node.else_block)

    def visit_ForInLoop(self, node: ast.ForInLoop):
        self.visit(node.set_declaration)
        self._push(Scope.LOCAL)
        self._declare(node.identifier, SymbolKind.LOOP_VARIABLE, node)
        for statement in node.block:
            self.visit(statement)
        self._pop()

    def visit_WhileLoop(self, node: ast.WhileLoop):
        self.visit(node.while_condition)
        self._visit_block(node.block)

    def visit_Identifier(self, node: ast.Identifier):
        if node.name in BUILTIN_CONSTANTS:
            return
        if self._lookup(node.name) is None:
            self._report(f"'{node.name}' is not defined in this scope", node)

    def visit_HardwareQubit(self, node: ast.HardwareQubit):
        if any(scope is Scope.GATE for scope, _ in self._scopes):
            self._report("hardware qubits cannot be used in a gate body", node)
        index = hardware_index(node)
        if index not in self.symbol_table.hardware_qubits:
            self.symbol_table.hardware_qubits.append(index)

    def _visit_index(self, index: ast.IndexElement):
        if isinstance(index, ast.DiscreteSet):
            self.visit(index)
        else:
            for element in index:
                self.visit(element)

    def visit_IndexedIdentifier(self, node: ast.IndexedIdentifier):
        self.visit(node.name)
        for index in node.indices:
            self._visit_index(index)

    def visit_IndexExpression(self, node: ast.IndexExpression):
        self.visit(node.collection)
        self._visit_index(node.index)

    def visit_FunctionCall(self, node: ast.FunctionCall):
        if node.name.name not in BUILTIN_FUNCTIONS:
            self._report(f"unknown function '{node.name.name}'", node)
        for argument in node.arguments:
            self.visit(argument)

    def visit_RangeDefinition(self, node: ast.RangeDefinition):
        for part in (node.start, node.step, node.end):
            if part is not None:
                self.visit(part)

    def visit_DiscreteSet(self, node: ast.DiscreteSet):
        for value in node.values:
            self.visit(value)

    def visit_UnaryExpression(self, node: ast.UnaryExpression):
        self.visit(node.expression)

    def visit_BinaryExpression(self, node: ast.BinaryExpression):
        self.visit(node.lhs)
        self.visit(node.rhs)

    visit_Concatenation = visit_BinaryExpression

    def generic_visit(self, node, context=None):
        # Literals carry no names.
        return None


def analyse(program: ast.Program) -> SemanticResult:
    """Runs semantic analysis over a parsed program."""
    result = SemanticAnalyser().analyse(program)
    result.symbol_table.hardware_qubits.sort()
    log.debug(
        f"Semantic analysis found {len(result.symbol_table.symbols)} global symbols and "
        f"{len(result.diagnostics)} diagnostics."
    )
    return result
