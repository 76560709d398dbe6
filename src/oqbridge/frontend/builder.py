# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
"""
Lowers a validated OpenQASM 3 program to a flat :class:`CircuitIR`.

Blocks are never kept. Loops are unrolled, branches on compile-time values are decided
while building, branches on measurement results become per-instruction conditions and
user gates are inlined into the instruction stream.
"""
import math
from contextlib import contextmanager
from enum import Enum, auto
from typing import Iterator, Mapping, NamedTuple, Optional

from openqasm3 import ast
from openqasm3.printer import dumps
from openqasm3.visitor import QASMVisitor

from oqbridge.config import get_config
from oqbridge.exceptions import BuildError, CircuitError
from oqbridge.ir.circuit import (
    BARRIER,
    MEASURE,
    RESET,
    Alias,
    BitRef,
    CircuitIR,
    Condition,
    Instruction,
    Layout,
    RegisterKind,
)
from oqbridge.ir.gates import GateFactory, GateKind, ResolvedGate
from oqbridge.ir.parameters import (
    FUNCTIONS,
    NAMED_CONSTANTS,
    LiteralValue,
    MathFunction,
    ParameterExpression,
    ParameterRef,
    as_expression,
)
from oqbridge.qasm.nodes import (
    hardware_index,
    identifier_name,
    position,
    type_name,
    type_size,
)
from oqbridge.qasm.semantics import BUILTIN_CONSTANTS, SymbolTable
from oqbridge.utils.logger import get_default_logger

log = get_default_logger()


class ScopeKind(Enum):
    GLOBAL = auto()
    LOCAL = auto()
    GATE = auto()


class BindingKind(Enum):
    QUBITS = auto()
    BITS = auto()
    VARIABLE = auto()
    CONSTANT = auto()
    GATE = auto()


class _Unknown:
    def __repr__(self):
        return "<unknown>"


UNKNOWN = _Unknown()
"""Value of a classical variable whose value depends on runtime data."""


class Binding:
    """
    What a name refers to while building.

    Qubit and bit bindings hold the register elements they cover, already resolved
    through any alias, and the register name when they cover a whole register. Variable
    and constant bindings hold their current value, gate bindings their definition.
    """

    __slots__ = ("name", "kind", "value", "register", "scalar", "type", "depth")

    def __init__(
        self,
        name: str,
        kind: BindingKind,
        value=None,
        register: Optional[str] = None,
        scalar: bool = False,
        type: Optional[ast.ClassicalType] = None,
    ):
        self.name = name
        self.kind = kind
        self.value = value
        self.register = register
        self.scalar = scalar
        self.type = type
        self.depth = 0

    def __repr__(self):
        return f"Binding(name={self.name}, kind={self.kind}, value={self.value})"


class Frame:
    __slots__ = ("kind", "bindings", "qubits")

    def __init__(self, kind: ScopeKind, qubits: tuple[BitRef, ...] = ()):
        self.kind = kind
        self.bindings: dict[str, Binding] = {}
        self.qubits = qubits


class Operand(NamedTuple):
    refs: tuple[BitRef, ...]
    scalar: bool


class RuntimeValueError(BuildError):
    """Raised when a compile-time expression reads a classical bit."""


_INTEGER_TYPES = ("int", "uint")
_FLOAT_TYPES = ("float", "angle")


def _is_integer(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _truncating_division(lhs: int, rhs: int) -> int:
    quotient = abs(lhs) // abs(rhs)
    return quotient if (lhs >= 0) == (rhs > 0) else -quotient


class ExpressionEvaluator(QASMVisitor):
    """
    Evaluates classical expressions against the bindings of a :class:`CircuitBuilder`.
    Numbers come back as Python ``int``, ``float`` or ``bool``; anything reading an
    unbound ``input`` comes back as a :class:`ParameterExpression`.
    """

    def __init__(self, builder: "CircuitBuilder"):
        self.builder = builder

    def generic_visit(self, node, context=None):
        raise BuildError(
            f"'{dumps(node)}' cannot be evaluated at compile time.", position(node)
        )

    def visit_IntegerLiteral(self, node: ast.IntegerLiteral):
        return node.value

    def visit_FloatLiteral(self, node: ast.FloatLiteral):
        return node.value

    def visit_BooleanLiteral(self, node: ast.BooleanLiteral):
        return node.value

    def visit_BitstringLiteral(self, node: ast.BitstringLiteral):
        return node.value

    def visit_Identifier(self, node: ast.Identifier):
        if node.name in BUILTIN_CONSTANTS:
            return NAMED_CONSTANTS[BUILTIN_CONSTANTS[node.name]]
        binding = self.builder.lookup(node.name, node)
        if binding.kind is BindingKind.BITS:
            raise RuntimeValueError(
                f"'{node.name}' is only known at runtime.", position(node)
            )
        if binding.kind not in (BindingKind.VARIABLE, BindingKind.CONSTANT):
            raise BuildError(
                f"'{node.name}' cannot be used in a classical expression.", position(node)
            )
        if binding.value is UNKNOWN:
            raise BuildError(
                f"The value of '{node.name}' is not known at compile time.", position(node)
            )
        return binding.value

    def visit_IndexedIdentifier(self, node: ast.IndexedIdentifier):
        name = identifier_name(node)
        if name is None:
            return self.generic_visit(node)
        binding = self.builder.lookup(name, node)
        if binding.kind is BindingKind.BITS:
            raise RuntimeValueError(f"'{name}' is only known at runtime.", position(node))
        raise BuildError(f"Cannot index '{name}' here.", position(node))

    visit_IndexExpression = visit_IndexedIdentifier

    def visit_UnaryExpression(self, node: ast.UnaryExpression):
        value = self.visit(node.expression)
        op = node.op.name
        if op == "-":
            return -value
        if isinstance(value, ParameterExpression):
            raise BuildError(
                f"Operator '{op}' is not supported on parameters.", position(node)
            )
        if op == "!":
            return not value
        if _is_integer(value):
            return ~value
        raise BuildError("Operator '~' needs an integer operand.", position(node))

    def visit_BinaryExpression(self, node: ast.BinaryExpression):
        return self.apply_binary(
            node.op.name, self.visit(node.lhs), self.visit(node.rhs), node
        )

    def apply_binary(self, op: str, lhs, rhs, node: ast.QASMNode):
        if isinstance(lhs, ParameterExpression) or isinstance(rhs, ParameterExpression):
            if op not in ("+", "-", "*", "/", "**"):
                raise BuildError(
                    f"Operator '{op}' is not supported on parameters.", position(node)
                )
            lhs, rhs = as_expression(lhs), as_expression(rhs)

        if op == "+":
            return lhs + rhs
        if op == "-":
            return lhs - rhs
        if op == "*":
            return lhs * rhs
        if op == "/":
            if _is_integer(lhs) and _is_integer(rhs):
                return _truncating_division(lhs, rhs)
            return lhs / rhs
        if op == "%":
            if _is_integer(lhs) and _is_integer(rhs):
                return int(math.fmod(lhs, rhs))
            return math.fmod(lhs, rhs)
        if op == "**":
            if isinstance(lhs, ParameterExpression):
                return lhs**rhs
            if _is_integer(lhs) and _is_integer(rhs) and rhs >= 0:
                return lhs**rhs
            return math.pow(lhs, rhs)
        if op == "==":
            return lhs == rhs
        if op == "!=":
            return lhs != rhs
        if op == "<":
            return lhs < rhs
        if op == "<=":
            return lhs <= rhs
        if op == ">":
            return lhs > rhs
        if op == ">=":
            return lhs >= rhs
        if op == "&&":
            return bool(lhs) and bool(rhs)
        if op == "||":
            return bool(lhs) or bool(rhs)
        raise BuildError(f"Unsupported operator '{op}'.", position(node))

    def visit_FunctionCall(self, node: ast.FunctionCall):
        name = node.name.name
        if name not in FUNCTIONS or len(node.arguments) != 1:
            raise BuildError(f"Unsupported function call '{dumps(node)}'.", position(node))
        argument = self.visit(node.arguments[0])
        if isinstance(argument, ParameterExpression):
            return MathFunction(function=name, argument=argument)
        return FUNCTIONS[name](argument)


class CircuitBuilder(QASMVisitor):
    """
    Walks a program top to bottom and appends the resulting instructions to a new
    :class:`CircuitIR`.

    :param symbol_table: Symbol table produced by semantic analysis of the program.
    :param gate_factory: Resolves calls to gates the program does not define itself.
    :param parameter_values: Values of the program's ``input`` declarations.
    :param max_loop_iterations: Iteration limit of a single loop. Defaults to the
        configured value.
    """

    def __init__(
        self,
        symbol_table: SymbolTable,
        gate_factory: GateFactory,
        parameter_values: Optional[Mapping[str, float]] = None,
        max_loop_iterations: Optional[int] = None,
    ):
        self.symbol_table = symbol_table
        self.gate_factory = gate_factory
        self.parameter_values = dict(parameter_values or {})
        if max_loop_iterations is None:
            max_loop_iterations = get_config().BUILD.MAX_LOOP_ITERATIONS
        self.max_loop_iterations = max_loop_iterations

        self.circuit = CircuitIR()
        self.evaluator = ExpressionEvaluator(self)
        self._frames: list[Frame] = []
        self._includes: list[str] = []
        self._gate_cache: dict[str, ResolvedGate] = {}
        self._expansion_chain: list[str] = []
        self._condition: Optional[Condition] = None
        self._condition_depth = 0
        self._hardware_register: Optional[str] = None

    def build(self, program: ast.Program) -> CircuitIR:
        unknown = sorted(set(self.parameter_values) - set(self.symbol_table.inputs))
        if unknown:
            log.warning(f"Ignoring values for undeclared inputs {unknown}.")

        self._frames = [Frame(ScopeKind.GLOBAL)]
        if self.symbol_table.hardware_qubits:
            self._allocate_hardware_qubits(self.symbol_table.hardware_qubits)
        for statement in program.statements:
            self._visit_statement(statement)

        log.debug(
            f"Built circuit with {len(self.circuit.registers)} registers and "
            f"{len(self.circuit)} instructions."
        )
        return self.circuit

    # Scopes

    @contextmanager
    def _scope(self, kind: ScopeKind, qubits: tuple[BitRef, ...] = ()) -> Iterator[Frame]:
        frame = Frame(kind, qubits)
        self._frames.append(frame)
        yield frame
        self._frames.pop()

    def _declare(self, binding: Binding, node: ast.QASMNode) -> Binding:
        frame = self._frames[-1]
        if binding.name in frame.bindings:
            raise BuildError(
                f"'{binding.name}' is already declared in this scope.", position(node)
            )
        binding.depth = len(self._frames) - 1
        frame.bindings[binding.name] = binding
        return binding

    def find(self, name: str) -> Optional[Binding]:
        """
        Looks a name up innermost scope first. A gate scope only sees the constants and
        gates of the global scope beyond its own bindings.
        """
        for frame in reversed(self._frames):
            if (binding := frame.bindings.get(name, None)) is not None:
                return binding
            if frame.kind is ScopeKind.GATE:
                binding = self._frames[0].bindings.get(name, None)
                if binding is not None and binding.kind in (
                    BindingKind.CONSTANT,
                    BindingKind.GATE,
                ):
                    return binding
                return None
        return None

    def lookup(self, name: str, node: ast.QASMNode) -> Binding:
        if (binding := self.find(name)) is None:
            raise BuildError(f"'{name}' is not defined in this scope.", position(node))
        return binding

    def _require_global(self, what: str, node: ast.QASMNode):
        if self._frames[-1].kind is not ScopeKind.GLOBAL:
            raise BuildError(f"{what} must be declared at global scope.", position(node))

    # Statements

    def _visit_statement(self, statement: ast.Statement):
        try:
            self.visit(statement)
        except BuildError as e:
            if e.position is None and position(statement) is not None:
                raise BuildError(e.message, position(statement)) from e
            raise
        except (CircuitError, ValueError, TypeError, ArithmeticError) as e:
            raise BuildError(str(e), position(statement)) from e

    def _visit_block(self, statements: list[ast.Statement]):
        with self._scope(ScopeKind.LOCAL):
            for statement in statements:
                self._visit_statement(statement)

    def generic_visit(self, node, context=None):
        raise BuildError(
            f"'{type(node).__name__}' statements are not supported.", position(node)
        )

    def visit_Include(self, node: ast.Include):
        self._require_global("Includes", node)
        if not self.gate_factory.knows_library(node.filename):
            raise BuildError(f"Unknown gate library '{node.filename}'.", position(node))
        if node.filename not in self._includes:
            self._includes.append(node.filename)
            self._gate_cache.clear()

    def _allocate_hardware_qubits(self, indices: list[int]):
        name = "q"
        counter = 0
        while name in self.symbol_table:
            counter += 1
            name = f"q_{counter}"
        size = max(indices) + 1
        self._hardware_register = self.circuit.add_qubits(name, size).name
        self.circuit.layout = Layout(physical_qubits=tuple(range(size)))
        log.debug(f"Allocated {size} physical qubits for hardware qubit references.")

    def _register_name(self, name: str) -> str:
        unique = self.circuit.unique_name(name)
        if unique != name:
            log.debug(f"Register '{name}' is stored in the circuit as '{unique}'.")
        return unique

    def visit_QubitDeclaration(self, node: ast.QubitDeclaration):
        self._require_global("Qubits", node)
        if self._hardware_register is not None:
            raise BuildError(
                "Virtual qubit declarations cannot be mixed with hardware qubits.",
                position(node),
            )
        size = 1 if node.size is None else self.evaluate_int(node.size)
        register = self.circuit.add_qubits(
            self._register_name(node.qubit.name), size, scalar=node.size is None
        )
        self._declare(
            Binding(
                node.qubit.name,
                BindingKind.QUBITS,
                value=tuple(register),
                register=register.name,
                scalar=node.size is None,
            ),
            node,
        )

    def _declare_bits(
        self, identifier: ast.Identifier, type_: ast.ClassicalType, node: ast.QASMNode
    ) -> Binding:
        size_node = type_size(type_)
        size = 1 if size_node is None else self.evaluate_int(size_node)
        register = self.circuit.add_clbits(
            self._register_name(identifier.name), size, scalar=size_node is None
        )
        return self._declare(
            Binding(
                identifier.name,
                BindingKind.BITS,
                value=tuple(register),
                register=register.name,
                scalar=size_node is None,
                type=type_,
            ),
            node,
        )

    def visit_ClassicalDeclaration(self, node: ast.ClassicalDeclaration):
        init = node.init_expression
        if isinstance(node.type, ast.BitType):
            binding = self._declare_bits(node.identifier, node.type, node)
            if isinstance(init, ast.QuantumMeasurement):
                self._measure(
                    self.operand(init.qubit, BindingKind.QUBITS),
                    Operand(binding.value, binding.scalar),
                    node,
                )
            elif init is not None and self.evaluator.visit(init) not in (0, False):
                raise BuildError(
                    "Classical bits can only be initialised to zero or a measurement.",
                    position(node),
                )
            return

        value = UNKNOWN
        if isinstance(init, ast.QuantumMeasurement):
            raise BuildError(
                f"Cannot store a measurement in a variable of type "
                f"'{type_name(node.type)}'.",
                position(node),
            )
        if init is not None:
            value = self._coerce(self._evaluate_or_unknown(init), node.type, node)
        self._declare(
            Binding(node.identifier.name, BindingKind.VARIABLE, value, type=node.type), node
        )

    def visit_ConstantDeclaration(self, node: ast.ConstantDeclaration):
        if isinstance(node.type, ast.BitType):
            raise BuildError("Constant bits are not supported.", position(node))
        value = self._coerce(self.evaluator.visit(node.init_expression), node.type, node)
        self._declare(
            Binding(node.identifier.name, BindingKind.CONSTANT, value, type=node.type), node
        )

    def visit_IODeclaration(self, node: ast.IODeclaration):
        self._require_global("Inputs and outputs", node)
        name = node.identifier.name
        if node.io_identifier is ast.IOKeyword.output:
            if isinstance(node.type, ast.BitType):
                self._declare_bits(node.identifier, node.type, node)
            else:
                self._declare(
                    Binding(name, BindingKind.VARIABLE, UNKNOWN, type=node.type), node
                )
            return

        if isinstance(node.type, ast.BitType):
            raise BuildError("Inputs of type 'bit' are not supported.", position(node))
        if name in self.parameter_values:
            value = self._coerce(self.parameter_values[name], node.type, node)
        elif type_name(node.type) in _FLOAT_TYPES:
            value = ParameterRef(name=name)
        else:
            value = UNKNOWN
        self._declare(Binding(name, BindingKind.VARIABLE, value, type=node.type), node)

    def visit_AliasStatement(self, node: ast.AliasStatement):
        operand = self._alias_operand(node.value)
        kinds = {self.circuit.kind_of(ref) for ref in operand.refs}
        if len(kinds) > 1:
            raise BuildError(
                f"Alias '{node.target.name}' mixes qubits and classical bits.",
                position(node),
            )
        kind = kinds.pop() if kinds else RegisterKind.QUANTUM
        alias = self.circuit.add_alias(
            Alias(name=self._register_name(node.target.name), targets=operand.refs)
        )
        self._declare(
            Binding(
                node.target.name,
                BindingKind.QUBITS if kind is RegisterKind.QUANTUM else BindingKind.BITS,
                value=alias.targets,
                scalar=operand.scalar,
            ),
            node,
        )

    def _alias_operand(self, node: ast.Expression) -> Operand:
        if isinstance(node, ast.Concatenation):
            lhs, rhs = self._alias_operand(node.lhs), self._alias_operand(node.rhs)
            return Operand(lhs.refs + rhs.refs, False)
        return self.operand(node)

    def visit_QuantumGateDefinition(self, node: ast.QuantumGateDefinition):
        self._require_global("Gates", node)
        self._declare(Binding(node.name.name, BindingKind.GATE, node), node)
        self._gate_cache.pop(node.name.name, None)

    def visit_QuantumGate(self, node: ast.QuantumGate):
        self._apply_gate(node.name.name, node.arguments, node.qubits, node)

    def visit_QuantumPhase(self, node: ast.QuantumPhase):
        self._apply_gate("gphase", [node.argument], node.qubits, node)

    def _apply_gate(
        self,
        name: str,
        arguments: list[ast.Expression],
        qubits: list[ast.Expression],
        node: ast.QuantumStatement,
    ):
        if node.modifiers:
            raise BuildError(
                f"Gate modifier '{node.modifiers[0].modifier.name}' is not supported.",
                position(node),
            )
        gate = self.resolve_gate(name, node)
        if len(arguments) != gate.num_params:
            raise BuildError(
                f"Gate '{name}' takes {gate.num_params} parameters, but "
                f"{len(arguments)} were given.",
                position(node),
            )
        if len(qubits) != gate.num_qubits:
            raise BuildError(
                f"Gate '{name}' acts on {gate.num_qubits} qubits, but "
                f"{len(qubits)} were given.",
                position(node),
            )

        params = tuple(self.evaluate_parameter(argument) for argument in arguments)
        operands = [self.operand(qubit, BindingKind.QUBITS) for qubit in qubits]
        if gate.kind is GateKind.CUSTOM and gate.definition is not None:
            self.circuit.gate_definitions.setdefault(name, gate.definition)

        for qubits in self._broadcast(operands, node):
            if gate.kind is GateKind.DEFINED:
                self._inline(name, params, qubits, node)
            else:
                self._emit(Instruction(name=name, qubits=qubits, params=params))

    def resolve_gate(self, name: str, node: ast.QuantumStatement) -> ResolvedGate:
        """
        Decides where a gate comes from. The outcome is cached per name until an
        include or a gate definition changes what the name can refer to.
        """
        if (cached := self._gate_cache.get(name, None)) is not None:
            return cached

        binding = self.find(name)
        if binding is not None and binding.kind is BindingKind.GATE:
            definition: ast.QuantumGateDefinition = binding.value
            resolved = ResolvedGate(
                kind=GateKind.DEFINED,
                name=name,
                num_params=len(definition.arguments),
                num_qubits=len(definition.qubits),
            )
        else:
            resolved = self.gate_factory.resolve(name, self._includes)
            if resolved is None:
                raise BuildError(
                    f"Gate '{name}' is not defined in this scope. Is a gate library "
                    f"include missing?",
                    position(getattr(node, "name", node)),
                )
        log.debug(f"Resolved gate '{name}' as {resolved.kind.name}.")
        self._gate_cache[name] = resolved
        return resolved

    def _inline(
        self,
        name: str,
        params: tuple[LiteralValue, ...],
        qubits: tuple[BitRef, ...],
        node: ast.QuantumStatement,
    ):
        if name in self._expansion_chain:
            chain = " -> ".join([*self._expansion_chain, name])
            raise BuildError(
                f"Gate '{name}' is defined recursively: {chain}.", position(node)
            )

        definition: ast.QuantumGateDefinition = self.find(name).value
        self._expansion_chain.append(name)
        with self._scope(ScopeKind.GATE, qubits) as frame:
            for argument, value in zip(definition.arguments, params):
                frame.bindings[argument.name] = Binding(
                    argument.name, BindingKind.CONSTANT, value.fold()
                )
            for formal, qubit in zip(definition.qubits, qubits):
                frame.bindings[formal.name] = Binding(
                    formal.name, BindingKind.QUBITS, value=(qubit,), scalar=True
                )
            for statement in definition.body:
                self._visit_statement(statement)
        self._expansion_chain.pop()

    def visit_QuantumMeasurementStatement(self, node: ast.QuantumMeasurementStatement):
        qubits = self.operand(node.measure.qubit, BindingKind.QUBITS)
        if node.target is None:
            for qubit in qubits.refs:
                self._emit(Instruction(name=MEASURE, qubits=(qubit,)))
            return
        self._measure(qubits, self.operand(node.target, BindingKind.BITS), node)

    def _measure(self, qubits: Operand, bits: Operand, node: ast.QASMNode):
        if len(qubits.refs) != len(bits.refs):
            raise BuildError(
                f"Cannot measure {len(qubits.refs)} qubits into {len(bits.refs)} bits.",
                position(node),
            )
        for qubit, bit in zip(qubits.refs, bits.refs):
            self._emit(Instruction(name=MEASURE, qubits=(qubit,), clbits=(bit,)))

    def visit_QuantumReset(self, node: ast.QuantumReset):
        for ref in self.operand(node.qubits, BindingKind.QUBITS).refs:
            self._emit(Instruction(name=RESET, qubits=(ref,)))

    def visit_QuantumBarrier(self, node: ast.QuantumBarrier):
        if node.qubits:
            refs = [
                ref
                for qubit in node.qubits
                for ref in self.operand(qubit, BindingKind.QUBITS).refs
            ]
        else:
            refs = self._gate_qubits()
        self._emit(Instruction(name=BARRIER, qubits=tuple(dict.fromkeys(refs))))

    def _gate_qubits(self) -> tuple[BitRef, ...]:
        for frame in reversed(self._frames):
            if frame.kind is ScopeKind.GATE:
                return frame.qubits
        return ()

    def visit_ClassicalAssignment(self, node: ast.ClassicalAssignment):
        target = node.lvalue
        if isinstance(target, ast.IndexedIdentifier):
            target = target.name
        binding = self.lookup(target.name, node)
        if binding.kind is BindingKind.BITS:
            raise BuildError(
                "Assigning to classical bits is only supported through measurement.",
                position(node),
            )
        if binding.kind is not BindingKind.VARIABLE or target is not node.lvalue:
            raise BuildError(f"Cannot assign to '{dumps(node.lvalue)}'.", position(node))

        if self._condition is not None and binding.depth < self._condition_depth:
            log.debug(f"'{binding.name}' is assigned under a runtime condition.")
            binding.value = UNKNOWN
            return
        value = self._evaluate_or_unknown(node.rvalue)
        op = node.op.name
        if op != "=" and value is not UNKNOWN:
            if binding.value is UNKNOWN:
                return
            value = self.evaluator.apply_binary(op[:-1], binding.value, value, node)
        binding.value = self._coerce(value, binding.type, node)

    def visit_BranchingStatement(self, node: ast.BranchingStatement):
        condition = self._runtime_condition(node.condition)
        if condition is None:
            try:
                value = self.evaluator.visit(node.condition)
            except RuntimeValueError as e:
                raise BuildError(
                    f"Unsupported condition on runtime values '{dumps(node.condition)}'.",
                    position(node),
                ) from e
            taken = self._truth(value, node)
            self._visit_block(node.if_block if taken else node.else_block)
            return

        if self._condition is not None:
            raise BuildError(
                "Nested conditions on runtime values are not supported.", position(node)
            )
        if node.else_block and not condition.is_bit:
            raise BuildError(
                "An 'else' branch needs a condition on a single bit.", position(node)
            )
        self._visit_conditioned(node.if_block, condition)
        if node.else_block:
            self._visit_conditioned(
                node.else_block, condition.model_copy(update={"value": 1 - condition.value})
            )

    def _visit_conditioned(self, statements: list[ast.Statement], condition: Condition):
        self._condition, self._condition_depth = condition, len(self._frames)
        self._visit_block(statements)
        self._condition = None

    def _bit_reference(self, node: ast.Expression) -> Optional[BitRef]:
        if (name := identifier_name(node)) is None:
            return None
        binding = self.find(name)
        if binding is None or binding.kind is not BindingKind.BITS:
            return None
        operand = self.operand(node, BindingKind.BITS)
        return operand.refs[0] if operand.scalar else None

    def _register_reference(self, node: ast.Expression) -> Optional[str]:
        if not isinstance(node, ast.Identifier):
            return None
        binding = self.find(node.name)
        if binding is None or binding.kind is not BindingKind.BITS or binding.scalar:
            return None
        return binding.register

    def _runtime_condition(self, node: ast.Expression) -> Optional[Condition]:
        """
        Matches the conditions that can be carried by instructions: ``c[i]``,
        ``!c[i]``, ``c == v``, ``c[i] == v`` and ``c[i] != v``.
        """
        if isinstance(node, ast.UnaryExpression) and node.op.name == "!":
            if (bit := self._bit_reference(node.expression)) is not None:
                return Condition(reg=bit.reg, index=bit.index, value=0)
            return None
        if (bit := self._bit_reference(node)) is not None:
            return Condition(reg=bit.reg, index=bit.index, value=1)
        if not isinstance(node, ast.BinaryExpression) or node.op.name not in ("==", "!="):
            return None
        op = node.op.name

        for target, other in ((node.lhs, node.rhs), (node.rhs, node.lhs)):
            if (bit := self._bit_reference(target)) is not None:
                value = self.evaluate_int(other)
                if value not in (0, 1):
                    raise BuildError(
                        f"A bit cannot be compared with {value}.", position(node)
                    )
                if op == "!=":
                    value = 1 - value
                return Condition(reg=bit.reg, index=bit.index, value=value)
            if (register := self._register_reference(target)) is not None:
                if op == "!=":
                    raise BuildError(
                        "Only '==' comparisons are supported on whole registers.",
                        position(node),
                    )
                return Condition(reg=register, value=self.evaluate_int(other))
        return None

    def visit_ForInLoop(self, node: ast.ForInLoop):
        values = self._loop_values(node.set_declaration, node)
        if len(values) > self.max_loop_iterations:
            raise BuildError(
                f"Loop over {len(values)} values exceeds the limit of "
                f"{self.max_loop_iterations} iterations.",
                position(node),
            )
        loop_type = node.type or ast.IntType()
        for value in values:
            with self._scope(ScopeKind.LOCAL):
                self._declare(
                    Binding(
                        node.identifier.name,
                        BindingKind.CONSTANT,
                        self._coerce(value, loop_type, node),
                        type=loop_type,
                    ),
                    node,
                )
                for statement in node.block:
                    self._visit_statement(statement)

    def _loop_values(self, node: ast.Expression, loop: ast.ForInLoop):
        try:
            if isinstance(node, ast.RangeDefinition):
                return self._range(node)
            if isinstance(node, ast.DiscreteSet):
                return [self.evaluator.visit(value) for value in node.values]
        except RuntimeValueError as e:
            raise BuildError(
                "Loop bounds must be known at compile time.", position(loop)
            ) from e
        raise BuildError(
            f"Unsupported loop iterable '{dumps(node)}'.", position(loop)
        )

    def _range(self, node: ast.RangeDefinition, size: Optional[int] = None) -> range:
        """
        Evaluates an inclusive range. With ``size``, the range indexes a register of that
        size: missing bounds cover the whole register and negative bounds count from
        the end.
        """
        if size is None and (node.start is None or node.end is None):
            raise BuildError(f"Range '{dumps(node)}' needs both bounds.", position(node))
        start = 0 if node.start is None else self.evaluate_int(node.start)
        step = 1 if node.step is None else self.evaluate_int(node.step)
        end = (size - 1) if node.end is None else self.evaluate_int(node.end)
        if size is not None:
            start = start + size if start < 0 else start
            end = end + size if end < 0 else end
        if step == 0:
            raise BuildError("Range step cannot be zero.", position(node))
        return range(start, end + (1 if step > 0 else -1), step)

    def visit_WhileLoop(self, node: ast.WhileLoop):
        iterations = 0
        while True:
            try:
                value = self.evaluator.visit(node.while_condition)
            except RuntimeValueError as e:
                raise BuildError(
                    "While loop conditions must be known at compile time.", position(node)
                ) from e
            if not self._truth(value, node):
                break
            iterations += 1
            if iterations > self.max_loop_iterations:
                raise BuildError(
                    f"While loop exceeds the limit of {self.max_loop_iterations} "
                    f"iterations.",
                    position(node),
                )
            self._visit_block(node.block)

    # Operands

    def operand(self, node: ast.Expression, kind: Optional[BindingKind] = None) -> Operand:
        """
        Resolves a qubit or bit operand to register elements.

        :param kind: Kind of binding the operand must refer to, if any.
        """
        if isinstance(node, ast.HardwareQubit):
            index = hardware_index(node)
            if self._hardware_register is None or index >= len(
                self.circuit.registers[self._hardware_register]
            ):
                raise BuildError(f"Unknown hardware qubit '{node.name}'.", position(node))
            refs = (BitRef(reg=self._hardware_register, index=index),)
            operand = Operand(refs, True)
            binding_kind = BindingKind.QUBITS
        elif isinstance(node, ast.IndexExpression):
            operand = self.operand(node.collection, kind)
            return self._apply_index(dumps(node.collection), operand, node.index, node)
        elif isinstance(node, (ast.Identifier, ast.IndexedIdentifier)):
            name = identifier_name(node)
            binding = self.lookup(name, node)
            if binding.kind not in (BindingKind.QUBITS, BindingKind.BITS):
                raise BuildError(f"'{name}' is not a qubit or bit.", position(node))
            operand = Operand(binding.value, binding.scalar)
            if isinstance(node, ast.IndexedIdentifier):
                for index in node.indices:
                    operand = self._apply_index(name, operand, index, node)
            binding_kind = binding.kind
        else:
            raise BuildError(f"'{dumps(node)}' is not a qubit or bit.", position(node))

        if kind is not None and binding_kind is not kind:
            expected = "qubits" if kind is BindingKind.QUBITS else "classical bits"
            raise BuildError(f"Expected {expected}, found '{dumps(node)}'.", position(node))
        return operand

    def _apply_index(
        self, name: str, operand: Operand, index: ast.IndexElement, node: ast.QASMNode
    ) -> Operand:
        if operand.scalar:
            raise BuildError(f"'{name}' cannot be indexed further.", position(node))
        size = len(operand.refs)
        if isinstance(index, ast.DiscreteSet):
            offsets, scalar = [self.evaluate_int(v) for v in index.values], False
        elif len(index) != 1:
            raise BuildError(
                f"Multi-dimensional index into '{name}' is not supported.", position(node)
            )
        elif isinstance(index[0], ast.RangeDefinition):
            offsets, scalar = self._range(index[0], size), False
        else:
            offsets, scalar = [self.evaluate_int(index[0])], True

        refs = []
        for offset in offsets:
            if not -size <= offset < size:
                raise BuildError(
                    f"Index {offset} is out of range for '{name}' of size {size}.",
                    position(node),
                )
            refs.append(operand.refs[offset])
        return Operand(tuple(refs), scalar)

    def _broadcast(
        self, operands: list[Operand], node: ast.QASMNode
    ) -> Iterator[tuple[BitRef, ...]]:
        sizes = {len(operand.refs) for operand in operands if not operand.scalar}
        if len(sizes) > 1:
            raise BuildError(
                "Cannot broadcast over registers of different sizes.", position(node)
            )
        count = sizes.pop() if sizes else 1
        for i in range(count):
            yield tuple(
                operand.refs[0] if operand.scalar else operand.refs[i]
                for operand in operands
            )

    # Values

    def _emit(self, instruction: Instruction):
        if self._condition is not None and instruction.name != BARRIER:
            instruction = instruction.with_condition(self._condition)
        self.circuit.append(instruction)

    def _evaluate_or_unknown(self, node: ast.Expression):
        try:
            return self.evaluator.visit(node)
        except RuntimeValueError:
            return UNKNOWN

    def evaluate_int(self, node: ast.Expression) -> int:
        value = self.evaluator.visit(node)
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if not _is_integer(value):
            raise BuildError(f"Expected an integer, found '{dumps(node)}'.", position(node))
        return value

    def evaluate_parameter(self, node: ast.Expression) -> LiteralValue:
        """Evaluates a gate argument, which must fold to a number."""
        value = self.evaluator.visit(node)
        if isinstance(value, ParameterExpression):
            folded = value.fold()
            if not isinstance(folded, float):
                raise BuildError(
                    f"Parameters {', '.join(folded.parameters)} have no value.",
                    position(node),
                )
            value = folded
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise BuildError(f"'{dumps(node)}' is not a number.", position(node))
        return LiteralValue(value=float(value))

    def _coerce(self, value, type_: Optional[ast.ClassicalType], node: ast.QASMNode):
        if value is UNKNOWN or type_ is None:
            return value
        kind = type_name(type_)
        if isinstance(value, ParameterExpression):
            if kind in _FLOAT_TYPES:
                return value
            raise BuildError(f"A parameter cannot be stored as '{kind}'.", position(node))
        if kind == "bool":
            return bool(value)
        if kind in _INTEGER_TYPES:
            value = int(value)
            if kind == "uint" and value < 0:
                raise BuildError(f"Cannot store {value} as 'uint'.", position(node))
            return value
        return float(value)

    @staticmethod
    def _truth(value, node: ast.QASMNode) -> bool:
        if isinstance(value, ParameterExpression):
            raise BuildError("Conditions cannot depend on parameters.", position(node))
        return bool(value)


def build_circuit(
    program: ast.Program,
    symbol_table: SymbolTable,
    gate_factory: GateFactory,
    parameter_values: Optional[Mapping[str, float]] = None,
) -> CircuitIR:
    """
    Lowers a validated program to a circuit.

    :param program: Program that passed semantic analysis.
    :param symbol_table: The program's symbol table.
    :param gate_factory: Resolves gates the program does not define.
    :param parameter_values: Values of ``input`` declarations.
    :raises BuildError: If any part of the program cannot be lowered. No circuit is
        returned in that case.
    """
    return CircuitBuilder(symbol_table, gate_factory, parameter_values).build(program)
