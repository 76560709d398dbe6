# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
"""
Serialises a :class:`CircuitIR` to OpenQASM 3 text.

The exporter first builds the complete program as an AST and only then prints it, so
a failure never leaves a partial program in the output.
"""
import io
import re
from typing import BinaryIO, Iterable, Optional, TextIO, Union

from openqasm3 import ast
from openqasm3.printer import dumps
from pydantic import Field, field_validator

from oqbridge.config import get_config
from oqbridge.exceptions import CircuitError, ExportError
from oqbridge.ir.circuit import (
    BARRIER,
    MEASURE,
    RESET,
    BitRef,
    CircuitIR,
    Condition,
    GateDefinition,
    Instruction,
    Register,
    RegisterKind,
)
from oqbridge.ir.gates import BUILTIN_GATES, GateFactory
from oqbridge.ir.parameters import ConstantTracker, ParameterExpression, ParameterRef
from oqbridge.qasm.nodes import hardware_qubit
from oqbridge.qasm.semantics import BUILTIN_CONSTANTS, BUILTIN_FUNCTIONS
from oqbridge.utils.logger import get_default_logger
from oqbridge.utils.pydantic import NoExtraFieldsModel

log = get_default_logger()

OPENQASM_VERSION = "3.0"

RESERVED_WORDS = frozenset(
    {
        "OPENQASM",
        "include",
        "defcalgrammar",
        "def",
        "cal",
        "defcal",
        "gate",
        "extern",
        "box",
        "let",
        "break",
        "continue",
        "if",
        "else",
        "end",
        "return",
        "for",
        "while",
        "in",
        "switch",
        "case",
        "default",
        "input",
        "output",
        "const",
        "readonly",
        "mutable",
        "qreg",
        "qubit",
        "creg",
        "bool",
        "bit",
        "int",
        "uint",
        "float",
        "angle",
        "complex",
        "array",
        "void",
        "duration",
        "stretch",
        "inv",
        "pow",
        "ctrl",
        "negctrl",
        "durationof",
        "delay",
        "reset",
        "measure",
        "barrier",
        "true",
        "false",
        *BUILTIN_CONSTANTS,
        *BUILTIN_FUNCTIONS,
        *BUILTIN_GATES,
    }
)
"""Names that can never be used for registers, parameters or defined gates."""

_INVALID_CHARACTERS = re.compile(r"\W")


class ExportOptions(NoExtraFieldsModel):
    """
    Policy applied when serialising a circuit. Fields left out take their value from
    the ``EXPORT`` section of the configuration.

    :param includes: Include files to declare, in order. Gates they provide are called
        but never defined.
    :param basis_gates: Gates treated as primitives: called but never defined.
    :param disable_constants: Print parameters as decimal literals only.
    :param allow_aliasing: When the circuit has a layout, declare each qubit register
        as an alias over physical qubits and refer to qubits through it.
    :param indent: Indentation unit for gate bodies.
    """

    includes: list[str] = Field(
        default_factory=lambda: list(get_config().EXPORT.INCLUDES)
    )
    basis_gates: list[str] = Field(default_factory=list)
    disable_constants: bool = Field(
        default_factory=lambda: get_config().EXPORT.DISABLE_CONSTANTS
    )
    allow_aliasing: bool = Field(default_factory=lambda: get_config().EXPORT.ALLOW_ALIASING)
    indent: str = Field(default_factory=lambda: get_config().EXPORT.INDENT)

    @field_validator("basis_gates", mode="before")
    @classmethod
    def accept_any_iterable(cls, basis_gates):
        if isinstance(basis_gates, (set, frozenset)):
            return sorted(basis_gates)
        return basis_gates


class Namespace:
    """
    Maps circuit names to names that are valid, unreserved and unique in the exported
    program. Names of different kinds are tracked separately but never collide.
    """

    def __init__(self, reserved: Iterable[str] = ()):
        self.taken = set(reserved)
        self.names: dict[tuple[str, str], str] = {}

    def add(self, kind: str, name: str) -> str:
        if (existing := self.names.get((kind, name), None)) is not None:
            return existing
        candidate = _INVALID_CHARACTERS.sub("_", name)
        if not candidate or candidate[0].isdigit():
            candidate = f"_{candidate}"
        unique, counter = candidate, 0
        while unique in self.taken:
            counter += 1
            unique = f"{candidate}_{counter}"
        if unique != name:
            log.warning(f"Renamed {kind} '{name}' to '{unique}' in the exported program.")
        self.taken.add(unique)
        self.names[(kind, name)] = unique
        return unique

    def get(self, kind: str, name: str) -> Optional[str]:
        return self.names.get((kind, name), None)


class QASM3Exporter:
    """
    Serialises one circuit. All lookup tables live on the instance, so an exporter is
    used for a single export call.

    :param circuit: Circuit to serialise. It is never modified.
    :param layout_present: Whether to address qubits through the circuit's layout.
    :param options: Export policy, defaults to :class:`ExportOptions` built from
        configuration.
    :param gate_factory: Provides the gate libraries named in the includes.
    """

    def __init__(
        self,
        circuit: CircuitIR,
        layout_present: bool = False,
        options: Optional[ExportOptions] = None,
        gate_factory: Optional[GateFactory] = None,
    ):
        self.circuit = circuit
        self.layout_present = layout_present
        self.options = options or ExportOptions()
        self.gate_factory = gate_factory or GateFactory()

        self.includes = list(dict.fromkeys(self.options.includes))
        self.references = self._referenced_gates()
        self.namespace = Namespace(RESERVED_WORDS | set(self.references))
        self.constants = ConstantTracker()
        self._signatures: dict[str, Optional[tuple[int, int]]] = {}
        self._definitions: dict[str, ast.QuantumGateDefinition] = {}
        self._scalars: set[str] = set()
        self._aliased = False

    def _referenced_gates(self) -> dict[str, Optional[tuple[int, int]]]:
        """Gates that are called without being defined, with their known signatures."""
        references: dict[str, Optional[tuple[int, int]]] = dict(BUILTIN_GATES)
        for include in self.includes:
            for name, signature in self.gate_factory.libraries.get(include, {}).items():
                references.setdefault(name, signature)
        for name in self.options.basis_gates:
            if name in references:
                continue
            definition = self.circuit.gate_definitions.get(name, None)
            references[name] = (
                None
                if definition is None
                else (definition.num_params, definition.num_qubits)
            )
        return references

    def export(self) -> str:
        return dumps(self.build_program(), indent=self.options.indent)

    def build_program(self) -> ast.Program:
        log.debug(
            f"Exporting circuit with {len(self.circuit)} instructions, layout present: "
            f"{self.layout_present}."
        )
        for index, instruction in enumerate(self.circuit.instructions):
            if instruction.is_gate:
                signature = self._require_gate(instruction.name, index)
                self._check_signature(instruction, signature, index)

        statements: list[ast.Statement] = [
            ast.Include(include) for include in self.includes
        ]
        statements.extend(self._input_declarations())
        statements.extend(self._register_declarations())
        statements.extend(self._definitions.values())
        statements.extend(
            self._statement(instruction, index)
            for index, instruction in enumerate(self.circuit.instructions)
        )
        if len(self.constants):
            log.debug(f"Named constants used: {', '.join(self.constants)}.")
        return ast.Program(statements=statements, version=OPENQASM_VERSION)

    # Gates

    def _library_definition(self, name: str) -> Optional[GateDefinition]:
        for include in self.gate_factory.libraries:
            definition = self.gate_factory.library_definition(include, name)
            if definition is not None:
                return definition
        return None

    def _require_gate(
        self, name: str, index: int, chain: tuple[str, ...] = ()
    ) -> Optional[tuple[int, int]]:
        """
        Makes sure a gate can be called, emitting its definition, dependencies first,
        the first time it is needed. Returns its ``(num_params, num_qubits)`` when known.
        """
        if name in self.references:
            return self.references[name]
        if name in self._signatures:
            return self._signatures[name]
        if name in chain:
            raise ExportError(
                f"Gate '{name}' is defined recursively: {' -> '.join([*chain, name])}.",
                index,
            )

        definition = self.circuit.gate_definitions.get(name, None)
        if definition is None:
            definition = self._library_definition(name)
        if definition is None:
            raise ExportError(
                f"Gate '{name}' has no definition and is neither a basis gate nor "
                f"provided by an include.",
                index,
            )
        for instruction in definition.body:
            signature = self._require_gate(instruction.name, index, (*chain, name))
            self._check_signature(instruction, signature, index)

        emitted = self.namespace.add("gate", name)
        self._definitions[name] = self._definition_ast(definition, emitted, index)
        self._signatures[name] = (definition.num_params, definition.num_qubits)
        log.debug(f"Emitting definition of gate '{name}'.")
        return self._signatures[name]

    @staticmethod
    def _check_signature(
        instruction: Instruction, signature: Optional[tuple[int, int]], index: int
    ):
        if signature is None:
            return
        num_params, num_qubits = signature
        if len(instruction.params) != num_params or len(instruction.qubits) != num_qubits:
            raise ExportError(
                f"Gate '{instruction.name}' takes {num_params} parameters and "
                f"{num_qubits} qubits, but was given {len(instruction.params)} and "
                f"{len(instruction.qubits)}.",
                index,
            )

    def _gate_name(self, name: str) -> str:
        return self.namespace.get("gate", name) or name

    def _definition_ast(
        self, definition: GateDefinition, emitted: str, index: int
    ) -> ast.QuantumGateDefinition:
        local = Namespace(RESERVED_WORDS | set(self.references) | {emitted})
        params = {param: local.add("parameter", param) for param in definition.params}
        qubits = {qubit: local.add("qubit", qubit) for qubit in definition.qubits}
        renamed = {
            old: ParameterRef(name=new) for old, new in params.items() if old != new
        }
        body = [
            self._gate_call(
                instruction.name,
                [
                    self._parameter(param.bind(renamed), index)
                    for param in instruction.params
                ],
                [ast.Identifier(qubits[qubit.reg]) for qubit in instruction.qubits],
            )
            for instruction in definition.body
        ]
        return ast.QuantumGateDefinition(
            name=ast.Identifier(emitted),
            arguments=[ast.Identifier(name) for name in params.values()],
            qubits=[ast.Identifier(name) for name in qubits.values()],
            body=body,
        )

    def _gate_call(
        self, name: str, arguments: list[ast.Expression], qubits: list[ast.Expression]
    ) -> ast.QuantumStatement:
        if name == "gphase" and not qubits:
            return ast.QuantumPhase(modifiers=[], argument=arguments[0], qubits=[])
        return ast.QuantumGate(
            modifiers=[],
            name=ast.Identifier(self._gate_name(name)),
            arguments=arguments,
            qubits=qubits,
        )

    def _parameter(self, param: ParameterExpression, index: int) -> ast.Expression:
        try:
            return param.to_ast(
                disable_constants=self.options.disable_constants,
                constants=self.constants,
            )
        except (ValueError, ArithmeticError) as e:
            raise ExportError(f"Cannot format parameter '{param!r}': {e}", index) from e

    # Declarations

    def _input_declarations(self) -> list[ast.IODeclaration]:
        names: dict[str, None] = {}
        for instruction in self.circuit.instructions:
            for param in instruction.params:
                names.update(dict.fromkeys(param.parameters))
        return [
            ast.IODeclaration(
                ast.IOKeyword.input,
                ast.FloatType(ast.IntegerLiteral(64)),
                ast.Identifier(self.namespace.add("parameter", name)),
            )
            for name in names
        ]

    def _check_layout(self):
        layout = self.circuit.layout
        if layout is None:
            raise ExportError("A layout was requested but the circuit has none.")
        if len(set(layout.physical_qubits)) != len(layout):
            raise ExportError(
                f"Layout {list(layout.physical_qubits)} maps several qubits to the same "
                f"physical qubit."
            )
        if len(layout) < len(self.circuit.qubits):
            log.warning(
                f"Layout covers {len(layout)} of {len(self.circuit.qubits)} qubits."
            )

    def _physical_qubit(
        self, ref: BitRef, index: Optional[int] = None
    ) -> ast.HardwareQubit:
        layout = self.circuit.layout
        virtual = self.circuit.qubit_index(ref)
        if virtual >= len(layout):
            raise ExportError(f"Qubit '{ref}' is not covered by the layout.", index)
        return hardware_qubit(layout[virtual])

    def _register_declarations(self) -> list[ast.Statement]:
        if self.layout_present:
            self._check_layout()
            self._aliased = self.options.allow_aliasing

        declarations = []
        for register in self.circuit.registers.values():
            size = None if register.scalar else ast.IntegerLiteral(register.size)
            if register.kind is RegisterKind.CLASSICAL:
                declarations.append(
                    ast.ClassicalDeclaration(
                        ast.BitType(size), self._register_name(register), None
                    )
                )
            elif not self.layout_present:
                declarations.append(
                    ast.QubitDeclaration(self._register_name(register), size)
                )
            elif self._aliased and register.size > 0:
                declarations.append(
                    self._alias_declaration(
                        register.name,
                        [self._physical_qubit(ref) for ref in register],
                    )
                )

        if self._aliased:
            for alias in self.circuit.aliases.values():
                try:
                    targets = [self._reference(target) for target in alias.targets]
                except CircuitError as e:
                    raise ExportError(f"Invalid alias '{alias.name}': {e}") from e
                declarations.append(self._alias_declaration(alias.name, targets))
        return declarations

    def _register_name(self, register: Register) -> ast.Identifier:
        emitted = self.namespace.add("register", register.name)
        if register.scalar:
            self._scalars.add(emitted)
        return ast.Identifier(emitted)

    def _alias_declaration(
        self, name: str, targets: list[ast.Expression]
    ) -> ast.AliasStatement:
        emitted = self.namespace.add("register", name)
        if len(targets) == 1:
            self._scalars.add(emitted)
        value = targets[0]
        for target in targets[1:]:
            value = ast.Concatenation(value, target)
        return ast.AliasStatement(ast.Identifier(emitted), value)

    # Instructions

    def _reference(self, ref: BitRef) -> ast.Expression:
        """
        Prints a reference as written when aliases are declared, otherwise as the
        register element it resolves to.
        """
        self.circuit.resolve(ref)
        if not self._aliased:
            ref = self.circuit.resolve(ref)
            if self.layout_present and self.circuit.kind_of(ref) is RegisterKind.QUANTUM:
                return self._physical_qubit(ref)
        name = self.namespace.add("register", ref.reg)
        if name in self._scalars:
            return ast.Identifier(name)
        return ast.IndexedIdentifier(
            ast.Identifier(name), [[ast.IntegerLiteral(ref.index)]]
        )

    def _operand(self, ref: BitRef, index: int) -> ast.Expression:
        try:
            return self._reference(ref)
        except CircuitError as e:
            raise ExportError(str(e), index) from e
        except ExportError as e:
            if e.instruction_index is None:
                raise ExportError(e.message, index) from e
            raise

    def _condition(self, condition: Condition, index: int) -> ast.Expression:
        register = self.circuit.registers.get(condition.reg, None)
        if register is None or register.kind is not RegisterKind.CLASSICAL:
            raise ExportError(
                f"Condition on unknown classical register '{condition.reg}'.", index
            )
        if condition.is_bit:
            target = self._operand(condition.target, index)
        else:
            target = ast.Identifier(self.namespace.add("register", register.name))
        return ast.BinaryExpression(
            ast.BinaryOperator["=="], target, ast.IntegerLiteral(condition.value)
        )

    def _statement(self, instruction: Instruction, index: int) -> ast.Statement:
        qubits = [self._operand(qubit, index) for qubit in instruction.qubits]
        if instruction.name == MEASURE:
            if len(qubits) != 1 or len(instruction.clbits) > 1:
                raise ExportError(
                    "A measurement acts on one qubit and at most one bit.", index
                )
            target = None
            if instruction.clbits:
                target = self._operand(instruction.clbits[0], index)
            statement = ast.QuantumMeasurementStatement(
                ast.QuantumMeasurement(qubits[0]), target
            )
        elif instruction.name == RESET:
            if len(qubits) != 1:
                raise ExportError("A reset acts on exactly one qubit.", index)
            statement = ast.QuantumReset(qubits[0])
        elif instruction.name == BARRIER:
            statement = ast.QuantumBarrier(qubits)
        else:
            statement = self._gate_call(
                instruction.name,
                [self._instruction_parameter(param, index) for param in instruction.params],
                qubits,
            )

        if instruction.condition is None:
            return statement
        return ast.BranchingStatement(
            self._condition(instruction.condition, index), [statement], []
        )

    def _instruction_parameter(self, param: ParameterExpression, index: int):
        renamed = {
            name: ParameterRef(name=self.namespace.add("parameter", name))
            for name in param.parameters
            if self.namespace.add("parameter", name) != name
        }
        return self._parameter(param.bind(renamed) if renamed else param, index)


def export_circuit(
    circuit: CircuitIR,
    layout_present: bool = False,
    options: Optional[ExportOptions] = None,
) -> str:
    """
    Serialises a circuit to OpenQASM 3 text.

    :raises ExportError: If the circuit cannot be serialised.
    """
    return QASM3Exporter(circuit, layout_present, options).export()


def export_circuit_to(
    circuit: CircuitIR,
    layout_present: bool,
    options: Optional[ExportOptions],
    sink: Union[TextIO, BinaryIO],
):
    """
    Serialises a circuit into a text or binary stream. Binary streams receive UTF-8.
    Nothing is written if the export fails.
    """
    text = export_circuit(circuit, layout_present, options)
    if isinstance(sink, (io.RawIOBase, io.BufferedIOBase)) or "b" in getattr(
        sink, "mode", ""
    ):
        sink.write(text.encode("utf-8"))
    else:
        sink.write(text)
