# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
"""
Gate resolution: which names a program may call, how many parameters and qubits each
takes, and where its definition comes from.
"""
from enum import Enum, auto
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional

from openqasm3 import ast
from pydantic import model_validator

from oqbridge.ir.circuit import BitRef, GateDefinition, Instruction
from oqbridge.ir.parameters import expression_from_ast
from oqbridge.qasm.parser import QASM3Parser
from oqbridge.utils.logger import get_default_logger
from oqbridge.utils.pydantic import Name, NoExtraFieldsFrozenModel, NonNegativeInt

log = get_default_logger()

LIBRARY_PATH = Path(Path(__file__).parents[1], "qasm", "libs")

BUILTIN_GATES = {"U": (3, 1), "gphase": (1, 0)}
"""Gates every program can call, as ``name: (num_params, num_qubits)``."""

STDGATES = {
    "p": (1, 1),
    "x": (0, 1),
    "y": (0, 1),
    "z": (0, 1),
    "h": (0, 1),
    "s": (0, 1),
    "sdg": (0, 1),
    "t": (0, 1),
    "tdg": (0, 1),
    "sx": (0, 1),
    "rx": (1, 1),
    "ry": (1, 1),
    "rz": (1, 1),
    "cx": (0, 2),
    "CX": (0, 2),
    "cy": (0, 2),
    "cz": (0, 2),
    "cp": (1, 2),
    "crx": (1, 2),
    "cry": (1, 2),
    "crz": (1, 2),
    "ch": (0, 2),
    "swap": (0, 2),
    "ccx": (0, 3),
    "cswap": (0, 3),
    "cu": (4, 2),
    "phase": (1, 1),
    "cphase": (1, 2),
    "id": (0, 1),
    "u1": (1, 1),
    "u2": (2, 1),
    "u3": (3, 1),
}

LIBRARIES = {"stdgates.inc": STDGATES}
"""Gate libraries known by include file name, with the signatures they declare."""


class GateKind(Enum):
    """Where a resolved gate comes from, in resolution priority order."""

    DEFINED = auto()
    CUSTOM = auto()
    STANDARD = auto()
    BUILTIN = auto()


class CustomGate(NoExtraFieldsFrozenModel):
    """
    A gate supplied by the caller, resolved before any library gate of the same name.

    :param name: Name the program calls the gate by.
    :param num_params: Number of angle parameters.
    :param num_qubits: Number of qubits the gate acts on.
    :param definition: Optional body, used when the gate has to be defined on export.
    """

    name: Name
    num_params: NonNegativeInt
    num_qubits: NonNegativeInt
    definition: Optional[GateDefinition] = None

    @model_validator(mode="after")
    def check_definition_signature(self):
        if self.definition is None:
            return self
        if (
            self.definition.name != self.name
            or self.definition.num_params != self.num_params
            or self.definition.num_qubits != self.num_qubits
        ):
            raise ValueError(
                f"Definition of '{self.definition.name}' does not match the signature of "
                f"custom gate '{self.name}'."
            )
        return self


class ResolvedGate(NoExtraFieldsFrozenModel):
    kind: GateKind
    name: Name
    num_params: NonNegativeInt
    num_qubits: NonNegativeInt
    definition: Optional[GateDefinition] = None


def _definition_from_ast(node: ast.QuantumGateDefinition) -> GateDefinition:
    params = tuple(argument.name for argument in node.arguments)
    body = []
    for statement in node.body:
        if isinstance(statement, ast.QuantumPhase) and not statement.modifiers:
            body.append(
                Instruction(
                    name="gphase",
                    params=(expression_from_ast(statement.argument, params),),
                )
            )
            continue
        if not isinstance(statement, ast.QuantumGate) or statement.modifiers:
            raise ValueError(f"Unsupported statement in library gate '{node.name.name}'.")
        body.append(
            Instruction(
                name=statement.name.name,
                qubits=tuple(BitRef(reg=qubit.name) for qubit in statement.qubits),
                params=tuple(
                    expression_from_ast(argument, params)
                    for argument in statement.arguments
                ),
            )
        )
    return GateDefinition(
        name=node.name.name,
        params=params,
        qubits=tuple(qubit.name for qubit in node.qubits),
        body=tuple(body),
    )


@lru_cache
def load_library(filename: str) -> dict[str, GateDefinition]:
    """Reads the gate definitions of a packaged library, keyed by gate name."""
    if filename not in LIBRARIES:
        raise ValueError(f"Unknown gate library '{filename}'.")
    program = QASM3Parser().parse_file(Path(LIBRARY_PATH, filename))
    definitions = {
        statement.name.name: _definition_from_ast(statement)
        for statement in program.statements
        if isinstance(statement, ast.QuantumGateDefinition)
    }
    log.debug(f"Loaded {len(definitions)} gate definitions from '{filename}'.")
    return definitions


class GateFactory:
    """
    Resolves gate names for the builder and the exporter. Caller supplied custom gates
    take priority over gates of the included libraries, which take priority over the
    builtins ``U`` and ``gphase``. Read-only once constructed.

    :param custom_gates: Gates provided by the caller.
    :param libraries: Gate libraries the factory can resolve includes to, as
        ``filename: {name: (num_params, num_qubits)}``.
    """

    def __init__(
        self,
        custom_gates: Iterable[CustomGate] = (),
        libraries: Optional[dict[str, dict[str, tuple[int, int]]]] = None,
    ):
        self.custom_gates = {gate.name: gate for gate in custom_gates}
        self.libraries = dict(LIBRARIES if libraries is None else libraries)

    def knows_library(self, filename: str) -> bool:
        return filename in self.libraries

    def resolve(self, name: str, includes: Iterable[str] = ()) -> Optional[ResolvedGate]:
        """
        Finds the gate called ``name``, looking into the libraries named by ``includes``
        only. Returns ``None`` if no source provides it.
        """
        if (custom := self.custom_gates.get(name, None)) is not None:
            return ResolvedGate(
                kind=GateKind.CUSTOM,
                name=name,
                num_params=custom.num_params,
                num_qubits=custom.num_qubits,
                definition=custom.definition,
            )

        for include in includes:
            library = self.libraries.get(include, {})
            if name in library:
                num_params, num_qubits = library[name]
                return ResolvedGate(
                    kind=GateKind.STANDARD,
                    name=name,
                    num_params=num_params,
                    num_qubits=num_qubits,
                    definition=self.library_definition(include, name),
                )

        if name in BUILTIN_GATES:
            num_params, num_qubits = BUILTIN_GATES[name]
            return ResolvedGate(
                kind=GateKind.BUILTIN,
                name=name,
                num_params=num_params,
                num_qubits=num_qubits,
            )
        return None

    def library_definition(self, include: str, name: str) -> Optional[GateDefinition]:
        if include not in LIBRARIES:
            return None
        return load_library(include).get(name, None)
