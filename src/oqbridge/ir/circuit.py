# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
from enum import Enum
from typing import Iterator, Optional, Union

import numpy as np
from pydantic import Field, field_validator, model_validator

from oqbridge.exceptions import CircuitError
from oqbridge.ir.parameters import ParameterExpression, as_expression
from oqbridge.utils.logger import get_default_logger
from oqbridge.utils.pydantic import (
    Name,
    NoExtraFieldsFrozenModel,
    NoExtraFieldsModel,
    NonNegativeInt,
)

log = get_default_logger()

MEASURE = "measure"
RESET = "reset"
BARRIER = "barrier"
NON_GATE_OPERATIONS = (MEASURE, RESET, BARRIER)


class RegisterKind(Enum):
    QUANTUM = "quantum"
    CLASSICAL = "classical"


class Register(NoExtraFieldsFrozenModel):
    """
    A named, fixed-size sequence of qubits or classical bits.

    :param scalar: The register was declared without a size, as in ``qubit q;``, and
        holds exactly one element that is referenced without an index.
    """

    name: Name
    kind: RegisterKind
    size: NonNegativeInt
    scalar: bool = False

    @model_validator(mode="after")
    def check_scalar_size(self):
        if self.scalar and self.size != 1:
            raise ValueError(f"Scalar register '{self.name}' must have size 1.")
        return self

    def __getitem__(self, index: int) -> "BitRef":
        if not -self.size <= index < self.size:
            raise CircuitError(
                f"Index {index} is out of range for register '{self.name}' of size "
                f"{self.size}."
            )
        return BitRef(reg=self.name, index=index % self.size)

    def __iter__(self) -> Iterator["BitRef"]:
        return (BitRef(reg=self.name, index=i) for i in range(self.size))

    def __len__(self):
        return self.size


class BitRef(NoExtraFieldsFrozenModel):
    """
    One element of the register or alias named ``reg``. Formal qubits of a gate
    definition are referenced by name alone, with no index.
    """

    reg: Name
    index: Optional[NonNegativeInt] = None

    def __str__(self):
        if self.index is None:
            return self.reg
        return f"{self.reg}[{self.index}]"


class Alias(NoExtraFieldsFrozenModel):
    """A named view over register, or other alias, elements. Owns no storage."""

    name: Name
    targets: tuple[BitRef, ...]

    def __len__(self):
        return len(self.targets)


class Condition(NoExtraFieldsFrozenModel):
    """
    Classical guard of an instruction: the instruction runs when the classical
    register, or the single bit at ``index``, equals ``value``.
    """

    reg: Name
    index: Optional[NonNegativeInt] = None
    value: NonNegativeInt

    @property
    def is_bit(self) -> bool:
        return self.index is not None

    @property
    def target(self) -> Union[str, BitRef]:
        if self.index is None:
            return self.reg
        return BitRef(reg=self.reg, index=self.index)


class Instruction(NoExtraFieldsFrozenModel):
    """
    A single operation. ``measure``, ``reset`` and ``barrier`` name the non-gate
    operations; any other name is a gate application.
    """

    name: Name
    qubits: tuple[BitRef, ...] = ()
    clbits: tuple[BitRef, ...] = ()
    params: tuple[ParameterExpression, ...] = ()
    condition: Optional[Condition] = None

    @field_validator("params", mode="before")
    @classmethod
    def promote_numbers(cls, params):
        return tuple(as_expression(param) for param in params)

    @property
    def is_gate(self) -> bool:
        return self.name not in NON_GATE_OPERATIONS

    def with_condition(self, condition: Optional[Condition]) -> "Instruction":
        return self.model_copy(update={"condition": condition})


class GateDefinition(NoExtraFieldsFrozenModel):
    """
    Body of a gate expressed over its formal parameters and formal qubits. Used for
    inlining and for emitting ``gate`` blocks; never part of an instruction stream.
    """

    name: Name
    params: tuple[Name, ...] = ()
    qubits: tuple[Name, ...]
    body: tuple[Instruction, ...] = ()

    @property
    def num_params(self) -> int:
        return len(self.params)

    @property
    def num_qubits(self) -> int:
        return len(self.qubits)

    @model_validator(mode="after")
    def check_body_uses_formals(self):
        for instruction in self.body:
            if not instruction.is_gate or instruction.clbits or instruction.condition:
                raise ValueError(
                    f"Gate '{self.name}' may only contain unconditioned gate calls."
                )
            for qubit in instruction.qubits:
                if qubit.index is not None or qubit.reg not in self.qubits:
                    raise ValueError(
                        f"Gate '{self.name}' refers to '{qubit}', which is not one of "
                        f"its qubits."
                    )
            for param in instruction.params:
                if unknown := set(param.parameters) - set(self.params):
                    raise ValueError(
                        f"Gate '{self.name}' uses unknown parameters {sorted(unknown)}."
                    )
        return self


class Layout(NoExtraFieldsFrozenModel):
    """The physical qubit index of every virtual qubit, in register declaration order."""

    physical_qubits: tuple[NonNegativeInt, ...]

    @field_validator("physical_qubits", mode="before")
    @classmethod
    def accept_arrays(cls, physical_qubits):
        if isinstance(physical_qubits, np.ndarray):
            return tuple(physical_qubits.astype(int).tolist())
        return physical_qubits

    def __len__(self):
        return len(self.physical_qubits)

    def __getitem__(self, virtual: int) -> int:
        return self.physical_qubits[virtual]


class CircuitIR(NoExtraFieldsModel):
    """
    Flat, ordered representation of a circuit: registers in insertion order,
    instructions in execution order, aliases, gate definitions and an optional layout.

    Every reference held by an appended instruction is checked when it is appended;
    instructions are never modified or removed afterwards.
    """

    registers: dict[str, Register] = Field(default_factory=dict)
    instructions: list[Instruction] = Field(default_factory=list)
    aliases: dict[str, Alias] = Field(default_factory=dict)
    gate_definitions: dict[str, GateDefinition] = Field(default_factory=dict)
    layout: Optional[Layout] = None

    def __len__(self):
        return len(self.instructions)

    def __iter__(self):
        return iter(self.instructions)

    @property
    def qubits(self) -> list[BitRef]:
        return [
            bit
            for register in self.registers.values()
            if register.kind is RegisterKind.QUANTUM
            for bit in register
        ]

    @property
    def clbits(self) -> list[BitRef]:
        return [
            bit
            for register in self.registers.values()
            if register.kind is RegisterKind.CLASSICAL
            for bit in register
        ]

    def quantum_registers(self) -> list[Register]:
        return [r for r in self.registers.values() if r.kind is RegisterKind.QUANTUM]

    def classical_registers(self) -> list[Register]:
        return [r for r in self.registers.values() if r.kind is RegisterKind.CLASSICAL]

    def _check_name_is_free(self, name: str):
        if name in self.registers or name in self.aliases:
            raise CircuitError(f"The name '{name}' is already used in the circuit.")

    def unique_name(self, base: str) -> str:
        """Returns ``base``, or ``base_<n>`` for the smallest free ``n``."""
        name, counter = base, 0
        while name in self.registers or name in self.aliases:
            counter += 1
            name = f"{base}_{counter}"
        return name

    def add_register(self, register: Register) -> Register:
        self._check_name_is_free(register.name)
        self.registers[register.name] = register
        return register

    def add_qubits(self, name: str, size: int, scalar: bool = False) -> Register:
        return self.add_register(
            Register(name=name, kind=RegisterKind.QUANTUM, size=size, scalar=scalar)
        )

    def add_clbits(self, name: str, size: int, scalar: bool = False) -> Register:
        return self.add_register(
            Register(name=name, kind=RegisterKind.CLASSICAL, size=size, scalar=scalar)
        )

    def add_alias(self, alias: Alias) -> Alias:
        self._check_name_is_free(alias.name)
        kinds = set()
        for target in alias.targets:
            if target.reg == alias.name:
                raise CircuitError(f"Alias '{alias.name}' refers to itself.")
            kinds.add(self.kind_of(self.resolve(target)))
        if len(kinds) > 1:
            raise CircuitError(f"Alias '{alias.name}' mixes qubits and classical bits.")
        self.aliases[alias.name] = alias
        return alias

    def add_gate_definition(self, definition: GateDefinition) -> GateDefinition:
        self.gate_definitions[definition.name] = definition
        return definition

    def kind_of(self, ref: BitRef) -> RegisterKind:
        return self.registers[self.resolve(ref).reg].kind

    def resolve(self, ref: BitRef) -> BitRef:
        """
        Follows alias chains down to a register element.

        :raises CircuitError: If the reference is out of range, unknown or part of an
            alias cycle.
        """
        seen = []
        while ref.reg in self.aliases:
            if ref.reg in seen:
                raise CircuitError(f"Alias cycle through {' -> '.join(seen)}.")
            seen.append(ref.reg)
            alias = self.aliases[ref.reg]
            if ref.index is None or ref.index >= len(alias.targets):
                raise CircuitError(f"Invalid reference '{ref}' into alias '{alias.name}'.")
            ref = alias.targets[ref.index]

        register = self.registers.get(ref.reg, None)
        if register is None:
            raise CircuitError(f"Unknown register or alias '{ref.reg}'.")
        if ref.index is None or ref.index >= register.size:
            raise CircuitError(
                f"Invalid reference '{ref}' into register '{register.name}' of size "
                f"{register.size}."
            )
        return ref

    def resolve_alias(self, name: str) -> tuple[BitRef, ...]:
        alias = self.aliases.get(name, None)
        if alias is None:
            raise CircuitError(f"Unknown alias '{name}'.")
        return tuple(self.resolve(target) for target in alias.targets)

    def qubit_index(self, ref: BitRef) -> int:
        """Position of a qubit among all qubits, in register declaration order."""
        ref = self.resolve(ref)
        offset = 0
        for register in self.quantum_registers():
            if register.name == ref.reg:
                return offset + ref.index
            offset += register.size
        raise CircuitError(f"'{ref}' is not a qubit.")

    def _check_refs(self, refs: tuple[BitRef, ...], kind: RegisterKind, what: str):
        resolved = [self.resolve(ref) for ref in refs]
        for ref, physical in zip(refs, resolved):
            if self.registers[physical.reg].kind is not kind:
                raise CircuitError(f"'{ref}' cannot be used as a {what}.")
        if len(set(resolved)) != len(resolved):
            raise CircuitError(f"Duplicate {what} operands {[str(r) for r in refs]}.")

    def _check_condition(self, condition: Condition):
        register = self.registers.get(condition.reg, None)
        if register is None or register.kind is not RegisterKind.CLASSICAL:
            raise CircuitError(
                f"Condition refers to unknown classical register '{condition.reg}'."
            )
        if condition.is_bit:
            if condition.index >= register.size or condition.value > 1:
                raise CircuitError(f"Invalid bit condition on '{condition.target}'.")
        elif condition.value >= 2**register.size:
            raise CircuitError(
                f"Condition value {condition.value} does not fit in register "
                f"'{register.name}' of size {register.size}."
            )

    def validate_instruction(self, instruction: Instruction):
        """:raises CircuitError: If the instruction cannot be appended to this circuit."""
        self._check_refs(instruction.qubits, RegisterKind.QUANTUM, "qubit")
        self._check_refs(instruction.clbits, RegisterKind.CLASSICAL, "classical bit")
        if instruction.name == MEASURE:
            if len(instruction.qubits) != 1 or len(instruction.clbits) > 1:
                raise CircuitError("A measurement acts on one qubit and at most one bit.")
        elif instruction.name == RESET:
            if len(instruction.qubits) != 1 or instruction.clbits:
                raise CircuitError("A reset acts on exactly one qubit.")
        elif instruction.clbits:
            raise CircuitError(f"'{instruction.name}' cannot act on classical bits.")
        if instruction.is_gate and (
            definition := self.gate_definitions.get(instruction.name, None)
        ):
            if (
                len(instruction.qubits) != definition.num_qubits
                or len(instruction.params) != definition.num_params
            ):
                raise CircuitError(
                    f"'{instruction.name}' expects {definition.num_params} parameters "
                    f"and {definition.num_qubits} qubits."
                )
        if instruction.condition is not None:
            self._check_condition(instruction.condition)

    def append(self, instruction: Instruction) -> Instruction:
        self.validate_instruction(instruction)
        self.instructions.append(instruction)
        return instruction

    def add(
        self,
        name: str,
        qubits=(),
        params=(),
        clbits=(),
        condition: Optional[Condition] = None,
    ) -> Instruction:
        """Builds and appends an instruction in one go."""
        return self.append(
            Instruction(
                name=name,
                qubits=tuple(qubits),
                clbits=tuple(clbits),
                params=tuple(params),
                condition=condition,
            )
        )
