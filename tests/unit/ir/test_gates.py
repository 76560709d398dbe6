# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
import math

import pytest
from pydantic import ValidationError

from oqbridge.ir.circuit import BitRef, GateDefinition, Instruction
from oqbridge.ir.gates import (
    BUILTIN_GATES,
    STDGATES,
    CustomGate,
    GateFactory,
    GateKind,
    load_library,
)


def _single_qubit_definition(name, gate="h"):
    return GateDefinition(
        name=name,
        qubits=("a",),
        body=(Instruction(name=gate, qubits=(BitRef(reg="a"),)),),
    )


class TestStandardLibrary:
    def test_every_gate_but_cx_has_a_definition(self):
        definitions = load_library("stdgates.inc")
        assert set(definitions) == set(STDGATES) - {"cx", "CX"}

    @pytest.mark.parametrize("name", sorted(set(STDGATES) - {"cx", "CX"}))
    def test_definitions_match_signatures(self, name):
        definition = load_library("stdgates.inc")[name]
        assert (definition.num_params, definition.num_qubits) == STDGATES[name]

    def test_definitions_only_use_known_gates(self):
        known = set(STDGATES) | set(BUILTIN_GATES)
        for definition in load_library("stdgates.inc").values():
            assert {instruction.name for instruction in definition.body} <= known

    def test_hadamard_body(self):
        definition = load_library("stdgates.inc")["h"]
        u, gphase = definition.body
        assert u.name == "U"
        assert [p.fold() for p in u.params] == [math.pi / 2, 0.0, math.pi]
        assert gphase.name == "gphase"
        assert gphase.params[0].fold() == -math.pi / 4

    def test_parameterised_body(self):
        definition = load_library("stdgates.inc")["rx"]
        assert definition.params == ("theta",)
        assert definition.body[0].params[0].parameters == ("theta",)

    def test_library_is_cached(self):
        assert load_library("stdgates.inc") is load_library("stdgates.inc")

    def test_unknown_library(self):
        with pytest.raises(ValueError):
            load_library("qelib1.inc")


class TestCustomGate:
    def test_definition_must_match_signature(self):
        with pytest.raises(ValidationError):
            CustomGate(
                name="foo",
                num_params=0,
                num_qubits=2,
                definition=_single_qubit_definition("foo"),
            )

    def test_definition_must_share_the_name(self):
        with pytest.raises(ValidationError):
            CustomGate(
                name="foo",
                num_params=0,
                num_qubits=1,
                definition=_single_qubit_definition("bar"),
            )


class TestGateFactory:
    def test_library_gates_need_the_include(self):
        factory = GateFactory()
        assert factory.resolve("h") is None
        gate = factory.resolve("h", ["stdgates.inc"])
        assert gate.kind is GateKind.STANDARD
        assert (gate.num_params, gate.num_qubits) == (0, 1)
        assert gate.definition == load_library("stdgates.inc")["h"]

    def test_primitive_library_gates_have_no_definition(self):
        gate = GateFactory().resolve("cx", ["stdgates.inc"])
        assert gate.kind is GateKind.STANDARD
        assert gate.definition is None

    @pytest.mark.parametrize("name, signature", list(BUILTIN_GATES.items()))
    def test_builtins_are_always_available(self, name, signature):
        gate = GateFactory().resolve(name)
        assert gate.kind is GateKind.BUILTIN
        assert (gate.num_params, gate.num_qubits) == signature

    def test_custom_gates_take_priority(self):
        definition = _single_qubit_definition("h", gate="U")
        factory = GateFactory(
            [CustomGate(name="h", num_params=0, num_qubits=1, definition=definition)]
        )
        gate = factory.resolve("h", ["stdgates.inc"])
        assert gate.kind is GateKind.CUSTOM
        assert gate.definition == definition

    def test_unknown_gate(self):
        assert GateFactory().resolve("foo", ["stdgates.inc"]) is None

    def test_known_libraries(self):
        factory = GateFactory(libraries={"mylib.inc": {"foo": (0, 1)}})
        assert factory.knows_library("mylib.inc")
        assert not factory.knows_library("stdgates.inc")
        gate = factory.resolve("foo", ["mylib.inc"])
        assert gate.kind is GateKind.STANDARD
        assert gate.definition is None
