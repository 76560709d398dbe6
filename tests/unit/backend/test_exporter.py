# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
import io
import math

import pytest
from openqasm3 import ast

from oqbridge.api import loads
from oqbridge.backend.exporter import (
    ExportOptions,
    Namespace,
    QASM3Exporter,
    export_circuit,
    export_circuit_to,
)
from oqbridge.config import BridgeConfig, ExportConfig, override_config
from oqbridge.exceptions import ExportError
from oqbridge.ir.circuit import (
    Alias,
    BitRef,
    CircuitIR,
    Condition,
    GateDefinition,
    Instruction,
    Layout,
)
from oqbridge.ir.gates import STDGATES, CustomGate
from oqbridge.ir.parameters import NamedConstant, ParameterRef

HEADER = 'OPENQASM 3.0;\ninclude "stdgates.inc";\n'


def q(index, register="q"):
    return BitRef(reg=register, index=index)


def c(index, register="c"):
    return BitRef(reg=register, index=index)


def formal(name):
    return BitRef(reg=name)


@pytest.fixture
def bell():
    circuit = CircuitIR()
    circuit.add_qubits("q", 2)
    circuit.add_clbits("c", 2)
    circuit.add("h", [q(0)])
    circuit.add("cx", [q(0), q(1)])
    circuit.add("measure", [q(0)], clbits=[c(0)])
    circuit.add("measure", [q(1)], clbits=[c(1)])
    return circuit


@pytest.fixture
def two_qubits():
    circuit = CircuitIR()
    circuit.add_qubits("q", 2)
    return circuit


class TestExportOptions:
    def test_defaults_come_from_config(self, bridge_config):
        options = ExportOptions()
        assert options.includes == ["stdgates.inc"]
        assert options.basis_gates == []
        assert options.disable_constants
        assert not options.allow_aliasing
        assert options.indent == "  "

    def test_config_overrides(self):
        config = BridgeConfig(EXPORT=ExportConfig(INCLUDES=[], DISABLE_CONSTANTS=False))
        with override_config(config):
            options = ExportOptions()
        assert options.includes == []
        assert not options.disable_constants

    def test_basis_gate_sets_are_sorted(self):
        options = ExportOptions(basis_gates={"rz", "cx", "sx"})
        assert options.basis_gates == ["cx", "rz", "sx"]

    def test_unknown_options_are_rejected(self):
        with pytest.raises(ValueError):
            ExportOptions(indentation="  ")


class TestNamespace:
    def test_names_are_escaped(self):
        namespace = Namespace({"if"})
        assert namespace.add("register", "my-reg") == "my_reg"
        assert namespace.add("register", "2q") == "_2q"
        assert namespace.add("register", "if") == "if_1"

    def test_names_are_stable_and_unique(self):
        namespace = Namespace()
        assert namespace.add("register", "a-b") == "a_b"
        assert namespace.add("register", "a_b") == "a_b_1"
        assert namespace.add("register", "a-b") == "a_b"
        assert namespace.add("parameter", "a_b") == "a_b_2"
        assert namespace.get("register", "a_b") == "a_b_1"
        assert namespace.get("gate", "a_b") is None


class TestPrograms:
    def test_bell(self, bell):
        assert export_circuit(bell) == (
            HEADER + "qubit[2] q;\n"
            "bit[2] c;\n"
            "h q[0];\n"
            "cx q[0], q[1];\n"
            "c[0] = measure q[0];\n"
            "c[1] = measure q[1];\n"
        )

    def test_export_is_deterministic(self, bell):
        assert export_circuit(bell) == export_circuit(bell)

    def test_export_leaves_circuit_untouched(self, bell):
        before = bell.model_copy(deep=True)
        export_circuit(bell)
        assert bell == before

    def test_empty_circuit(self):
        assert export_circuit(CircuitIR()) == HEADER

    def test_non_gate_operations(self, two_qubits):
        two_qubits.add("reset", [q(0)])
        two_qubits.add("barrier", [q(0), q(1)])
        two_qubits.add("measure", [q(1)])
        text = export_circuit(two_qubits)
        assert text.endswith("reset q[0];\nbarrier q[0], q[1];\nmeasure q[1];\n")

    def test_conditions(self, bell):
        bell.add("x", [q(1)], condition=Condition(reg="c", index=0, value=1))
        bell.add("h", [q(0)], condition=Condition(reg="c", value=2))
        text = export_circuit(bell)
        assert text.endswith(
            "if (c[0] == 1) {\n  x q[1];\n}\nif (c == 2) {\n  h q[0];\n}\n"
        )

    def test_custom_includes(self, two_qubits):
        text = export_circuit(two_qubits, options=ExportOptions(includes=[]))
        assert text == "OPENQASM 3.0;\nqubit[2] q;\n"


class TestParameters:
    def test_decimal_parameters(self, two_qubits):
        two_qubits.add("rz", [q(0)], [math.pi / 2])
        assert export_circuit(two_qubits).endswith("rz(1.5707963267948966) q[0];\n")

    def test_constants(self, two_qubits):
        two_qubits.add("rz", [q(0)], [math.pi / 2])
        two_qubits.add("rx", [q(1)], [NamedConstant(name="tau") * 3])
        options = ExportOptions(disable_constants=False)
        text = export_circuit(two_qubits, options=options)
        assert text.endswith("rz(pi / 2) q[0];\nrx(6 * pi) q[1];\n")

    def test_free_parameters_become_inputs(self, two_qubits):
        theta, phi = ParameterRef(name="theta"), ParameterRef(name="phi")
        two_qubits.add("rz", [q(0)], [theta * 2])
        two_qubits.add("rx", [q(1)], [phi + theta])
        assert export_circuit(two_qubits) == (
            HEADER + "input float[64] theta;\n"
            "input float[64] phi;\n"
            "qubit[2] q;\n"
            "rz(theta * 2.0) q[0];\n"
            "rx(phi + theta) q[1];\n"
        )

    def test_parameter_names_are_escaped(self, two_qubits):
        two_qubits.add("rz", [q(0)], [ParameterRef(name="for")])
        text = export_circuit(two_qubits)
        assert "input float[64] for_1;\n" in text
        assert text.endswith("rz(for_1) q[0];\n")

    @pytest.mark.parametrize("value", [math.inf, math.nan])
    def test_non_finite_parameters(self, two_qubits, value):
        two_qubits.add("h", [q(1)])
        two_qubits.add("rz", [q(0)], [value])
        with pytest.raises(ExportError) as error:
            export_circuit(two_qubits)
        assert error.value.instruction_index == 1


class TestGates:
    def test_basis_gates_are_never_defined(self, two_qubits):
        two_qubits.add("foo", [q(0)])
        text = export_circuit(two_qubits, options=ExportOptions(basis_gates=["foo"]))
        assert "gate foo" not in text
        assert text.endswith("foo q[0];\n")

    def test_undefined_gate(self, two_qubits):
        two_qubits.add("h", [q(0)])
        two_qubits.add("foo", [q(0)])
        with pytest.raises(ExportError, match="no definition") as error:
            export_circuit(two_qubits)
        assert error.value.instruction_index == 1

    def test_cx_needs_the_include_or_the_basis(self, two_qubits):
        two_qubits.add("cx", [q(0), q(1)])
        with pytest.raises(ExportError):
            export_circuit(two_qubits, options=ExportOptions(includes=[]))
        options = ExportOptions(includes=[], basis_gates=["cx"])
        assert export_circuit(two_qubits, options=options).endswith("cx q[0], q[1];\n")

    def test_circuit_definitions(self, two_qubits):
        two_qubits.add_gate_definition(
            GateDefinition(
                name="bell",
                qubits=("a", "b"),
                body=(
                    Instruction(name="h", qubits=(formal("a"),)),
                    Instruction(name="cx", qubits=(formal("a"), formal("b"))),
                ),
            )
        )
        two_qubits.add("bell", [q(0), q(1)])
        assert export_circuit(two_qubits) == (
            HEADER + "qubit[2] q;\n"
            "gate bell a, b {\n"
            "  h a;\n"
            "  cx a, b;\n"
            "}\n"
            "bell q[0], q[1];\n"
        )

    def test_definitions_use_the_indent(self, two_qubits):
        two_qubits.add_gate_definition(
            GateDefinition(
                name="g",
                qubits=("a",),
                body=(Instruction(name="x", qubits=(formal("a"),)),),
            )
        )
        two_qubits.add("g", [q(0)])
        text = export_circuit(two_qubits, options=ExportOptions(indent="\t"))
        assert "gate g a {\n\tx a;\n}\n" in text

    def test_dependencies_are_defined_first(self, two_qubits):
        two_qubits.add_gate_definition(
            GateDefinition(
                name="outer",
                qubits=("a",),
                body=(Instruction(name="inner", qubits=(formal("a"),)),),
            )
        )
        two_qubits.add_gate_definition(
            GateDefinition(
                name="inner",
                qubits=("a",),
                body=(Instruction(name="x", qubits=(formal("a"),)),),
            )
        )
        two_qubits.add("outer", [q(0)])
        text = export_circuit(two_qubits)
        assert text.index("gate inner") < text.index("gate outer")

    def test_definition_cycles(self, two_qubits):
        for name, callee in (("f", "g"), ("g", "f")):
            two_qubits.add_gate_definition(
                GateDefinition(
                    name=name,
                    qubits=("a",),
                    body=(Instruction(name=callee, qubits=(formal("a"),)),),
                )
            )
        two_qubits.add("f", [q(0)])
        with pytest.raises(ExportError, match="f -> g -> f"):
            export_circuit(two_qubits)

    def test_library_gates_are_defined_without_the_include(self, two_qubits):
        two_qubits.add("cz", [q(0), q(1)])
        options = ExportOptions(includes=[], basis_gates=["cx"])
        text = export_circuit(two_qubits, options=options)
        assert text.index("gate h a {") < text.index("gate cz a, b {")
        assert text.endswith("cz q[0], q[1];\n")

    def test_definition_names_are_escaped(self, two_qubits):
        two_qubits.add_gate_definition(
            GateDefinition(
                name="my gate",
                params=("in",),
                qubits=("a",),
                body=(
                    Instruction(
                        name="rx",
                        qubits=(formal("a"),),
                        params=(ParameterRef(name="in"),),
                    ),
                ),
            )
        )
        two_qubits.add("my gate", [q(0)], [0.5])
        text = export_circuit(two_qubits)
        assert "gate my_gate(in_1) a {\n  rx(in_1) a;\n}\n" in text
        assert text.endswith("my_gate(0.5) q[0];\n")

    @pytest.mark.parametrize(
        "instruction",
        [
            Instruction(name="h", qubits=(q(0), q(1))),
            Instruction(name="rz", qubits=(q(0),)),
            Instruction(name="U", qubits=(q(0),), params=(0.1,)),
        ],
    )
    def test_signature_mismatches(self, two_qubits, instruction):
        two_qubits.append(instruction)
        with pytest.raises(ExportError, match="takes"):
            export_circuit(two_qubits)


class TestRegisters:
    def test_register_names_are_escaped(self):
        circuit = CircuitIR()
        circuit.add_qubits("my-reg", 1)
        circuit.add_clbits("if", 1)
        circuit.add("measure", [q(0, "my-reg")], clbits=[c(0, "if")])
        text = export_circuit(circuit)
        assert "qubit[1] my_reg;\nbit[1] if_1;\n" in text
        assert text.endswith("if_1[0] = measure my_reg[0];\n")

    def test_registers_never_shadow_gates(self):
        circuit = CircuitIR()
        circuit.add_qubits("h", 1)
        circuit.add("h", [q(0, "h")])
        assert export_circuit(circuit).endswith("qubit[1] h_1;\nh h_1[0];\n")

    def test_scalar_registers(self):
        circuit = CircuitIR()
        circuit.add_qubits("q", 1, scalar=True)
        circuit.add_clbits("b", 1, scalar=True)
        circuit.add("h", [q(0)])
        circuit.add("measure", [q(0)], clbits=[c(0, "b")])
        circuit.add("x", [q(0)], condition=Condition(reg="b", value=1))
        assert export_circuit(circuit) == (
            HEADER + "qubit q;\n"
            "bit b;\n"
            "h q;\n"
            "b = measure q;\n"
            "if (b == 1) {\n"
            "  x q;\n"
            "}\n"
        )

    def test_aliases_are_resolved_without_a_layout(self):
        circuit = CircuitIR()
        circuit.add_qubits("q", 3)
        circuit.add_alias(Alias(name="a", targets=(q(2), q(0))))
        circuit.add("cx", [BitRef(reg="a", index=0), BitRef(reg="a", index=1)])
        text = export_circuit(circuit)
        assert "let" not in text
        assert text.endswith("qubit[3] q;\ncx q[2], q[0];\n")


class TestLayout:
    @pytest.fixture
    def placed(self):
        circuit = CircuitIR()
        circuit.add_qubits("q", 3)
        circuit.add_clbits("c", 1)
        circuit.add_alias(Alias(name="a", targets=(q(2), q(0))))
        circuit.layout = Layout(physical_qubits=(4, 0, 2))
        circuit.add("h", [q(0)])
        circuit.add("cx", [BitRef(reg="a", index=0), BitRef(reg="a", index=1)])
        circuit.add("measure", [q(1)], clbits=[c(0)])
        return circuit

    def test_physical_qubits(self, placed):
        assert export_circuit(placed, layout_present=True) == (
            HEADER + "bit[1] c;\n"
            "h $4;\n"
            "cx $2, $4;\n"
            "c[0] = measure $0;\n"
        )

    def test_layout_is_ignored_unless_present(self, placed):
        assert "qubit[3] q;" in export_circuit(placed)

    def test_aliasing(self, placed):
        options = ExportOptions(allow_aliasing=True)
        assert export_circuit(placed, layout_present=True, options=options) == (
            HEADER + "let q = $4 ++ $0 ++ $2;\n"
            "bit[1] c;\n"
            "let a = q[2] ++ q[0];\n"
            "h q[0];\n"
            "cx a[0], a[1];\n"
            "c[0] = measure q[1];\n"
        )

    def test_single_qubit_aliases_are_scalar(self):
        circuit = CircuitIR()
        circuit.add_qubits("q", 1)
        circuit.layout = Layout(physical_qubits=(3,))
        circuit.add("x", [q(0)])
        options = ExportOptions(allow_aliasing=True)
        text = export_circuit(circuit, layout_present=True, options=options)
        assert text.endswith("let q = $3;\nx q;\n")

    def test_missing_layout(self, bell):
        with pytest.raises(ExportError, match="none") as error:
            export_circuit(bell, layout_present=True)
        assert error.value.instruction_index is None

    def test_repeated_physical_qubits(self, bell):
        bell.layout = Layout(physical_qubits=(1, 1))
        with pytest.raises(ExportError, match="same physical qubit"):
            export_circuit(bell, layout_present=True)

    def test_qubits_outside_the_layout(self, bell):
        bell.layout = Layout(physical_qubits=(5,))
        with pytest.raises(ExportError, match="not covered") as error:
            export_circuit(bell, layout_present=True)
        assert error.value.instruction_index == 1


class TestSinks:
    def test_text_sink(self, bell):
        sink = io.StringIO()
        export_circuit_to(bell, False, None, sink)
        assert sink.getvalue() == export_circuit(bell)

    def test_binary_sink(self, bell):
        sink = io.BytesIO()
        export_circuit_to(bell, False, None, sink)
        assert sink.getvalue() == export_circuit(bell).encode("utf-8")

    def test_sink_is_untouched_on_failure(self, two_qubits):
        two_qubits.add("foo", [q(0)])
        sink = io.StringIO()
        with pytest.raises(ExportError):
            export_circuit_to(two_qubits, False, None, sink)
        assert sink.getvalue() == ""


class TestStandardGates:
    @pytest.mark.parametrize("name, signature", sorted(STDGATES.items()))
    def test_every_standard_gate_reduces_to_primitives(self, name, signature):
        num_params, num_qubits = signature
        circuit = CircuitIR()
        circuit.add_qubits("q", 3)
        circuit.add(name, [q(i) for i in range(num_qubits)], [0.1] * num_params)

        options = ExportOptions(includes=[], basis_gates=["cx", "CX"])
        text = export_circuit(circuit, options=options)
        assert "include" not in text

        custom_gates = [
            CustomGate(name="cx", num_params=0, num_qubits=2),
            CustomGate(name="CX", num_params=0, num_qubits=2),
        ]
        reloaded = loads(text, custom_gates=custom_gates)
        assert {instruction.name for instruction in reloaded} <= {"U", "gphase", "cx", "CX"}

    def test_exporter_builds_an_ast(self, bell):
        program = QASM3Exporter(bell).build_program()
        assert program.version == "3.0"
        assert program.statements[0] == ast.Include("stdgates.inc")
        assert isinstance(program.statements[-1], ast.QuantumMeasurementStatement)
