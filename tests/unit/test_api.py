# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
import io
import math

import pytest
from openqasm3 import ast

from oqbridge.api import dump, dumps, load, loads, parse
from oqbridge.config import BridgeConfig, ExportConfig, override_config
from oqbridge.exceptions import BuildError, QASM3ImporterError

from tests.unit.utils.qasm_qir import (
    get_all_qasm3_paths,
    get_default_qasm3_gate_qasms,
    get_qasm3,
    get_qasm3_path,
    render_qasm3_template,
)

ROUND_TRIP_FILES = sorted(
    path.name
    for path in get_all_qasm3_paths()
    if path.name not in {"include_cycle.qasm", "parameters.qasm"}
)


def _summary(circuit):
    return [
        (
            instruction.name,
            tuple(str(qubit) for qubit in instruction.qubits),
            tuple(str(clbit) for clbit in instruction.clbits),
            tuple(param.fold() for param in instruction.params),
            instruction.condition,
        )
        for instruction in circuit
    ]


def assert_same_circuit(first, second):
    assert [(r.name, r.kind, r.size, r.scalar) for r in first.registers.values()] == [
        (r.name, r.kind, r.size, r.scalar) for r in second.registers.values()
    ]
    first_summary, second_summary = _summary(first), _summary(second)
    assert len(first_summary) == len(second_summary)
    for left, right in zip(first_summary, second_summary):
        assert left[:3] == right[:3]
        assert left[3] == pytest.approx(right[3])
        assert left[4] == right[4]
    assert first.layout == second.layout


class TestRoundTrip:
    @pytest.mark.parametrize("file_name", ROUND_TRIP_FILES)
    def test_fixtures(self, file_name, bridge_config):
        circuit = load(get_qasm3_path(file_name))
        text = dumps(circuit)
        assert_same_circuit(circuit, loads(text))
        assert dumps(loads(text)) == text

    def test_bound_inputs(self):
        values = {"theta": 0.5, "phi": 0.25}
        circuit = load(get_qasm3_path("parameters.qasm"), parameter_values=values)
        reloaded = loads(dumps(circuit))
        assert_same_circuit(circuit, reloaded)
        assert reloaded.instructions[1].params[0].fold() == pytest.approx(0.5 + math.pi)

    @pytest.mark.parametrize(
        "name, program",
        get_default_qasm3_gate_qasms(),
        ids=[name for name, _ in get_default_qasm3_gate_qasms()],
    )
    def test_standard_gates(self, name, program):
        circuit = loads(program)
        assert circuit.instructions[0].name == name
        assert_same_circuit(circuit, loads(dumps(circuit)))

    @pytest.mark.parametrize("seed", [1, 2, 3])
    def test_templates(self, seed):
        program = render_qasm3_template("rotation_layer.qasm", seed=seed, qubit_count=3)
        circuit = loads(program)
        assert [instruction.name for instruction in circuit].count("rx") == 3
        assert_same_circuit(circuit, loads(dumps(circuit)))

    def test_constants(self):
        circuit = loads('include "stdgates.inc"; qubit q; rz(pi/2) q; rx(-3*pi/4) q;')
        text = dumps(circuit, disable_constants=False)
        assert text.endswith("rz(pi / 2) q;\nrx(-3 * pi / 4) q;\n")
        assert_same_circuit(circuit, loads(text))

    def test_scalar_declarations(self):
        source = (
            'include "stdgates.inc"; qubit q; qubit[1] r; bit b;'
            "h q; b = measure r[0];"
        )
        text = dumps(loads(source))
        assert "qubit q;\nqubit[1] r;\nbit b;\n" in text
        assert text.endswith("h q;\nb = measure r[0];\n")
        assert_same_circuit(loads(source), loads(text))

    def test_constants_from_config(self):
        circuit = loads('include "stdgates.inc"; qubit q; rz(tau) q;')
        with override_config(BridgeConfig(EXPORT=ExportConfig(DISABLE_CONSTANTS=False))):
            text = dumps(circuit)
        assert text.endswith("rz(2 * pi) q;\n")


class TestLoad:
    def test_load_from_path_and_string(self):
        path = get_qasm3_path("basic.qasm")
        from_path = load(path)
        assert_same_circuit(from_path, load(str(path)))
        assert_same_circuit(from_path, loads(get_qasm3(path)))

    def test_load_from_stream(self):
        stream = io.StringIO(get_qasm3("basic.qasm"))
        assert [instruction.name for instruction in load(stream)] == [
            "h",
            "cx",
            "measure",
            "measure",
        ]

    def test_includes_are_found_next_to_the_file(self):
        circuit = load(get_qasm3_path("include_file.qasm"))
        assert [instruction.name for instruction in circuit] == ["h", "cx"]

    def test_include_path(self):
        source = (
            'include "stdgates.inc"; include "my_gates.inc";'
            "qubit[2] q; bell q[0], q[1];"
        )
        with pytest.raises(QASM3ImporterError, match="not found"):
            loads(source)
        circuit = loads(source, include_path=[get_qasm3_path("includes")])
        assert [instruction.name for instruction in circuit] == ["h", "cx"]

    def test_include_path_from_config(self):
        source = (
            'include "stdgates.inc"; include "my_gates.inc";'
            "qubit[2] q; bell q[0], q[1];"
        )
        config = BridgeConfig(INCLUDE_PATH=[get_qasm3_path("includes")])
        with override_config(config):
            assert len(loads(source)) == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(QASM3ImporterError, match="Failed to read file"):
            load(tmp_path / "missing.qasm")

    def test_syntax_errors(self):
        with pytest.raises(QASM3ImporterError):
            loads("qubit q")

    def test_semantic_errors(self):
        with pytest.raises(QASM3ImporterError) as error:
            loads("qubit q;\nh r;\n")
        assert [str(d) for d in error.value.diagnostics] == [
            "2:3: 'r' is not defined in this scope"
        ]

    def test_build_errors(self):
        with pytest.raises(BuildError, match="out of range"):
            loads('include "stdgates.inc"; qubit[2] q; h q[2];')

    def test_parse(self):
        program = parse("OPENQASM 3.0;\nqubit q;\n")
        assert program.version == "3.0"
        assert program.statements == [ast.QubitDeclaration(ast.Identifier("q"), None)]


class TestDump:
    def test_text_stream(self):
        circuit = load(get_qasm3_path("basic.qasm"))
        stream = io.StringIO()
        dump(circuit, stream)
        assert stream.getvalue() == dumps(circuit)

    def test_binary_stream(self):
        circuit = load(get_qasm3_path("basic.qasm"))
        stream = io.BytesIO()
        dump(circuit, stream)
        assert stream.getvalue() == dumps(circuit).encode("utf-8")

    def test_layout_is_used_when_present(self):
        circuit = load(get_qasm3_path("hardware_qubits.qasm"))
        text = dumps(circuit)
        assert "qubit" not in text
        assert "cx $0, $2;\n" in text

    def test_options_are_validated(self):
        circuit = load(get_qasm3_path("basic.qasm"))
        with pytest.raises(ValueError):
            dumps(circuit, indentation="\t")
