# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
"""
Entry points for moving between OpenQASM 3 text and :class:`CircuitIR`.
"""
import io
import os
from typing import BinaryIO, Iterable, Mapping, Optional, TextIO, Union

from openqasm3 import ast

from oqbridge.backend.exporter import ExportOptions, export_circuit, export_circuit_to
from oqbridge.config import get_config
from oqbridge.exceptions import QASM3ImporterError
from oqbridge.frontend.builder import build_circuit
from oqbridge.ir.circuit import CircuitIR
from oqbridge.ir.gates import CustomGate, GateFactory
from oqbridge.qasm.parser import QASM3Parser
from oqbridge.qasm.semantics import analyse
from oqbridge.utils.logger import get_default_logger

log = get_default_logger()

PathOrStream = Union[str, os.PathLike, TextIO]


def _parser(include_path: Optional[Iterable[Union[str, os.PathLike]]]) -> QASM3Parser:
    if include_path is None:
        include_path = get_config().INCLUDE_PATH
    return QASM3Parser(include_path)


def parse(
    source: str, include_path: Optional[Iterable[Union[str, os.PathLike]]] = None
) -> ast.Program:
    """
    Parses OpenQASM 3 source text. Non-library includes are read from the working
    directory, then from ``include_path`` (by default the configured ``INCLUDE_PATH``).

    :raises QASM3ImporterError: If the source is not valid OpenQASM 3.
    """
    return _parser(include_path).parse(source)


def _build(
    program: ast.Program,
    custom_gates: Optional[Iterable[CustomGate]],
    parameter_values: Optional[Mapping[str, float]],
) -> CircuitIR:
    result = analyse(program)
    result.raise_for_errors()
    gate_factory = GateFactory(custom_gates or ())
    return build_circuit(program, result.symbol_table, gate_factory, parameter_values)


def loads(
    source: str,
    *,
    custom_gates: Optional[Iterable[CustomGate]] = None,
    include_path: Optional[Iterable[Union[str, os.PathLike]]] = None,
    parameter_values: Optional[Mapping[str, float]] = None,
) -> CircuitIR:
    """
    Builds a circuit from OpenQASM 3 source text.

    :param source: The program source.
    :param custom_gates: Gates to use in place of, or in addition to, the gates of the
        included libraries.
    :param include_path: Directories searched for included files.
    :param parameter_values: Values for the program's ``input`` declarations.
    :raises QASM3ImporterError: If parsing or semantic analysis fails.
    :raises BuildError: If the program cannot be lowered to a circuit.
    """
    program = _parser(include_path).parse(source)
    return _build(program, custom_gates, parameter_values)


def load(
    pathlike_or_filelike: PathOrStream,
    *,
    custom_gates: Optional[Iterable[CustomGate]] = None,
    include_path: Optional[Iterable[Union[str, os.PathLike]]] = None,
    parameter_values: Optional[Mapping[str, float]] = None,
) -> CircuitIR:
    """
    Builds a circuit from an OpenQASM 3 file, given by path or as an open text stream.
    Includes of a file given by path are also searched for next to it.

    See :func:`loads` for the other arguments.
    """
    parser = _parser(include_path)
    if isinstance(pathlike_or_filelike, io.TextIOBase):
        program = parser.parse(pathlike_or_filelike.read())
    else:
        path = os.fspath(pathlike_or_filelike)
        try:
            program = parser.parse_file(path)
        except OSError as e:
            raise QASM3ImporterError(f"Failed to read file '{path}': {e}") from e
    return _build(program, custom_gates, parameter_values)


def dumps(circuit: CircuitIR, **options) -> str:
    """
    Serialises a circuit to OpenQASM 3 text. Qubits are addressed through the
    circuit's layout when it has one.

    :param options: Fields of :class:`ExportOptions`.
    :raises ExportError: If the circuit cannot be serialised.
    """
    return export_circuit(circuit, circuit.layout is not None, ExportOptions(**options))


def dump(circuit: CircuitIR, stream: Union[TextIO, BinaryIO], **options):
    """Serialises a circuit into a text or binary stream. See :func:`dumps`."""
    export_circuit_to(circuit, circuit.layout is not None, ExportOptions(**options), stream)
