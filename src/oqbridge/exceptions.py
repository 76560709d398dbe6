# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
from typing import Optional, Sequence


class QASM3Error(Exception):
    """Base class for every error raised while importing or exporting OpenQASM 3."""


class QASM3ImporterError(QASM3Error):
    """
    Raised when the front-end rejects a program, either because it is not valid
    OpenQASM 3 syntax or because semantic analysis reported diagnostics.
    """

    def __init__(self, message: str, diagnostics: Sequence = ()):
        super().__init__(message)
        self.diagnostics = list(diagnostics)


class CircuitError(QASM3Error):
    """Raised when an operation would break the consistency of a circuit."""


class BuildError(QASM3Error):
    """
    Raised when a validated program cannot be lowered to a circuit.

    :param message: Description of the failure.
    :param position: ``(line, column)`` of the statement or expression responsible, when
        it is known.
    """

    def __init__(self, message: str, position: Optional[tuple[int, int]] = None):
        self.message = message
        self.position = position
        if position is not None:
            message = f"{message} (line {position[0]}, column {position[1]})"
        super().__init__(message)


class ExportError(QASM3Error):
    """
    Raised when a circuit cannot be serialised.

    :param message: Description of the failure.
    :param instruction_index: Position of the offending instruction in the circuit's
        instruction list, when the failure is tied to one.
    """

    def __init__(self, message: str, instruction_index: Optional[int] = None):
        self.message = message
        self.instruction_index = instruction_index
        if instruction_index is not None:
            message = f"instruction {instruction_index}: {message}"
        super().__init__(message)
