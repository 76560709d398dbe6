# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
from oqbridge.api import dump as dump
from oqbridge.api import dumps as dumps
from oqbridge.api import load as load
from oqbridge.api import loads as loads
from oqbridge.api import parse as parse
from oqbridge.backend.exporter import ExportOptions as ExportOptions
from oqbridge.backend.exporter import export_circuit as export_circuit
from oqbridge.backend.exporter import export_circuit_to as export_circuit_to
from oqbridge.config import BridgeConfig as BridgeConfig
from oqbridge.config import get_config as get_config
from oqbridge.exceptions import BuildError as BuildError
from oqbridge.exceptions import CircuitError as CircuitError
from oqbridge.exceptions import ExportError as ExportError
from oqbridge.exceptions import QASM3Error as QASM3Error
from oqbridge.exceptions import QASM3ImporterError as QASM3ImporterError
from oqbridge.frontend.builder import build_circuit as build_circuit
from oqbridge.ir.circuit import Alias as Alias
from oqbridge.ir.circuit import BitRef as BitRef
from oqbridge.ir.circuit import CircuitIR as CircuitIR
from oqbridge.ir.circuit import Condition as Condition
from oqbridge.ir.circuit import GateDefinition as GateDefinition
from oqbridge.ir.circuit import Instruction as Instruction
from oqbridge.ir.circuit import Layout as Layout
from oqbridge.ir.circuit import Register as Register
from oqbridge.ir.circuit import RegisterKind as RegisterKind
from oqbridge.ir.gates import CustomGate as CustomGate
from oqbridge.ir.gates import GateFactory as GateFactory
from oqbridge.ir.parameters import ParameterExpression as ParameterExpression
from oqbridge.ir.parameters import ParameterRef as ParameterRef
from oqbridge.qasm.semantics import analyse as analyse
