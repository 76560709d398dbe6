# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd

from oqbridge.backend.exporter import ExportOptions as ExportOptions
from oqbridge.backend.exporter import QASM3Exporter as QASM3Exporter
from oqbridge.backend.exporter import export_circuit as export_circuit
from oqbridge.backend.exporter import export_circuit_to as export_circuit_to
