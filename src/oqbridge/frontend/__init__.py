# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd

from oqbridge.frontend.builder import CircuitBuilder as CircuitBuilder
from oqbridge.frontend.builder import build_circuit as build_circuit
