# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
"""
Small helpers over :mod:`openqasm3.ast` nodes shared by the semantic pass, the builder
and the exporter.
"""
from typing import Optional

from openqasm3 import ast

SCALAR_TYPES = {
    ast.BitType: "bit",
    ast.IntType: "int",
    ast.UintType: "uint",
    ast.FloatType: "float",
    ast.AngleType: "angle",
    ast.BoolType: "bool",
}
"""Classical types the bridge can declare, by the keyword that spells them."""


def position(node: Optional[ast.QASMNode]) -> Optional[tuple[int, int]]:
    """``(line, column)`` where a node starts, both counted from one."""
    span = getattr(node, "span", None)
    if span is None:
        return None
    return span.start_line, span.start_column + 1


def type_name(type_: ast.ClassicalType) -> str:
    """
    Keyword of a scalar classical type.

    :raises ValueError: For array, complex, duration and other unsupported types.
    """
    for cls, name in SCALAR_TYPES.items():
        if isinstance(type_, cls):
            return name
    raise ValueError(f"Type '{type(type_).__name__}' is not supported.")


def type_size(type_: ast.ClassicalType) -> Optional[ast.Expression]:
    return getattr(type_, "size", None)


def hardware_index(node: ast.HardwareQubit) -> int:
    return int(node.name.lstrip("$"))


def hardware_qubit(index: int) -> ast.HardwareQubit:
    return ast.HardwareQubit(name=f"${index}")


def identifier_name(node: ast.Expression) -> Optional[str]:
    """
    Name of an identifier, or of the identifier being indexed, as in ``q[0]`` or
    ``q[1:2][0]``. ``None`` for anything else.
    """
    if isinstance(node, ast.Identifier):
        return node.name
    if isinstance(node, ast.IndexedIdentifier):
        return node.name.name
    if isinstance(node, ast.IndexExpression):
        return identifier_name(node.collection)
    return None
