# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
"""
Arithmetic over literals, the named constants ``pi``, ``tau`` and ``euler``, and
symbolic parameters, as carried by gate instructions.

Expressions are immutable trees. :meth:`ParameterExpression.fold` evaluates as far as
the bound values allow, and :meth:`ParameterExpression.format` renders an expression as
OpenQASM 3 text, either as the shortest decimal literal that reads back to the same
float or, when constants are enabled, as an exact multiple of a named constant such as
``pi / 2`` or ``-3 * tau / 4``.
"""
import math
import numbers
from abc import abstractmethod
from fractions import Fraction
from typing import Collection, Literal, Mapping, Optional, Union

import numpy as np
from openqasm3 import ast
from openqasm3.printer import dumps
from pydantic import field_validator

from oqbridge.config import get_config
from oqbridge.utils.pydantic import Name, NoExtraFieldsFrozenModel

NAMED_CONSTANTS = {"pi": math.pi, "tau": math.tau, "euler": math.e}

FUNCTIONS = {
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "arcsin": math.asin,
    "arccos": math.acos,
    "arctan": math.atan,
    "exp": math.exp,
    "ln": math.log,
    "sqrt": math.sqrt,
}

_BINARY_OPERATIONS = {
    "+": lambda lhs, rhs: lhs + rhs,
    "-": lambda lhs, rhs: lhs - rhs,
    "*": lambda lhs, rhs: lhs * rhs,
    "/": lambda lhs, rhs: lhs / rhs,
    "**": math.pow,
}


class ConstantTracker:
    """Records, in first-use order, the named constants used while formatting."""

    def __init__(self):
        self.used: dict[str, None] = {}

    def record(self, name: str):
        self.used.setdefault(name, None)

    def __iter__(self):
        return iter(self.used)

    def __len__(self):
        return len(self.used)


class ParameterExpression(NoExtraFieldsFrozenModel):
    """Base class of every node in a parameter expression tree."""

    @abstractmethod
    def fold(self) -> Union[float, "ParameterExpression"]:
        """
        Evaluates the expression. Returns a float when every leaf is a literal or a
        named constant, otherwise the partially folded symbolic remainder.
        """

    @abstractmethod
    def bind(
        self, values: Mapping[str, Union[numbers.Real, "ParameterExpression"]]
    ) -> "ParameterExpression":
        """Substitutes the parameters named in ``values``."""

    @property
    def parameters(self) -> tuple[str, ...]:
        """Names of the free parameters, in first-use order."""
        names: dict[str, None] = {}
        self._collect_parameters(names)
        return tuple(names)

    @property
    def is_symbolic(self) -> bool:
        return len(self.parameters) > 0

    def _collect_parameters(self, names: dict[str, None]):
        pass

    @abstractmethod
    def _to_ast(self, options: "_FormatOptions") -> ast.Expression: ...

    def to_ast(
        self,
        disable_constants: bool = True,
        max_denominator: Optional[int] = None,
        constants: Optional[ConstantTracker] = None,
    ) -> ast.Expression:
        """
        Converts the expression into an OpenQASM 3 expression node.

        :param disable_constants: Always print numbers as decimal literals.
        :param max_denominator: Largest denominator tried when matching a value against
            a rational multiple of a named constant. Defaults to the configured value.
        :param constants: Tracker recording the named constants that are printed.
        :raises ValueError: If the expression folds to a non-finite value.
        """
        if max_denominator is None:
            max_denominator = get_config().EXPORT.MAX_CONSTANT_DENOMINATOR
        options = _FormatOptions(
            disable_constants,
            max_denominator,
            constants if constants is not None else ConstantTracker(),
        )
        folded = self.fold()
        if isinstance(folded, float):
            return _number_to_ast(folded, options)
        return folded._to_ast(options)

    def format(
        self,
        disable_constants: bool = True,
        max_denominator: Optional[int] = None,
        constants: Optional[ConstantTracker] = None,
    ) -> str:
        """Renders the expression as OpenQASM 3 text. See :meth:`to_ast`."""
        return dumps(self.to_ast(disable_constants, max_denominator, constants))

    def memo_key(self) -> tuple[str, Union[float, str]]:
        """
        Key under which two expressions are considered the same: the folded value when
        the expression is numeric, its canonical text otherwise.
        """
        folded = self.fold()
        if isinstance(folded, float):
            return "value", folded
        return "text", folded.format(disable_constants=True)

    def __str__(self):
        return self.format(disable_constants=False)

    def __add__(self, other):
        return _binary("+", self, other)

    def __radd__(self, other):
        return _binary("+", other, self)

    def __sub__(self, other):
        return _binary("-", self, other)

    def __rsub__(self, other):
        return _binary("-", other, self)

    def __mul__(self, other):
        return _binary("*", self, other)

    def __rmul__(self, other):
        return _binary("*", other, self)

    def __truediv__(self, other):
        return _binary("/", self, other)

    def __rtruediv__(self, other):
        return _binary("/", other, self)

    def __pow__(self, other):
        return _binary("**", self, other)

    def __rpow__(self, other):
        return _binary("**", other, self)

    def __neg__(self):
        return UnaryOp(op="-", operand=self)


class LiteralValue(ParameterExpression):
    value: float

    @field_validator("value", mode="before")
    @classmethod
    def unwrap_numpy_scalars(cls, value):
        if isinstance(value, np.generic):
            return value.item()
        return value

    def fold(self):
        return float(self.value)

    def bind(self, values):
        return self

    def _to_ast(self, options):
        return _number_to_ast(float(self.value), options)


class NamedConstant(ParameterExpression):
    name: Literal["pi", "tau", "euler"]

    def fold(self):
        return NAMED_CONSTANTS[self.name]

    def bind(self, values):
        return self

    def _to_ast(self, options):
        options.constants.record(self.name)
        return ast.Identifier(self.name)


class ParameterRef(ParameterExpression):
    name: Name

    def fold(self):
        return self

    def bind(self, values):
        if self.name in values:
            return as_expression(values[self.name])
        return self

    def _collect_parameters(self, names):
        names.setdefault(self.name, None)

    def _to_ast(self, options):
        return ast.Identifier(self.name)


class UnaryOp(ParameterExpression):
    op: Literal["-"]
    operand: ParameterExpression

    def fold(self):
        operand = self.operand.fold()
        if isinstance(operand, float):
            return -operand
        return UnaryOp(op=self.op, operand=operand)

    def bind(self, values):
        return UnaryOp(op=self.op, operand=self.operand.bind(values))

    def _collect_parameters(self, names):
        self.operand._collect_parameters(names)

    def _to_ast(self, options):
        return ast.UnaryExpression(
            ast.UnaryOperator[self.op], self.operand._to_ast(options)
        )


class BinaryOp(ParameterExpression):
    op: Literal["+", "-", "*", "/", "**"]
    lhs: ParameterExpression
    rhs: ParameterExpression

    def fold(self):
        lhs, rhs = self.lhs.fold(), self.rhs.fold()
        if isinstance(lhs, float) and isinstance(rhs, float):
            return _BINARY_OPERATIONS[self.op](lhs, rhs)
        return BinaryOp(op=self.op, lhs=as_expression(lhs), rhs=as_expression(rhs))

    def bind(self, values):
        return BinaryOp(op=self.op, lhs=self.lhs.bind(values), rhs=self.rhs.bind(values))

    def _collect_parameters(self, names):
        self.lhs._collect_parameters(names)
        self.rhs._collect_parameters(names)

    def _to_ast(self, options):
        return ast.BinaryExpression(
            ast.BinaryOperator[self.op],
            self.lhs._to_ast(options),
            self.rhs._to_ast(options),
        )


class MathFunction(ParameterExpression):
    function: Literal[
        "sin", "cos", "tan", "arcsin", "arccos", "arctan", "exp", "ln", "sqrt"
    ]
    argument: ParameterExpression

    def fold(self):
        argument = self.argument.fold()
        if isinstance(argument, float):
            return FUNCTIONS[self.function](argument)
        return MathFunction(function=self.function, argument=argument)

    def bind(self, values):
        return MathFunction(function=self.function, argument=self.argument.bind(values))

    def _collect_parameters(self, names):
        self.argument._collect_parameters(names)

    def _to_ast(self, options):
        return ast.FunctionCall(
            ast.Identifier(self.function), [self.argument._to_ast(options)]
        )


def as_expression(value) -> ParameterExpression:
    """Promotes plain numbers to :class:`LiteralValue`; expressions pass through."""
    if isinstance(value, ParameterExpression):
        return value
    if isinstance(value, (numbers.Real, np.number)) and not isinstance(value, bool):
        return LiteralValue(value=value)
    raise TypeError(f"Cannot use {type(value).__name__} '{value}' as a parameter.")


_CONSTANT_SPELLINGS = {"π": "pi", "τ": "tau", "ℇ": "euler"}


def expression_from_ast(
    node: ast.Expression, parameters: Collection[str] = ()
) -> ParameterExpression:
    """
    Converts an OpenQASM 3 arithmetic expression into a parameter expression.

    :param node: Expression built from literals, named constants, the names in
        ``parameters``, the arithmetic operators and the builtin math functions.
    :param parameters: Identifiers read as parameter references.
    :raises ValueError: If the expression uses anything else.
    """
    if isinstance(node, (ast.IntegerLiteral, ast.FloatLiteral)):
        return LiteralValue(value=node.value)
    if isinstance(node, ast.Identifier):
        name = _CONSTANT_SPELLINGS.get(node.name, node.name)
        if name in parameters:
            return ParameterRef(name=name)
        if name in NAMED_CONSTANTS:
            return NamedConstant(name=name)
        raise ValueError(f"Unknown parameter '{node.name}'.")
    if isinstance(node, ast.UnaryExpression) and node.op.name == "-":
        return -expression_from_ast(node.expression, parameters)
    if isinstance(node, ast.BinaryExpression) and node.op.name in _BINARY_OPERATIONS:
        return BinaryOp(
            op=node.op.name,
            lhs=expression_from_ast(node.lhs, parameters),
            rhs=expression_from_ast(node.rhs, parameters),
        )
    if (
        isinstance(node, ast.FunctionCall)
        and node.name.name in FUNCTIONS
        and len(node.arguments) == 1
    ):
        return MathFunction(
            function=node.name.name,
            argument=expression_from_ast(node.arguments[0], parameters),
        )
    raise ValueError(f"Unsupported parameter expression '{dumps(node)}'.")


def _binary(op: str, lhs, rhs):
    try:
        return BinaryOp(op=op, lhs=as_expression(lhs), rhs=as_expression(rhs))
    except TypeError:
        return NotImplemented


class _FormatOptions:
    __slots__ = ("disable_constants", "max_denominator", "constants")

    def __init__(self, disable_constants, max_denominator, constants):
        self.disable_constants = disable_constants
        self.max_denominator = max_denominator
        self.constants = constants


def _evaluate_multiple(numerator: int, denominator: int, constant: float) -> float:
    # Same operation order as the expression built by _multiple_to_ast.
    if denominator == 1:
        if numerator == 1:
            return constant
        if numerator == -1:
            return -constant
        return numerator * constant
    if numerator == 1:
        return constant / denominator
    if numerator == -1:
        return -constant / denominator
    return numerator * constant / denominator


def _negated(node: ast.Expression) -> ast.UnaryExpression:
    return ast.UnaryExpression(ast.UnaryOperator["-"], node)


def _multiple_to_ast(numerator: int, denominator: int, name: str) -> ast.Expression:
    constant = ast.Identifier(name)
    if numerator == 1:
        top = constant
    elif numerator == -1:
        top = _negated(constant)
    else:
        factor = ast.IntegerLiteral(abs(numerator))
        top = ast.BinaryExpression(
            ast.BinaryOperator["*"],
            factor if numerator > 0 else _negated(factor),
            constant,
        )
    if denominator == 1:
        return top
    return ast.BinaryExpression(
        ast.BinaryOperator["/"], top, ast.IntegerLiteral(denominator)
    )


def constant_multiple(value: float, max_denominator: int) -> Optional[tuple[str, int, int]]:
    """
    Finds a named constant and a ratio ``numerator/denominator`` whose printed
    expression evaluates to exactly ``value``. Returns ``None`` if there is none.
    """
    if value == 0.0 or not math.isfinite(value):
        return None
    for name, constant in NAMED_CONSTANTS.items():
        ratio = Fraction(value / constant).limit_denominator(max_denominator)
        if ratio == 0:
            continue
        numerator, denominator = ratio.numerator, ratio.denominator
        if _evaluate_multiple(numerator, denominator, constant) == value:
            return name, numerator, denominator
    return None


def _number_to_ast(value: float, options: _FormatOptions) -> ast.Expression:
    if not math.isfinite(value):
        raise ValueError(f"Cannot format the non-finite value {value}.")
    if not options.disable_constants:
        if (multiple := constant_multiple(value, options.max_denominator)) is not None:
            name, numerator, denominator = multiple
            options.constants.record(name)
            return _multiple_to_ast(numerator, denominator, name)
    if math.copysign(1.0, value) < 0:
        return _negated(ast.FloatLiteral(-value))
    return ast.FloatLiteral(value)
