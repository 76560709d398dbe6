# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
from os import PathLike
from pathlib import Path
from typing import Iterable, Optional, Union

from openqasm3 import ast
from openqasm3.parser import QASM3ParsingError
from openqasm3.parser import parse as oq3_parse

from oqbridge.exceptions import QASM3ImporterError
from oqbridge.qasm.semantics import Diagnostic
from oqbridge.utils.logger import get_default_logger

log = get_default_logger()

LIBRARY_INCLUDES = ("stdgates.inc",)
"""Include files resolved by the gate factory rather than read from disk."""


class QASM3Parser:
    """
    Parses OpenQASM 3 source into an :class:`openqasm3.ast.Program`.

    Includes naming a gate library (see :data:`LIBRARY_INCLUDES`) are kept in the tree
    for the builder to resolve. Any other include is looked up on the include path and
    its statements are spliced in place of the include statement.

    :param include_path: Directories searched, in order, for included files. The
        directory of the including file (or the working directory for source strings)
        is always searched first.
    """

    def __init__(self, include_path: Iterable[Union[str, PathLike]] = ()):
        self.include_path = [Path(path) for path in include_path]
        self._cached_parses: dict[int, ast.Program] = dict()

    def _fetch_or_parse(self, qasm_str: str) -> ast.Program:
        # If we have seen this source before.
        qasm_id = hash(qasm_str)
        if (cached_value := self._cached_parses.get(qasm_id, None)) is not None:
            return cached_value

        try:
            program = oq3_parse(qasm_str)
        except QASM3ParsingError as e:
            invalid_string = str(e)
            log.error(f"Invalid QASM 3 syntax: '{invalid_string}'.")
            raise QASM3ImporterError(
                f"Invalid QASM 3 syntax: '{invalid_string}'.",
                [Diagnostic(f"invalid syntax: {invalid_string}")],
            ) from e

        self._cached_parses[qasm_id] = program
        return program

    def parse(self, qasm_str: str, base_dir: Optional[Path] = None) -> ast.Program:
        program = self._fetch_or_parse(qasm_str)
        statements = self._expand_includes(program.statements, base_dir or Path.cwd(), [])
        expanded = ast.Program(statements=statements, version=program.version)
        expanded.span = program.span
        return expanded

    def parse_file(self, file_path: Union[str, PathLike]) -> ast.Program:
        file_path = Path(file_path)
        with file_path.open("r", encoding="utf-8") as f:
            return self.parse(f.read(), base_dir=file_path.parent)

    def _find_include(self, filename: str, base_dir: Path) -> Path:
        for directory in [base_dir, *self.include_path]:
            if (candidate := Path(directory, filename)).is_file():
                return candidate
        raise QASM3ImporterError(
            f"File not found for '{filename}'.",
            [Diagnostic(f"cannot find include file '{filename}'")],
        )

    def _expand_includes(
        self, statements: list[ast.Statement], base_dir: Path, chain: list[Path]
    ) -> list[ast.Statement]:
        expanded = []
        for statement in statements:
            if not isinstance(statement, ast.Include) or (
                statement.filename in LIBRARY_INCLUDES
            ):
                expanded.append(statement)
                continue

            file_path = self._find_include(statement.filename, base_dir).resolve()
            if file_path in chain:
                raise QASM3ImporterError(
                    f"Include cycle detected through '{statement.filename}'.",
                    [Diagnostic("recursive include", statement.span)],
                )
            log.debug(f"Splicing include '{statement.filename}' from {file_path}.")
            with file_path.open("r", encoding="utf-8") as f:
                included = self._fetch_or_parse(f.read())
            expanded.extend(
                self._expand_includes(
                    included.statements, file_path.parent, [*chain, file_path]
                )
            )
        return expanded


def parse(
    source: str, include_path: Iterable[Union[str, PathLike]] = ()
) -> ast.Program:
    """Parses a source string into a program, splicing non-library includes."""
    return QASM3Parser(include_path).parse(source)
