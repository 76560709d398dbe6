# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Type

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from oqbridge.utils.logger import get_default_logger

log = get_default_logger()


class BuildConfig(BaseModel):
    """
    Limits applied while lowering a program to a circuit.
    """

    model_config = ConfigDict(validate_assignment=True)
    MAX_LOOP_ITERATIONS: int = Field(gt=0, default=100_000)
    """Max number of iterations a single ``for`` or ``while`` loop may unroll to."""


class ExportConfig(BaseModel):
    """
    The default export options, used by :class:`oqbridge.backend.exporter.ExportOptions`
    for every field the caller does not provide.
    """

    model_config = ConfigDict(validate_assignment=True)
    INCLUDES: list[str] = ["stdgates.inc"]
    """Include files declared at the top of every exported program."""
    INDENT: str = "  "
    """Indentation unit per nesting level."""
    DISABLE_CONSTANTS: bool = True
    """Print parameters as decimal literals instead of multiples of pi, tau or euler."""
    ALLOW_ALIASING: bool = False
    """Reference qubits through alias names when the circuit carries a layout."""
    MAX_CONSTANT_DENOMINATOR: int = Field(gt=0, default=16)
    """Largest denominator tried when rewriting a value as a fraction of a constant."""

    @field_validator("INDENT")
    def check_indent_is_whitespace(cls, INDENT):
        if INDENT.strip():
            raise ValueError(f"Indent must only contain whitespace, got {INDENT!r}.")
        return INDENT


class BridgeConfig(BaseSettings):
    """
    Full settings for the bridge. Allows environment variables to be overridden by
    direct assignment.
    """

    model_config = SettingsConfigDict(
        env_prefix="OQBRIDGE_",
        env_nested_delimiter="__",
        validate_assignment=True,
        yaml_file="oqbridge.yaml",
    )

    INCLUDE_PATH: list[Path] = []
    """Directories searched, in order, for include files that are not gate libraries."""

    BUILD: BuildConfig = BuildConfig()
    """Options for lowering programs to circuits."""

    EXPORT: ExportConfig = ExportConfig()
    """Default options for serialising circuits."""

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            YamlConfigSettingsSource(settings_cls),
        )


_global_config: BridgeConfig | None = None
_session_config: ContextVar[BridgeConfig | None] = ContextVar(
    "session_config", default=None
)


def get_config() -> BridgeConfig:
    """Returns the session config if set or the global BridgeConfig if not"""
    global _global_config
    if (session_config := _session_config.get()) is not None:
        return session_config

    if _global_config is None:
        _global_config = BridgeConfig()
        log.debug(f"Loaded bridge configuration: {_global_config}")
    return _global_config


@contextmanager
def override_config(config: BridgeConfig):
    token = _session_config.set(config)
    try:
        yield config
    finally:
        _session_config.reset(token)
