# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict


class NoExtraFieldsModel(BaseModel):
    """
    Base for every bridge model: assignments are validated like construction, and
    unknown fields raise instead of being silently dropped.
    """

    model_config = ConfigDict(
        validate_assignment=True,
        use_enum_values=False,
        extra="forbid",
    )

    def __str__(self):
        return self.__repr__()


class NoExtraFieldsFrozenModel(NoExtraFieldsModel):
    """
    A :class:`NoExtraFieldsModel` whose fields are frozen upon instantiation. Frozen
    models are hashable, so they can be used as dictionary keys and set members.
    """

    model_config = ConfigDict(frozen=True)


def validate_non_negative(value: int):
    if not isinstance(value, int) or value < 0:
        raise ValueError(f"Given value {value} must be an int and >=0.")
    return value


NonNegativeInt = Annotated[
    int,
    AfterValidator(validate_non_negative),
]


def validate_identifier(value: str):
    if not isinstance(value, str) or len(value) == 0:
        raise ValueError(f"Given name {value!r} must be a non-empty string.")
    return value


Name = Annotated[str, AfterValidator(validate_identifier)]
