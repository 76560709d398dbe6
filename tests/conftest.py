# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Oxford Quantum Circuits Ltd
import pytest

from oqbridge.config import BridgeConfig, override_config


@pytest.fixture(scope="session")
def testpath(pytestconfig):
    return pytestconfig.rootpath / "tests"


@pytest.fixture
def bridge_config():
    """A fresh configuration, active for the duration of the test."""
    with override_config(BridgeConfig()) as config:
        yield config
