"""Shared fixtures."""

import pytest

from pathdiag.config import set_config


@pytest.fixture(autouse=True)
def reset_config():
    """Each test starts from environment defaults."""
    set_config(None)
    yield
    set_config(None)
