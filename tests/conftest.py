import jax.numpy as jnp
import pytest

from odejax.config import set_dtype


@pytest.fixture(autouse=True)
def _ensure_float64():
    """Set float64 precision before every test.

    Tests that switch to a narrower dtype (e.g. test_config.py) leave it
    behind; this fixture restores the default so every other test runs in
    float64 unless it explicitly overrides it.
    """
    set_dtype(jnp.float64)
