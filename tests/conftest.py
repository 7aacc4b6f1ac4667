"""Shared test configuration."""

import jax

# Cholesky-based comparisons need double precision.
jax.config.update("jax_enable_x64", True)
