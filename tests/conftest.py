import jax

# Covariance comparisons are made at double precision.
jax.config.update("jax_enable_x64", True)
