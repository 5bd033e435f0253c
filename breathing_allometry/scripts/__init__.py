"""Analysis stages: data preparation, model fitting and residual diagnostics."""
