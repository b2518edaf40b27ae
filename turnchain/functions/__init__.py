"""Function specs and the registry that executes them."""
