"""vigil command-line interface (typer)."""
