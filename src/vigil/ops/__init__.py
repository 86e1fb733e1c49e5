"""
Operation functions behind the CLI.

Each takes an :class:`~vigil.ops.context.OperationContext` and returns an
:class:`~vigil.ops.result.OperationResult`; the CLI only parses flags and
renders results.
"""
