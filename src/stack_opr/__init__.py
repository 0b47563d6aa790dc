"""Operator engine for stack-based provisioning.

Builds the resource graph of a stack, plans the changes against the
persisted state record and applies them through a provider.

Package name uses 'stack_opr' (short for operator) to avoid collision
with Python's stdlib 'operator' module.
"""
