"""Operator engine for template-based stack orchestration.

Builds the dependency graph of a template, plans changes against recorded
stack state, and applies them through a provisioning backend with rollback
of partially applied plans.

Package name uses 'stack_opr' (short for operator) to avoid collision
with Python's stdlib 'operator' module.
"""
