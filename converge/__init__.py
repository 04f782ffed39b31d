"""
Converge

A declarative infrastructure convergence engine: parses resource
definitions, builds their dependency graph, plans against recorded state
and applies the plan through a provider adapter.
"""

__version__ = "1.0.0"
__author__ = "Converge Team"
