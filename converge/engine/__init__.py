"""
Converge - Engine Package

Core engine that converges infrastructure:
- Parser: Validates and parses YAML resource definitions
- GraphBuilder: Expands counts and resolves references into a DAG
- Planner: Diffs desired graph against recorded state
- Executor: Applies plans through the provider
- ConvergeEngine: Runs a plan/apply cycle under the state lock
"""

from converge.engine.parser import ConfigParser, ParseError
from converge.engine.graph import CycleError, DependencyGraph, GraphBuilder
from converge.engine.planner import ExecutionPlanner, PlanError, render_plan
from converge.engine.executor import ExecutionError, PlanExecutor, RetryPolicy
from converge.engine.engine import ConvergeEngine, create_engine

__all__ = [
    "ConfigParser",
    "ConvergeEngine",
    "CycleError",
    "DependencyGraph",
    "ExecutionError",
    "ExecutionPlanner",
    "GraphBuilder",
    "ParseError",
    "PlanError",
    "PlanExecutor",
    "RetryPolicy",
    "create_engine",
    "render_plan",
]
