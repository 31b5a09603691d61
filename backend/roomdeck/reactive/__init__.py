"""Reactive dependency tracking (dependencies, reactive vars, computations)."""
from .tracker import Computation, Dependency, ReactiveVar, Scheduler

__all__ = ["Computation", "Dependency", "ReactiveVar", "Scheduler"]
