"""Tracers that record callback events as run trees."""

from calltree.tracers.base import AsyncBaseTracer
from calltree.tracers.run_map import RunMap
from calltree.tracers.schemas import Run
from calltree.tracers.tracer import CallTreeTracer

__all__ = ["AsyncBaseTracer", "CallTreeTracer", "Run", "RunMap"]
