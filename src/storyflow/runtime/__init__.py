"""Simulation runtime for compiled IR."""

from storyflow.runtime.simulator import SimulationOptions, SimulationResult, simulate, write_trace

__all__ = ["SimulationOptions", "SimulationResult", "simulate", "write_trace"]
