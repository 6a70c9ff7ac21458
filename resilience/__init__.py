"""Resilience layer between a conversational workflow and LLM providers.

Public entry point is :class:`resilience.orchestrator.Orchestrator`, which
owns the shared store and wires the token budget validator, safety filter,
response cache, checkpoint manager, metrics collector, provider gateway and
task router together.
"""

__version__ = "0.1.0"
