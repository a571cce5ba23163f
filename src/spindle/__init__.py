"""
Spindle - Service runtime orchestrator.

Sequences, health-gates and reactively restarts the processes of one
service instance:

- spindle.core: errors, structured logging, settings
- spindle.runtime: process backends, execution contexts, readiness probes
- spindle.orchestration: dependency graph, scheduler, reactive rebuilds
- spindle.cli: the ``spindle`` command
"""

__version__ = "0.1.0"
