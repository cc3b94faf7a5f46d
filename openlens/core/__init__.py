"""
OpenLens core module.

The tool-call loop (``openlens.core.loop``), plan-execution mode
(``openlens.core.planner``) and the Agent that wires them
(``openlens.core.agent``). Import from the submodules directly; the tool
dispatcher depends on ``openlens.core.timeouts``.
"""
