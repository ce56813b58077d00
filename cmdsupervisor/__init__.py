"""cmd-supervisor - command execution supervisor for AI coding agents.

Spawns, monitors, buffers and terminates shell commands on behalf of an
agent's tool-calling loop, behind a non-bypassable safety gate.
"""

__version__ = "0.1.0"
