"""Continuity - session tracking and resume for autonomous worker instances.

Tracks worker sessions through heartbeats, events, checkpoints and a command
log, and rebuilds a confidence-scored picture of an interrupted session so it
can be resumed on any host.
"""

__version__ = "0.1.0"
