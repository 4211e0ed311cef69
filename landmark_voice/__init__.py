"""
Landmark voice guide package.

Detected landmarks start a spoken tour: a chat backend scripts the
conversation, streaming speech channels carry it in both directions, and
a small orchestrator keeps the turns in order. The default entrypoint for
local experiments is ``python -m landmark_voice``.
"""

__all__ = [
    "bridge",
    "config",
    "interfaces",
    "models",
    "pipeline",
]
