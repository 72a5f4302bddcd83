"""
aipal - Bridge chat conversations to command-line coding agents.

Each conversation is backed by a persistent tmux session in which agent
turns run, delimited by per-turn markers, with continuity ids remembered
between turns.
"""

__version__ = "1.0.0"

__all__ = [
    "models",
    "services",
    "lib",
    "cli"
]
