"""Delve — research orchestration engine.

Plan → refine → research → synthesize, on top of an external language model.
"""

__version__ = "0.1.0"
