"""
Streaming Module for the sandbox engine

Live, non-durable relay of execution output to session subscribers.
"""

from .relay import OutputChunk, OutputRelay, Subscription

__all__ = [
    "OutputChunk",
    "OutputRelay",
    "Subscription",
]
