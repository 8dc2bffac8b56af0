"""
SDK for AI Cost Control.

Provides model clients that run through the control plane.
"""

from .openai_client import ChatResult, GuardedOpenAI

__all__ = ["ChatResult", "GuardedOpenAI"]
