"""
Sandbox Agent providers module.

This module provides the model backends behind the loop's chat function.
"""

from sandbox_agent.providers.base import Provider, ProviderFactory, make_chat_fn

__all__ = ["Provider", "ProviderFactory", "make_chat_fn"]
