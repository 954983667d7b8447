"""
LLM Service - settings, logging and multi-provider LLM access for the arena.

This package provides the FastAPI service hosting the arena trigger routes and
a LiteLLM client that routes the benchmark roster through OpenRouter.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
