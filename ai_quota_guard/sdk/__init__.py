"""
SDK for AI Quota Guard.

Provides metered access to the summarization provider.
"""

from .openai_client import MeteredSummarizer

__all__ = ["MeteredSummarizer"]
