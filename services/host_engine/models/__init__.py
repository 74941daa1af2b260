"""
Data model definitions package.
"""

from .result import StartResult

__all__ = ["StartResult"]
