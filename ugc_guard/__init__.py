"""
UGC Guard.

Generation orchestration and quota governance for short-form video scripts.
"""

__version__ = "0.1.0"
