# alertflow
"""
alertflow - Asynchronous alert analysis task processing engine
"""

__version__ = "0.1.0"
