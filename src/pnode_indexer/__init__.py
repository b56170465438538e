"""
pNode status, scoring and indexing pipeline.
"""

__version__ = "0.1.0"
