"""
computeflow - Typed node graphs of AI generation steps, run as a DAG.
"""

__version__ = "0.1.0"
