"""
scenebreak: screenplay scene breakdown and analysis.
"""

__version__ = "0.1.0"
