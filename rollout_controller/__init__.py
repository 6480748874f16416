"""
Progressive delivery controller for canary and blue-green rollouts.
"""

__version__ = "1.0.0"
