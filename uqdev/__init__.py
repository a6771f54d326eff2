"""
uqdev - Development tools for Uqbar

Builds packages and runs multi-node integration tests against simulated
networks of nodes.
"""

__version__ = "0.1.0"
