"""
uqdev.network - Simulated network between test nodes

Manages the network router process the fake nodes of a test talk through.
"""

from uqdev.network.router import (
    NetworkRouterManager,
    RouterHandle,
    defect_args,
    find_router_binary,
)

__all__ = ['NetworkRouterManager', 'RouterHandle', 'defect_args', 'find_router_binary']
