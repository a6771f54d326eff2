"""
uqdev.config - Test run configuration

Provides TOML/YAML parsing of run-tests configuration files.
"""

from .tests_config import (
    Config,
    FetchVersion,
    NetworkRouter,
    NetworkRouterDefects,
    Node,
    RepoPath,
    Runtime,
    Test,
    config_from_dict,
    load_config,
)

__all__ = [
    'Config',
    'FetchVersion',
    'NetworkRouter',
    'NetworkRouterDefects',
    'Node',
    'RepoPath',
    'Runtime',
    'Test',
    'config_from_dict',
    'load_config',
]
