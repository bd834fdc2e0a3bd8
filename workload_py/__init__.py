"""
Workload-Py - transactional installation of SDK workloads.

Resolve workloads to packs, install them side by side per SDK generation and
collect what no generation needs any more.
"""

from importlib.metadata import version as _version

__version__ = _version("workload-py")
