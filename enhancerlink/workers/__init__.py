"""Parallel execution helpers."""

from .executor import parallel_map, parallel_map_dict

__all__ = ["parallel_map", "parallel_map_dict"]
