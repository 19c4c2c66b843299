"""Data sources the engine reads student and opportunity snapshots from."""

from .base import DataSource
from .memory import InMemoryDataSource
from .seed import load_seed_file, parse_seed_dict

__all__ = [
    "DataSource",
    "InMemoryDataSource",
    "load_seed_file",
    "parse_seed_dict",
]
