"""Utility modules for the object store operator."""

from .resource_naming import (
    instance_name,
    get_labels,
    get_label_selector,
    stable_hash,
    new_flag,
)

__all__ = [
    'instance_name',
    'get_labels',
    'get_label_selector',
    'stable_hash',
    'new_flag',
]
