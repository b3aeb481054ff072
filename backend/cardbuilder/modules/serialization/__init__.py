# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Serialization Module
Public API for saving and restoring projects.
"""

from cardbuilder.modules.serialization.project import (
    deserialize_document,
    dumps_project,
    loads_project,
    restore_document,
    serialize_document,
)

__all__ = [
    "serialize_document",
    "dumps_project",
    "loads_project",
    "deserialize_document",
    "restore_document",
]
