# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Rendering Module
Public API for compositing and export.
"""

from cardbuilder.modules.rendering.compositor import render_document, render_preview
from cardbuilder.modules.rendering.exporter import (
    ExportResult,
    export_document,
    export_document_async,
)

__all__ = [
    "render_document",
    "render_preview",
    "ExportResult",
    "export_document",
    "export_document_async",
]
