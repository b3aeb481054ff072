# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Intake Module
Public API for upload validation. The async ImageLoader lives in
cardbuilder.modules.intake.loader and is imported from there, since it
depends on the document store which itself validates through this package.
"""

from cardbuilder.modules.intake.validator import (
    ALLOWED_CONTENT_TYPES,
    detect_format,
    validate_image_bytes,
)

__all__ = [
    "ALLOWED_CONTENT_TYPES",
    "detect_format",
    "validate_image_bytes",
]
