# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Processing Modules
intake, rendering and serialization. Each subpackage exposes its public
API from its own __init__.
"""
