# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI plugin exposing the admin endpoints.
"""

from rbackup.integrations.fastapi import (
    setup_rbackup_plugin,
    register_rbackup_routes,
    verify_api_key,
)

__all__ = [
    "setup_rbackup_plugin",
    "register_rbackup_routes",
    "verify_api_key",
]
