"""
Read API for atmirror.

Provides a small JSON HTTP API over the mirrored records and backfill
state. It performs no writes of its own apart from the on-demand backfill
triggered by a did-filtered records query.
"""

from .http_server import ApiContext, create_http_app

__all__ = [
    "ApiContext",
    "create_http_app",
]
