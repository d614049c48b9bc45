"""
Environmental Consulting Operations Core
Blueprint registry.
"""

from flask import request


def page_args(default_page_size=20, max_page_size=100):
    """Read ``page`` / ``page_size`` query params.

    Returns:
        (page, page_size) with page >= 1 and 1 <= page_size <= max_page_size
    """
    page = request.args.get("page", 1, type=int) or 1
    page_size = request.args.get("page_size", default_page_size, type=int) or default_page_size
    return max(page, 1), min(max(page_size, 1), max_page_size)
