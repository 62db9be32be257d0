"""Response helpers shared by the API handlers."""

from __future__ import annotations

import html

from aiohttp import web


def json_error(status: int, error: str, message: str) -> web.Response:
    """JSON error body: ``{"error": <code>, "message": <text>}``."""
    return web.json_response({"error": error, "message": message}, status=status)


def html_page(body: str, status: int = 200) -> web.Response:
    return web.Response(text=body, status=status, content_type="text/html")


def html_error_page(message: str, status: int = 500) -> web.Response:
    """Error page for the browser side of the OAuth flow."""
    body = (
        "<h1>Authentication failed</h1>"
        f"<h3>{html.escape(message)}</h3>"
        "<p>Please return to your terminal and try again.</p>"
    )
    return html_page(body, status=status)
