"""
Security headers middleware.

The service only speaks JSON, so the policy is locked down: nothing may be
framed, sniffed or loaded from the API origin.

Usage:
    from app.middleware.security_headers import init_security_headers
    init_security_headers(app)
"""

API_HEADERS = {
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


def init_security_headers(app):
    """Register after_request handler that injects security headers."""

    @app.after_request
    def _add_security_headers(response):
        for name, value in API_HEADERS.items():
            response.headers.setdefault(name, value)

        # HTTPS enforcement only outside local development
        if not app.debug and not app.testing:
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")

        response.headers.pop("Server", None)
        return response
