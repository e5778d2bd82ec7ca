"""
Security headers middleware.

Applies X-Content-Type-Options, X-Frame-Options, Strict-Transport-Security,
Referrer-Policy and a deny-all Content-Security-Policy to every JSON
response. The console UI is served elsewhere, so nothing here needs to be
framed or to run scripts.

Usage:
    from delivery.middleware.security_headers import init_security_headers
    init_security_headers(app)
"""


def init_security_headers(app):
    """Register after_request handler that injects security headers."""

    @app.after_request
    def _add_security_headers(response):
        response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")

        # Prevent MIME-type sniffing
        response.headers.setdefault("X-Content-Type-Options", "nosniff")

        # Clickjacking protection
        response.headers.setdefault("X-Frame-Options", "DENY")

        # HTTPS enforcement (ignored over HTTP, but ready for production)
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
        )

        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")

        # Remove server identification
        response.headers.pop("Server", None)

        return response
