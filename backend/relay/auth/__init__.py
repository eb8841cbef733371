"""Authentication module (JWT bearer tokens).

Credentials are issued elsewhere; the relay only verifies them, both on
the WebSocket handshake and on the HTTP endpoints.

Services:
    - TokenVerifier: HS256 JWT verification (``service.py``).
    - get_current_subject: FastAPI dependency for HTTP routes (``dependencies.py``).
    - GET /api/auth/me: identity of the caller (``router.py``).
"""
