"""Authentication module.

Verifies bearer tokens issued by the identity provider. Login and credential
storage live outside this service.

Services:
    - TokenService: JWT issue/verify (HS256 by default).
    - get_current_user: FastAPI dependency guarding REST routes.
"""
