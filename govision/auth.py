"""Login, registration and logout against the ``/auth`` endpoints."""

from __future__ import annotations

import logging

from govision.credentials import Credential, CredentialStore
from govision.errors import ServerError, TransportError, ValidationError
from govision.transport import AuthenticatedTransport, is_ok

log = logging.getLogger("govision.auth")


def validate_login(email: str, password: str) -> None:
    if not email or not password:
        raise ValidationError("Email and password are required.")


def validate_registration(email: str, password: str, confirm_password: str) -> None:
    validate_login(email, password)
    if password != confirm_password:
        raise ValidationError("Passwords do not match.")


async def login(transport: AuthenticatedTransport, email: str, password: str) -> Credential:
    """Exchange e-mail/password for tokens and store them.

    Raises ValidationError for empty fields, ServerError with the server's
    message on rejection, TransportError when the API is unreachable.
    """
    email = email.strip()
    validate_login(email, password)

    try:
        response, data = await transport.post_json("/auth/login", {"email": email, "password": password})
    except TransportError as e:
        raise TransportError("Network error. Please try again.") from e

    if not is_ok(response):
        raise ServerError(response.status_code, (data or {}).get("message") or "Login failed.")
    if not data or not data.get("access_token") or not data.get("refresh_token"):
        raise ServerError(response.status_code, "Invalid server response. Please try again.")

    credential = transport.credentials.save(data, identity=email)
    log.info("Logged in as %s", email)
    return credential


async def register(
    transport: AuthenticatedTransport,
    email: str,
    password: str,
    confirm_password: str | None = None,
) -> None:
    """Create an account.  Does not log in; the caller goes to login next."""
    email = email.strip()
    validate_registration(email, password, password if confirm_password is None else confirm_password)

    try:
        response, data = await transport.post_json("/auth/register", {"email": email, "password": password})
    except TransportError as e:
        raise TransportError("Network error. Please try again.") from e

    if not is_ok(response):
        raise ServerError(response.status_code, (data or {}).get("message") or "Registration failed.")
    log.info("Registered %s", email)


def logout(credentials: CredentialStore) -> None:
    credentials.clear()
    log.info("Logged out")
