"""Per-tenant email/password authentication.

Password accounts are ordinary identities with provider ``password`` and
``provider_user_id`` set to the normalised email, so they share subject
deduplication with every other provider through :class:`IdentityLinker`.
"""

from __future__ import annotations

import logging

from appbase_core.state.repository import IdentityRepository, PasswordCredentialRepository
from sqlalchemy.ext.asyncio import AsyncSession

from appbase_api.services.identity_service import IdentityLinker, ProfileFields

logger = logging.getLogger(__name__)

PASSWORD_PROVIDER = "password"


class AuthError(Exception):
    """Raised on authentication failures."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


def normalise_email(email: str) -> str:
    return email.strip().lower()


class PasswordAuthService:
    """Signup and login for the ``password`` identity provider.

    Parameters
    ----------
    session:
        An async database session (caller manages the transaction).
    linker:
        Identity linker; defaults to one bound to *session*.
    """

    def __init__(self, session: AsyncSession, linker: IdentityLinker | None = None) -> None:
        self._session = session
        self._linker = linker or IdentityLinker(session)

    async def signup(self, tenant_id: str, email: str, password: str, display_name: str | None = None) -> str:
        """Create a password account and return its subject id.

        Raises
        ------
        AuthError
            409 if a password account for *email* already exists.
        """
        email = normalise_email(email)
        credentials = PasswordCredentialRepository(self._session, tenant_id)

        existing = await IdentityRepository(self._session, tenant_id).get(PASSWORD_PROVIDER, email)
        if existing is not None and await credentials.has_password(existing.subject_id):
            raise AuthError("An account with this email already exists", status_code=409)

        subject_id = await self._linker.link_or_create(
            tenant_id,
            PASSWORD_PROVIDER,
            email,
            ProfileFields(email=email, name=display_name),
        )
        if not await credentials.create(subject_id, password):
            # Lost a signup race for the same email.
            raise AuthError("An account with this email already exists", status_code=409)
        logger.info("Password signup tenant=%s subject=%s", tenant_id, subject_id)
        return subject_id

    async def login(self, tenant_id: str, email: str, password: str) -> str:
        """Verify credentials and return the subject id.

        Unknown emails and wrong passwords produce the same error.

        Raises
        ------
        AuthError
            401 on invalid credentials.
        """
        email = normalise_email(email)
        identity = await IdentityRepository(self._session, tenant_id).get(PASSWORD_PROVIDER, email)
        subject_id = identity.subject_id if identity is not None else None

        credentials = PasswordCredentialRepository(self._session, tenant_id)
        if not await credentials.verify(subject_id, password) or subject_id is None:
            raise AuthError("Invalid email or password", status_code=401)

        # Refreshes last_login_at on the identity.
        return await self._linker.link_or_create(tenant_id, PASSWORD_PROVIDER, email, ProfileFields(email=email))
