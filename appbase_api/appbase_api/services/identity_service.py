"""Deduplicate identity-provider profiles into stable per-tenant subjects.

An identity is ``(tenant, provider, provider_user_id)``.  The identity row
is only ever written by an upsert on that key, so two concurrent first
logins for the same external account converge on a single subject:

1. Look the identity up.  If found, refresh its profile and return its
   subject.
2. Otherwise create a subject and upsert the identity pointing at it.  The
   upsert returns whichever subject the stored row points at; if that is
   not ours, a concurrent login won and our subject is deleted.
3. If the upsert itself fails (constraint violation under a race), the
   savepoint is rolled back and the lookup path is retried once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from appbase_core.state.repository import EndUserRepository, IdentityRepository
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 2


class IdentityLinkError(Exception):
    """Raised when an identity cannot be linked after retrying the lookup."""


@dataclass(frozen=True)
class ProfileFields:
    """Profile data reported by an identity provider."""

    email: str | None = None
    email_verified: bool | None = None
    name: str | None = None
    avatar_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class IdentityLinker:
    """Resolve external identities to subject ids.

    Parameters
    ----------
    session:
        Active database session (caller manages the outer transaction).
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def link_or_create(
        self,
        tenant_id: str,
        provider: str,
        provider_user_id: str,
        profile: ProfileFields | None = None,
    ) -> str:
        """Return the subject id for the identity, creating one on first login.

        Raises
        ------
        IdentityLinkError
            If the identity upsert fails on both attempts.
        """
        profile = profile or ProfileFields()
        identities = IdentityRepository(self._session, tenant_id)
        users = EndUserRepository(self._session, tenant_id)

        for attempt in range(1, _MAX_ATTEMPTS + 1):
            existing = await identities.get(provider, provider_user_id)
            if existing is not None:
                await self._refresh(identities, users, provider, provider_user_id, existing.subject_id, profile)
                return existing.subject_id

            try:
                async with self._session.begin_nested():
                    return await self._create(identities, users, tenant_id, provider, provider_user_id, profile)
            except IntegrityError as exc:
                if attempt >= _MAX_ATTEMPTS:
                    raise IdentityLinkError(
                        f"Could not link identity provider={provider} tenant={tenant_id}"
                    ) from exc
                logger.warning(
                    "Identity upsert conflicted (tenant=%s provider=%s); retrying lookup",
                    tenant_id,
                    provider,
                )

        raise IdentityLinkError(f"Could not link identity provider={provider} tenant={tenant_id}")

    async def _create(
        self,
        identities: IdentityRepository,
        users: EndUserRepository,
        tenant_id: str,
        provider: str,
        provider_user_id: str,
        profile: ProfileFields,
    ) -> str:
        subject = await users.create(
            display_name=profile.name,
            primary_email=profile.email,
            email_verified=bool(profile.email_verified),
        )
        winner = await identities.upsert(
            provider=provider,
            provider_user_id=provider_user_id,
            subject_id=subject.id,
            email=profile.email,
            email_verified=profile.email_verified,
            name=profile.name,
            avatar_url=profile.avatar_url,
            raw_profile=profile.raw or None,
        )
        if winner != subject.id:
            # A concurrent login stored the identity first.
            await users.delete(subject.id)
            logger.warning(
                "Concurrent first login resolved to existing subject (tenant=%s provider=%s)",
                tenant_id,
                provider,
            )
            return winner

        logger.info("Created subject=%s tenant=%s provider=%s", subject.id, tenant_id, provider)
        return subject.id

    async def _refresh(
        self,
        identities: IdentityRepository,
        users: EndUserRepository,
        provider: str,
        provider_user_id: str,
        subject_id: str,
        profile: ProfileFields,
    ) -> None:
        """Update last-login and cached profile fields of a known identity."""
        await identities.upsert(
            provider=provider,
            provider_user_id=provider_user_id,
            subject_id=subject_id,
            email=profile.email,
            email_verified=profile.email_verified,
            name=profile.name,
            avatar_url=profile.avatar_url,
            raw_profile=profile.raw or None,
        )
        await users.update_profile(
            subject_id,
            display_name=profile.name,
            primary_email=profile.email,
            email_verified=profile.email_verified,
        )
