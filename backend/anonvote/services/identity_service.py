"""
AnonVote Identity Service
Registration of members' public identity commitments
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from anonvote.config import settings
from anonvote.crypto.identity import parse_commitment
from anonvote.eligibility import EligibilitySource, get_eligibility_source
from anonvote.errors import CapabilityUnavailable, Conflict, ValidationError
from anonvote.models import UserIdentity

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 10


class IdentityService:
    """Service for identity commitments"""

    def __init__(self, eligibility: Optional[EligibilitySource] = None):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self._eligibility = eligibility

    @property
    def eligibility(self) -> EligibilitySource:
        return self._eligibility or get_eligibility_source()

    async def get_identity(self, db: AsyncSession, user_id: str) -> Dict[str, Any]:
        result = await db.execute(select(UserIdentity).where(UserIdentity.user_id == user_id))
        identity = result.scalar_one_or_none()
        return {
            "has_identity": identity is not None,
            "commitment": identity.commitment if identity else None,
        }

    async def register_identity(self, db: AsyncSession, user_id: str, commitment: str) -> Dict[str, Any]:
        """
        Store a member's commitment. A member keeps the first commitment
        they registered; later calls return it unchanged.
        """
        if not user_id:
            raise ValidationError("User id is required")
        try:
            value = parse_commitment(commitment)
        except ValueError:
            raise ValidationError("Invalid commitment")

        result = await db.execute(select(UserIdentity).where(UserIdentity.user_id == user_id))
        existing = result.scalar_one_or_none()
        if existing is not None:
            return {"success": True, "commitment": existing.commitment, "already_exists": True}

        db.add(UserIdentity(user_id=user_id, commitment=str(value)))
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise Conflict("Commitment already registered")

        self.logger.info("Identity commitment registered")
        return {"success": True, "commitment": str(value), "already_exists": False}

    async def _candidates(self, db: AsyncSession, limit: Optional[int]) -> Dict[str, Any]:
        user_ids = list(dict.fromkeys(
            await self.eligibility.list_members_with_role(settings.DEFAULT_GROUP_ROLE_ID)
        ))
        if limit and limit > 0:
            user_ids = user_ids[:limit]

        existing: List[str] = []
        if user_ids:
            result = await db.execute(
                select(UserIdentity.user_id).where(UserIdentity.user_id.in_(user_ids))
            )
            existing = list(result.scalars().all())
        have = set(existing)
        return {
            "user_ids": user_ids,
            "existing": existing,
            "to_create": [u for u in user_ids if u not in have],
        }

    async def identity_stats(self, db: AsyncSession) -> Dict[str, Any]:
        candidates = await self._candidates(db, None)
        total = len(candidates["user_ids"])
        with_identity = len(candidates["existing"])
        return {
            "total_eligible": total,
            "with_identity": with_identity,
            "without_identity": total - with_identity,
            "percent_complete": round(with_identity * 100 / total) if total else 0,
        }

    async def batch_create_identities(
        self,
        db: AsyncSession,
        dry_run: bool = True,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Server-side identity creation for members who have none

        Only the dry run is available: identity secrets are generated by
        members on their own devices, so a real run raises
        CapabilityUnavailable.
        """
        candidates = await self._candidates(db, limit)
        if dry_run:
            return {
                "dry_run": True,
                "total_eligible": len(candidates["user_ids"]),
                "already_have_identity": len(candidates["existing"]),
                "would_create": len(candidates["to_create"]),
                "sample_ids": candidates["to_create"][:SAMPLE_SIZE],
            }
        raise CapabilityUnavailable(
            "Batch identity creation is not supported; members create identities on first login"
        )


# Global identity service instance
_identity_service: Optional[IdentityService] = None


def get_identity_service() -> IdentityService:
    """Get global identity service instance"""
    global _identity_service
    if _identity_service is None:
        _identity_service = IdentityService()
    return _identity_service
