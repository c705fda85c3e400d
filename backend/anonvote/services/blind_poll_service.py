"""
AnonVote Blind-Token Poll Service
Issues blind signatures to eligible members and redeems anonymous tokens

Per (user, poll) a member can obtain exactly one blind signature. The
unblinded token is later redeemed without any session; the server only
sees a token of the form poll-<poll_id>-<nonce> and a signature over it.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from anonvote.config import settings
from anonvote.crypto import blind_rsa
from anonvote.crypto.blind_rsa import BlindRSASuite, BlindSignatureError
from anonvote.eligibility import EligibilitySource, get_eligibility_source
from anonvote.errors import (
    Conflict, Forbidden, InvalidState, NotFound, Unauthorized, ValidationError
)
from anonvote.models import ConsumedToken, PendingSignature, Poll, PollResult, PollStatus
from anonvote.services.audit import log_audit

logger = logging.getLogger(__name__)

# Allowed lifecycle moves
POLL_TRANSITIONS = {
    PollStatus.DRAFT: {PollStatus.OPEN},
    PollStatus.OPEN: {PollStatus.CLOSED},
    PollStatus.CLOSED: set(),
}


def token_prefix(poll_id: int) -> str:
    return f"poll-{poll_id}-"


def load_signing_keys() -> Tuple[rsa.RSAPrivateKey, rsa.RSAPublicKey]:
    """
    Load the deployment key pair from settings

    Falls back to an ephemeral key pair when no private key is configured;
    tokens issued under an ephemeral key stop verifying after a restart.
    """
    if settings.RSA_PRIVATE_KEY_PEM:
        private_key = blind_rsa.load_private_key(settings.RSA_PRIVATE_KEY_PEM.replace("\\n", "\n"))
        public_key = private_key.public_key()
        if settings.RSA_PUBLIC_KEY_PEM:
            configured = blind_rsa.load_public_key(settings.RSA_PUBLIC_KEY_PEM.replace("\\n", "\n"))
            if configured.public_numbers() != public_key.public_numbers():
                raise BlindSignatureError("RSA_PUBLIC_KEY_PEM does not match RSA_PRIVATE_KEY_PEM")
        logger.info("Loaded blind signature key pair from configuration")
        return private_key, public_key

    logger.warning(
        "RSA_PRIVATE_KEY_PEM not configured; generating an ephemeral "
        f"{settings.RSA_KEY_SIZE}-bit key pair"
    )
    private_key = blind_rsa.generate_key_pair(settings.RSA_KEY_SIZE)
    return private_key, private_key.public_key()


def normalize_options(options: Any) -> List[Dict[str, str]]:
    """Validate option records: at least two, non-empty unique ids and labels"""
    if not isinstance(options, list) or len(options) < 2:
        raise ValidationError("At least two options are required")

    normalized = []
    for option in options:
        if hasattr(option, "model_dump"):
            option = option.model_dump()
        if not isinstance(option, dict):
            raise ValidationError("Invalid option")
        option_id = option.get("id")
        label = option.get("label")
        if not isinstance(option_id, str) or not option_id.strip():
            raise ValidationError("Option id is required")
        if not isinstance(label, str) or not label.strip():
            raise ValidationError("Option label is required")
        normalized.append({"id": option_id.strip(), "label": label.strip()})

    if len({o["id"] for o in normalized}) != len(normalized):
        raise ValidationError("Option ids must be unique")
    if len({o["label"] for o in normalized}) != len(normalized):
        raise ValidationError("Option labels must be unique")
    return normalized


class BlindPollService:
    """Service for blind-token polls"""

    def __init__(
        self,
        suite: BlindRSASuite,
        private_key: rsa.RSAPrivateKey,
        eligibility: Optional[EligibilitySource] = None,
    ):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.suite = suite
        self.private_key = private_key
        self.public_key = private_key.public_key()
        self._eligibility = eligibility

    @property
    def eligibility(self) -> EligibilitySource:
        return self._eligibility or get_eligibility_source()

    def get_public_key(self) -> Dict[str, Any]:
        return {
            "public_key": blind_rsa.public_key_pem(self.public_key),
            "suite": self.suite.name,
            "modulus_bits": self.public_key.key_size,
        }

    # ========================================================================
    # Poll management
    # ========================================================================

    async def _get_poll(self, db: AsyncSession, poll_id: int) -> Poll:
        result = await db.execute(select(Poll).where(Poll.id == poll_id))
        poll = result.scalar_one_or_none()
        if poll is None:
            raise NotFound("Poll not found")
        return poll

    async def _results(self, db: AsyncSession, poll_id: int) -> Dict[str, int]:
        result = await db.execute(select(PollResult).where(PollResult.poll_id == poll_id))
        return {row.option_id: row.tally for row in result.scalars().all()}

    async def describe_poll(self, db: AsyncSession, poll: Poll) -> Dict[str, Any]:
        """Public view of a poll; per-option counts only once CLOSED"""
        data = {
            "id": poll.id,
            "question": poll.question,
            "options": poll.options,
            "required_role_id": poll.required_role_id,
            "status": poll.status.value,
            "created_at": poll.created_at.isoformat() if poll.created_at else None,
        }
        if poll.status == PollStatus.CLOSED:
            tallies = await self._results(db, poll.id)
            data["results"] = {option_id: tallies.get(option_id, 0) for option_id in poll.option_ids()}
            data["total_votes"] = sum(data["results"].values())
        return data

    async def create_poll(
        self,
        db: AsyncSession,
        question: str,
        options: List[Any],
        required_role_id: str,
        created_by: str,
    ) -> Dict[str, Any]:
        if not question or not question.strip():
            raise ValidationError("Question is required")
        if not required_role_id:
            raise ValidationError("required_role_id is required")
        options = normalize_options(options)

        poll = Poll(
            question=question.strip(),
            options=options,
            required_role_id=required_role_id,
            status=PollStatus.DRAFT,
            created_by=created_by,
        )
        db.add(poll)
        await db.flush()
        for option in options:
            db.add(PollResult(poll_id=poll.id, option_id=option["id"], tally=0))

        log_audit(db, "poll_created", "poll", poll.id, {"options": len(options)}, created_by)
        await db.commit()
        await db.refresh(poll)

        self.logger.info(f"Blind-token poll {poll.id} created with {len(options)} options")
        return await self.describe_poll(db, poll)

    async def list_polls(self, db: AsyncSession, status: Optional[PollStatus] = None) -> List[Dict[str, Any]]:
        query = select(Poll).order_by(Poll.id.desc())
        if status is not None:
            query = query.where(Poll.status == status)
        result = await db.execute(query)
        return [await self.describe_poll(db, poll) for poll in result.scalars().all()]

    async def get_poll(self, db: AsyncSession, poll_id: int) -> Dict[str, Any]:
        return await self.describe_poll(db, await self._get_poll(db, poll_id))

    async def update_poll(
        self,
        db: AsyncSession,
        poll_id: int,
        actor: str,
        question: Optional[str] = None,
        options: Optional[List[Any]] = None,
        status: Optional[PollStatus] = None,
    ) -> Dict[str, Any]:
        """Edit a DRAFT poll and/or move it along DRAFT -> OPEN -> CLOSED"""
        poll = await self._get_poll(db, poll_id)

        if question is not None or options is not None:
            if poll.status != PollStatus.DRAFT:
                raise InvalidState("Only draft polls can be edited")
            if question is not None:
                if not question.strip():
                    raise ValidationError("Question is required")
                poll.question = question.strip()
            if options is not None:
                options = normalize_options(options)
                existing = await db.execute(select(PollResult).where(PollResult.poll_id == poll.id))
                for row in existing.scalars().all():
                    await db.delete(row)
                await db.flush()
                poll.options = options
                for option in options:
                    db.add(PollResult(poll_id=poll.id, option_id=option["id"], tally=0))

        if status is not None and status != poll.status:
            if status not in POLL_TRANSITIONS[poll.status]:
                raise InvalidState(f"Cannot move poll from {poll.status.value} to {status.value}")
            log_audit(
                db, "poll_status_changed", "poll", poll.id,
                {"from": poll.status.value, "to": status.value}, actor,
            )
            poll.status = status

        await db.commit()
        await db.refresh(poll)
        return await self.describe_poll(db, poll)

    async def delete_poll(self, db: AsyncSession, poll_id: int, actor: str) -> None:
        poll = await self._get_poll(db, poll_id)
        if poll.status != PollStatus.DRAFT:
            raise InvalidState("Only draft polls can be deleted")
        await db.delete(poll)
        log_audit(db, "poll_deleted", "poll", poll_id, None, actor)
        await db.commit()

    async def user_status(self, db: AsyncSession, user_id: str, poll_id: int) -> Dict[str, Any]:
        poll = await self._get_poll(db, poll_id)
        result = await db.execute(
            select(PendingSignature.id).where(
                PendingSignature.user_id == user_id,
                PendingSignature.poll_id == poll_id,
            )
        )
        return {
            "poll_id": poll.id,
            "eligible": await self.eligibility.has_role(user_id, poll.required_role_id),
            "token_claimed": result.scalar_one_or_none() is not None,
        }

    # ========================================================================
    # Signature issuance
    # ========================================================================

    async def request_signature(
        self,
        db: AsyncSession,
        user_id: Optional[str],
        poll_id: int,
        blinded_message: str,
    ) -> str:
        """
        Blind-sign a member's blinded token for a poll

        Only a placeholder is persisted; the blind signature itself is
        returned to the caller and never stored.

        Returns:
            Base64 blind signature
        """
        if not user_id:
            raise Unauthorized("Authentication required")

        poll = await self._get_poll(db, poll_id)
        if poll.status != PollStatus.OPEN:
            raise InvalidState("Poll is not open")

        if not await self.eligibility.has_role(user_id, poll.required_role_id):
            raise Forbidden("Not eligible for this poll")

        result = await db.execute(
            select(PendingSignature.id).where(
                PendingSignature.user_id == user_id,
                PendingSignature.poll_id == poll_id,
            )
        )
        if result.scalar_one_or_none() is not None:
            raise Conflict("Signature already issued")

        try:
            blinded = blind_rsa.from_base64(blinded_message)
        except ValueError:
            raise ValidationError("Invalid blinded message")

        try:
            blind_signature = self.suite.blind_sign(self.private_key, blinded)
        except BlindSignatureError:
            raise ValidationError("Invalid blinded message")

        db.add(PendingSignature(user_id=user_id, poll_id=poll_id))
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise Conflict("Signature already issued")

        self.logger.info(f"Blind signature issued for poll {poll_id}")
        return blind_rsa.to_base64(blind_signature)

    # ========================================================================
    # Anonymous redemption
    # ========================================================================

    def _redeem_inputs(
        self,
        token: Any,
        signature: Any,
        poll_id: Any,
        option_id: Any,
        prepared_message: Any,
    ) -> Tuple[bytes, Optional[bytes]]:
        if not isinstance(token, str) or not token:
            raise ValidationError("Token is required")
        if not isinstance(signature, str) or not signature:
            raise ValidationError("Signature is required")
        if isinstance(poll_id, bool) or not isinstance(poll_id, int):
            raise ValidationError("Poll id is required")
        if not isinstance(option_id, str) or not option_id:
            raise ValidationError("Option id is required")
        try:
            signature_bytes = blind_rsa.from_base64(signature)
        except ValueError:
            raise ValidationError("Invalid signature encoding")

        prepared = None
        if prepared_message is not None:
            try:
                prepared = blind_rsa.from_base64(prepared_message)
            except ValueError:
                raise ValidationError("Invalid prepared message encoding")
        elif self.suite.randomize_message:
            raise ValidationError("Prepared message is required")
        return signature_bytes, prepared

    async def redeem_vote(
        self,
        db: AsyncSession,
        token: str,
        signature: str,
        poll_id: int,
        option_id: str,
        prepared_message: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Redeem a blind-signed token as one vote

        No user identity is involved. The consumed-token insert and the tally
        increment commit together; a lost race on the token hash rolls both
        back.
        """
        signature_bytes, prepared = self._redeem_inputs(
            token, signature, poll_id, option_id, prepared_message
        )

        poll = await self._get_poll(db, poll_id)
        if poll.status != PollStatus.OPEN:
            raise InvalidState("Poll is not open")
        if option_id not in poll.option_ids():
            raise ValidationError("Invalid option")

        prefix = token_prefix(poll_id)
        if not token.startswith(prefix) or len(token) == len(prefix):
            raise ValidationError("Token does not belong to this poll")

        token_bytes = token.encode("utf-8")
        if prepared is None:
            message = token_bytes
        else:
            expected_prefix = blind_rsa.PREPARE_PREFIX_LENGTH if self.suite.randomize_message else 0
            if len(prepared) != expected_prefix + len(token_bytes) or prepared[expected_prefix:] != token_bytes:
                raise ValidationError("Prepared message does not match token")
            message = prepared

        if not self.suite.verify(self.public_key, signature_bytes, message):
            raise Unauthorized("Invalid signature")

        token_hash = blind_rsa.hash_token(token)
        if await self._token_consumed(db, token_hash):
            raise Forbidden("Already voted")

        try:
            db.add(ConsumedToken(token_hash=token_hash, poll_id=poll_id))
            await db.flush()
            await self._increment_tally(db, poll_id, option_id)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise Conflict("Already voted")

        self.logger.info(f"Blind-token vote recorded for poll {poll_id}")
        return {"success": True, "message": "Vote recorded"}

    async def _token_consumed(self, db: AsyncSession, token_hash: str) -> bool:
        result = await db.execute(
            select(ConsumedToken.token_hash).where(ConsumedToken.token_hash == token_hash)
        )
        return result.scalar_one_or_none() is not None

    async def _increment_tally(self, db: AsyncSession, poll_id: int, option_id: str) -> None:
        result = await db.execute(
            update(PollResult)
            .where(PollResult.poll_id == poll_id, PollResult.option_id == option_id)
            .values(tally=PollResult.tally + 1)
        )
        if result.rowcount == 0:
            db.add(PollResult(poll_id=poll_id, option_id=option_id, tally=1))
            await db.flush()


# Global blind poll service instance
_blind_poll_service: Optional[BlindPollService] = None


def get_blind_poll_service() -> BlindPollService:
    """Get global blind poll service instance"""
    global _blind_poll_service
    if _blind_poll_service is None:
        private_key, _ = load_signing_keys()
        _blind_poll_service = BlindPollService(BlindRSASuite(), private_key)
    return _blind_poll_service


def set_blind_poll_service(service: Optional[BlindPollService]) -> None:
    global _blind_poll_service
    _blind_poll_service = service
