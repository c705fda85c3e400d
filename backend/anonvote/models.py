"""
AnonVote Database Models
Blind-token polls, Semaphore-style groups and anonymous polls
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text,
    JSON, ForeignKey, Index, Enum as SQLEnum, UniqueConstraint
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from anonvote.database import Base


# ============================================================================
# Enumerations
# ============================================================================

class PollStatus(str, enum.Enum):
    """Lifecycle shared by both poll kinds"""
    DRAFT = "DRAFT"
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class GroupCategory(str, enum.Enum):
    TREASURY = "TREASURY"
    TECHNICAL = "TECHNICAL"
    SOCIAL = "SOCIAL"
    GOVERNANCE = "GOVERNANCE"
    ALL = "ALL"


class VerificationMode(str, enum.Enum):
    """When anonymous vote proofs are checked"""
    IMMEDIATE = "IMMEDIATE"
    DEFERRED = "DEFERRED"


class NullifierStatus(str, enum.Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


# ============================================================================
# Table 1: User Identities
# ============================================================================

class UserIdentity(Base):
    """
    Public identity commitment registered by a community member

    The identity secret never reaches the server; only the commitment
    (a decimal string) is stored.
    """
    __tablename__ = "user_identities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    commitment = Column(String(100), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<UserIdentity(user_id='{self.user_id}')>"


# ============================================================================
# Table 2: Semaphore Groups
# ============================================================================

class SemaphoreGroup(Base):
    """
    Eligible voter set derived from an external role

    merkle_root is the decimal root of the ordered leaf list ("0" when
    empty). member_count counts active members, tree_size counts every slot
    ever assigned and is the next free index.
    """
    __tablename__ = "semaphore_groups"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    category = Column(SQLEnum(GroupCategory), nullable=False, default=GroupCategory.ALL)
    role_id = Column(String(64), nullable=False)
    role_name = Column(String(200), nullable=True)
    merkle_root = Column(String(100), nullable=False, default="0")
    member_count = Column(Integer, nullable=False, default=0)
    tree_size = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    members = relationship(
        "SemaphoreGroupMember",
        back_populates="group",
        cascade="all, delete-orphan",
        order_by="SemaphoreGroupMember.leaf_index",
    )

    __table_args__ = (
        UniqueConstraint("role_id", "category", name="uq_group_role_category"),
    )

    def __repr__(self):
        return f"<SemaphoreGroup(id='{self.id[:12]}', name='{self.name}', members={self.member_count})>"


# ============================================================================
# Table 3: Group Members
# ============================================================================

class SemaphoreGroupMember(Base):
    """
    One leaf slot of a group tree

    Slots are never renumbered; removal sets active=False and the leaf
    value becomes 0.
    """
    __tablename__ = "semaphore_group_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(String(64), ForeignKey("semaphore_groups.id", ondelete="CASCADE"), nullable=False)
    commitment = Column(String(100), nullable=False)
    leaf_index = Column(Integer, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    added_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    group = relationship("SemaphoreGroup", back_populates="members")

    __table_args__ = (
        UniqueConstraint("group_id", "commitment", name="uq_member_group_commitment"),
        UniqueConstraint("group_id", "leaf_index", name="uq_member_group_index"),
    )

    def __repr__(self):
        return f"<SemaphoreGroupMember(group='{self.group_id[:12]}', index={self.leaf_index}, active={self.active})>"


# ============================================================================
# Table 4: Anonymous Polls
# ============================================================================

class AnonPoll(Base):
    """Poll voted on with group-membership proofs"""
    __tablename__ = "anon_polls"

    id = Column(Integer, primary_key=True, autoincrement=True)
    question = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    options = Column(JSON, nullable=False)  # ordered list of labels
    group_id = Column(String(64), ForeignKey("semaphore_groups.id"), nullable=False, index=True)
    category = Column(SQLEnum(GroupCategory), nullable=False, default=GroupCategory.ALL)
    status = Column(SQLEnum(PollStatus), nullable=False, default=PollStatus.DRAFT, index=True)
    verification_mode = Column(
        SQLEnum(VerificationMode), nullable=False, default=VerificationMode.IMMEDIATE
    )
    closes_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    group = relationship("SemaphoreGroup")
    results = relationship(
        "AnonPollResult",
        back_populates="poll",
        cascade="all, delete-orphan",
        order_by="AnonPollResult.option_index",
    )

    def __repr__(self):
        return f"<AnonPoll(id={self.id}, status='{self.status}')>"


class AnonPollResult(Base):
    __tablename__ = "anon_poll_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    poll_id = Column(Integer, ForeignKey("anon_polls.id", ondelete="CASCADE"), nullable=False)
    option_index = Column(Integer, nullable=False)
    count = Column(Integer, nullable=False, default=0)

    poll = relationship("AnonPoll", back_populates="results")

    __table_args__ = (
        UniqueConstraint("poll_id", "option_index", name="uq_anon_result_poll_option"),
    )


# ============================================================================
# Table 5: Nullifiers
# ============================================================================

class AnonVoteNullifier(Base):
    """
    Record of one anonymous vote

    Unique per (poll_id, nullifier); this constraint is the double-vote
    arbiter. proof_data is kept only while verification is pending.
    """
    __tablename__ = "anon_vote_nullifiers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    poll_id = Column(Integer, ForeignKey("anon_polls.id", ondelete="CASCADE"), nullable=False)
    nullifier = Column(String(100), nullable=False)
    option_index = Column(Integer, nullable=False)
    status = Column(SQLEnum(NullifierStatus), nullable=False, default=NullifierStatus.PENDING, index=True)
    proof_data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("poll_id", "nullifier", name="uq_nullifier_poll"),
        Index("idx_nullifier_poll_status", "poll_id", "status"),
    )

    def __repr__(self):
        return f"<AnonVoteNullifier(poll_id={self.poll_id}, status='{self.status}')>"


# ============================================================================
# Table 6: Blind-Token Polls
# ============================================================================

class Poll(Base):
    """Poll voted on with blind-signed tokens"""
    __tablename__ = "polls"

    id = Column(Integer, primary_key=True, autoincrement=True)
    question = Column(String(500), nullable=False)
    options = Column(JSON, nullable=False)  # [{"id": ..., "label": ...}]
    required_role_id = Column(String(64), nullable=False)
    status = Column(SQLEnum(PollStatus), nullable=False, default=PollStatus.DRAFT, index=True)
    created_by = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    results = relationship("PollResult", back_populates="poll", cascade="all, delete-orphan")

    def option_ids(self):
        return [option["id"] for option in (self.options or [])]

    def __repr__(self):
        return f"<Poll(id={self.id}, status='{self.status}')>"


class PollResult(Base):
    __tablename__ = "poll_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    poll_id = Column(Integer, ForeignKey("polls.id", ondelete="CASCADE"), nullable=False)
    option_id = Column(String(100), nullable=False)
    tally = Column(Integer, nullable=False, default=0)

    poll = relationship("Poll", back_populates="results")

    __table_args__ = (
        UniqueConstraint("poll_id", "option_id", name="uq_result_poll_option"),
    )


# ============================================================================
# Table 7: Pending Signatures
# ============================================================================

class PendingSignature(Base):
    """
    Marks that a user already received a blind signature for a poll

    Holds a placeholder only; the blind signature is never persisted.
    """
    __tablename__ = "pending_signatures"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    poll_id = Column(Integer, ForeignKey("polls.id", ondelete="CASCADE"), nullable=False)
    signature = Column(String(20), nullable=False, default="issued")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "poll_id", name="uq_pending_user_poll"),
    )


# ============================================================================
# Table 8: Consumed Tokens
# ============================================================================

class ConsumedToken(Base):
    """SHA-256 hex of a redeemed token; its existence blocks re-redemption"""
    __tablename__ = "consumed_tokens"

    token_hash = Column(String(64), primary_key=True)
    poll_id = Column(Integer, ForeignKey("polls.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


# ============================================================================
# Table 9: Audit Log
# ============================================================================

class AuditLog(Base):
    """
    Administrative events only

    Never written from anonymous vote paths.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(50), nullable=True)
    entity_id = Column(String(100), nullable=True)
    details = Column(JSON, nullable=True)
    actor = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
    )

    def __repr__(self):
        return f"<AuditLog(id={self.id}, event='{self.event_type}')>"
