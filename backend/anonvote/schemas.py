"""
Pydantic schemas for API requests and responses
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from anonvote.models import GroupCategory, PollStatus, VerificationMode


# Base schemas
class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class CurrentUser(BaseModel):
    """Authenticated caller, taken from the session token's sub claim"""
    id: str


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    database: str
    signing_suite: str


# ============================================================================
# Blind-token polls
# ============================================================================

class PollOption(BaseModel):
    id: str = Field(..., min_length=1, max_length=100)
    label: str = Field(..., min_length=1, max_length=200)

    @field_validator("id", "label")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class PollCreate(BaseModel):
    question: str = Field(..., min_length=1, max_length=500)
    options: List[PollOption] = Field(..., min_length=2, max_length=50)
    required_role_id: str = Field(..., min_length=1, max_length=64)


class PollUpdate(BaseModel):
    question: Optional[str] = Field(None, min_length=1, max_length=500)
    options: Optional[List[PollOption]] = Field(None, min_length=2, max_length=50)
    status: Optional[PollStatus] = None


class PollResponse(BaseSchema):
    id: int
    question: str
    options: List[PollOption]
    required_role_id: str
    status: PollStatus
    created_at: Optional[str] = None
    results: Optional[Dict[str, int]] = None
    total_votes: Optional[int] = None


class PublicKeyResponse(BaseModel):
    public_key: str
    suite: str
    modulus_bits: int


class SignRequest(BaseModel):
    blinded_message: str = Field(..., min_length=1)


class SignResponse(BaseModel):
    blind_signature: str


class PollUserStatus(BaseModel):
    poll_id: int
    eligible: bool
    token_claimed: bool


class RedeemRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)
    signature: str = Field(..., min_length=1)
    poll_id: int
    option_id: str = Field(..., min_length=1, max_length=100)
    prepared_message: Optional[str] = None  # base64, randomized suite only


class VoteResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    status: Optional[str] = None


# ============================================================================
# Identities and groups
# ============================================================================

class IdentityRegister(BaseModel):
    commitment: str = Field(..., min_length=1, max_length=100, pattern=r"^[0-9]+$")


class IdentityResponse(BaseModel):
    has_identity: bool
    commitment: Optional[str] = None
    already_exists: Optional[bool] = None


class BatchIdentitiesRequest(BaseModel):
    dry_run: bool = True
    limit: Optional[int] = Field(None, gt=0)


class GroupCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    role_id: str = Field(..., min_length=1, max_length=64)
    role_name: Optional[str] = Field(None, max_length=200)
    category: GroupCategory = GroupCategory.ALL


class GroupResponse(BaseModel):
    id: str
    name: str
    category: GroupCategory
    role_id: str
    role_name: Optional[str] = None
    merkle_root: str
    member_count: int
    tree_size: int
    members: Optional[List[str]] = None


class GroupJoin(BaseModel):
    group_id: str = Field(..., min_length=1, max_length=64)
    commitment: str = Field(..., min_length=1, max_length=100)


class GroupJoinResponse(BaseModel):
    group_id: str
    index: int
    merkle_root: str


class SyncResponse(BaseModel):
    group_id: str
    group_name: str
    added_count: int
    already_member_count: int
    no_identity_count: int


# ============================================================================
# Anonymous polls
# ============================================================================

class AnonPollCreate(BaseModel):
    question: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    options: List[str] = Field(..., min_length=2, max_length=50)
    group_id: Optional[str] = None
    category: GroupCategory = GroupCategory.ALL
    verification_mode: VerificationMode = VerificationMode.IMMEDIATE
    closes_at: Optional[datetime] = None


class AnonPollStatusUpdate(BaseModel):
    status: PollStatus


class AnonVoteRequest(BaseModel):
    poll_id: int
    proof: Dict[str, Any]


class VerifyPendingRequest(BaseModel):
    poll_id: Optional[int] = None


class VerifyPendingResponse(BaseModel):
    processed: int
    verified: int
    rejected: int
