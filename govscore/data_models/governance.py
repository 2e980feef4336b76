from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator


class VoteDecision(str, Enum):
    YES = "Yes"
    NO = "No"
    ABSTAIN = "Abstain"


class ProposalType(str, Enum):
    """Governance action types as named by the upstream API"""
    PARAMETER_CHANGE = "ParameterChange"
    TREASURY_WITHDRAWALS = "TreasuryWithdrawals"
    HARD_FORK_INITIATION = "HardForkInitiation"
    NO_CONFIDENCE = "NoConfidence"
    NEW_COMMITTEE = "NewCommittee"
    NEW_CONSTITUTION = "NewConstitution"
    INFO_ACTION = "InfoAction"

    @classmethod
    def _missing_(cls, value):
        aliases = {
            "UpdateConstitution": cls.NEW_CONSTITUTION,
            "NewConstitutionalCommittee": cls.NEW_COMMITTEE,
            "UpdateCommittee": cls.NEW_COMMITTEE,
        }
        return aliases.get(value)


class TreasuryTier(str, Enum):
    ROUTINE = "routine"
    SIGNIFICANT = "significant"
    MAJOR = "major"


class PreferenceCategory(str, Enum):
    TREASURY_CONSERVATIVE = "treasury-conservative"
    TREASURY_GROWTH = "treasury-growth"
    DECENTRALIZATION = "decentralization"
    SECURITY = "security"
    INNOVATION = "innovation"
    TRANSPARENCY = "transparency"


class PowerSource(str, Enum):
    """How a vote's voting weight was attributed"""
    EXACT = "exact"
    NEAREST = "nearest"


class SizeTier(str, Enum):
    SMALL = "Small"
    MEDIUM = "Medium"
    LARGE = "Large"
    WHALE = "Whale"


class SyncType(str, Enum):
    FAST = "fast"
    FULL = "full"


class LinkStatus(str, Enum):
    VALID = "valid"
    BROKEN = "broken"


class ProposalStatus(str, Enum):
    OPEN = "Open"
    RATIFIED = "Ratified"
    ENACTED = "Enacted"
    DROPPED = "Dropped"
    EXPIRED = "Expired"


def _clamp_score(value: Any) -> int:
    if value is None:
        return 50
    return int(max(0, min(100, round(value))))


class Vote(BaseModel):
    """A delegate's vote on one proposal, keyed by its own transaction hash"""
    vote_tx_hash: str
    delegate_id: str
    proposal_tx_hash: str
    proposal_index: int
    decision: VoteDecision
    epoch_no: int
    block_time: int
    meta_url: Optional[str] = None
    meta_hash: Optional[str] = None
    inline_rationale: Optional[str] = None
    voting_power: Optional[int] = None
    power_source: Optional[PowerSource] = None

    @property
    def proposal_key(self) -> Tuple[str, int]:
        return (self.proposal_tx_hash, self.proposal_index)


class Proposal(BaseModel):
    """A governance proposal with its classification outputs"""
    tx_hash: str
    proposal_index: int
    proposal_id: Optional[str] = None
    proposal_type: ProposalType
    title: str
    abstract: Optional[str] = None
    withdrawal_amount: Optional[float] = None
    treasury_tier: Optional[TreasuryTier] = None
    relevant_prefs: List[PreferenceCategory] = Field(default_factory=list)
    param_changes: Optional[Dict[str, Any]] = None
    proposed_epoch: int
    ratified_epoch: Optional[int] = None
    enacted_epoch: Optional[int] = None
    dropped_epoch: Optional[int] = None
    expired_epoch: Optional[int] = None
    expiration_epoch: Optional[int] = None
    block_time: int
    ai_summary: Optional[str] = None

    @property
    def key(self) -> Tuple[str, int]:
        return (self.tx_hash, self.proposal_index)

    @property
    def closing_epoch(self) -> Optional[int]:
        """First epoch at which the proposal stopped accepting votes, if any"""
        closed = [e for e in (self.ratified_epoch, self.dropped_epoch, self.expired_epoch) if e is not None]
        return min(closed) if closed else None


class ReliabilityBreakdown(BaseModel):
    score: int = 0
    streak: int = 0
    recency: int = 0
    longest_gap: int = 0
    tenure: int = 0


class AlignmentBreakdown(BaseModel):
    """Per-category alignment of one delegate, each clamped to 0-100"""
    treasury_conservative: int = 50
    treasury_growth: int = 50
    decentralization: int = 50
    security: int = 50
    innovation: int = 50
    transparency: int = 50
    last_vote_time: Optional[int] = None

    @field_validator(
        "treasury_conservative", "treasury_growth", "decentralization",
        "security", "innovation", "transparency", mode="before",
    )
    @classmethod
    def clamp(cls, v: Any) -> int:
        return _clamp_score(v)

    def score_for(self, category: PreferenceCategory) -> int:
        return getattr(self, category.value.replace("-", "_"))


class CategoryShift(BaseModel):
    category: PreferenceCategory
    previous: int
    current: int
    delta: int


class AlignmentShift(BaseModel):
    delegate_id: str
    name: Optional[str] = None
    previous_overall: int
    current_overall: int
    delta: int
    category_shifts: List[CategoryShift] = Field(default_factory=list)


class Delegate(BaseModel):
    """Latest scored snapshot of one delegate"""
    delegate_id: str
    name: Optional[str] = None
    ticker: Optional[str] = None
    handle: Optional[str] = None
    registered: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)
    voting_power: int = 0
    size_tier: SizeTier = SizeTier.SMALL
    delegator_count: Optional[int] = None

    total_votes: int = 0
    yes_votes: int = 0
    no_votes: int = 0
    abstain_votes: int = 0

    participation_rate: int = 0
    rationale_rate: int = 0
    deliberation_modifier: float = 1.0
    effective_participation: int = 0
    reliability: ReliabilityBreakdown = Field(default_factory=ReliabilityBreakdown)
    profile_completeness: int = 0
    score: int = 0

    alignment: Optional[AlignmentBreakdown] = None
    previous_alignment: Optional[AlignmentBreakdown] = None
    metadata_hash_verified: Optional[bool] = None
    first_vote_epoch: Optional[int] = None
    last_vote_time: Optional[int] = None
    updated_at: Optional[datetime] = None


class PowerSnapshot(BaseModel):
    delegate_id: str
    epoch_no: int
    amount: int


class ScoreHistoryEntry(BaseModel):
    delegate_id: str
    snapshot_date: date
    score: int
    effective_participation: int
    rationale_rate: int
    reliability_score: int
    profile_completeness: int


class VoteRationale(BaseModel):
    """Resolved rationale text for a vote whose rationale lives at an external URL"""
    vote_tx_hash: str
    delegate_id: str
    meta_url: Optional[str] = None
    rationale_text: Optional[str] = None
    ai_summary: Optional[str] = None
    hash_verified: Optional[bool] = None
    fetched_at: Optional[datetime] = None


class SocialLinkCheck(BaseModel):
    """Reachability of one declared profile link, as seen by the last HEAD request"""
    delegate_id: str
    uri: str
    status: LinkStatus
    http_status: Optional[int] = None
    last_checked_at: Optional[datetime] = None


class SyncRun(BaseModel):
    """Provenance record of one sync run"""
    id: Optional[int] = None
    sync_type: SyncType
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    success: Optional[bool] = None
    error_message: Optional[str] = None
    metrics: Dict[str, Any] = Field(default_factory=dict)
