"""
Wire models for the upstream governance read API.

Only the fields the pipeline depends on are declared; everything else is
kept (extra="allow") so nothing is lost when the API grows new columns.
Numeric amounts arrive as strings and are coerced to int.
"""
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from govscore.utils.logger import logger

MAX_REPORTED_ERRORS = 3

M = TypeVar('M', bound=BaseModel)


class UpstreamRecord(BaseModel):
    model_config = ConfigDict(extra="allow")


class DelegateListItem(UpstreamRecord):
    drep_id: str
    hex: Optional[str] = None
    has_script: bool = False
    registered: bool = True


class DelegateInfo(UpstreamRecord):
    drep_id: str
    registered: bool = True
    active: Optional[bool] = None
    deposit: Optional[int] = None
    amount: int = 0
    active_epoch: Optional[int] = None
    expires_epoch_no: Optional[int] = None
    meta_url: Optional[str] = None
    meta_hash: Optional[str] = None


class DelegateMetadata(UpstreamRecord):
    drep_id: str
    meta_url: Optional[str] = None
    meta_hash: Optional[str] = None
    meta_json: Optional[Dict[str, Any]] = None
    is_valid: Optional[bool] = None


class UpstreamVote(UpstreamRecord):
    vote_tx_hash: str
    proposal_tx_hash: str
    proposal_index: int
    vote: str = Field(pattern="^(Yes|No|Abstain)$")
    block_time: int
    # Present on the bulk vote list; per-delegate vote lists omit it
    voter_id: Optional[str] = None
    epoch_no: Optional[int] = None
    meta_url: Optional[str] = None
    meta_hash: Optional[str] = None
    meta_json: Optional[Dict[str, Any]] = None


class Withdrawal(UpstreamRecord):
    stake_address: Optional[str] = None
    amount: int = 0


class UpstreamProposal(UpstreamRecord):
    proposal_tx_hash: str
    proposal_index: int
    proposal_id: Optional[str] = None
    proposal_type: str
    proposal_description: Optional[Any] = None
    deposit: Optional[int] = None
    return_address: Optional[str] = None
    proposed_epoch: int
    ratified_epoch: Optional[int] = None
    enacted_epoch: Optional[int] = None
    dropped_epoch: Optional[int] = None
    expired_epoch: Optional[int] = None
    expiration: Optional[int] = None
    block_time: int
    meta_url: Optional[str] = None
    meta_hash: Optional[str] = None
    meta_json: Optional[Dict[str, Any]] = None
    withdrawal: Optional[List[Withdrawal]] = None
    param_proposal: Optional[Dict[str, Any]] = None


class PowerHistoryEntry(UpstreamRecord):
    epoch_no: int
    amount: int


class ValidationSummary(BaseModel):
    """Result of validating a list of raw upstream records."""
    valid: List[Any] = Field(default_factory=list)
    invalid_count: int = 0
    errors: List[str] = Field(default_factory=list)


def validate_records(items: List[Any], model: Type[M], label: str) -> ValidationSummary:
    """Parse raw records into `model`, dropping and counting the malformed ones."""
    summary = ValidationSummary()
    for item in items or []:
        try:
            summary.valid.append(model.model_validate(item))
        except ValidationError as e:
            summary.invalid_count += 1
            if len(summary.errors) < MAX_REPORTED_ERRORS:
                issues = ", ".join(
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
                )
                summary.errors.append(f"{label} validation: {issues}")

    if summary.invalid_count:
        logger.warning(
            "[Upstream] %s: %d/%d records failed validation",
            label, summary.invalid_count, len(items),
        )
    return summary
