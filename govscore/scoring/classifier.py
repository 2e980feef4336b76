"""
Proposal classification.

`classify` turns a raw upstream proposal into a `Proposal` tagged with its
type, treasury tier and the preference categories it bears on. Proposal
metadata arrives in several shapes (a structured `body`, older flat fields,
or nothing at all); title and abstract are read through ordered extractor
functions so each shape is handled in one place.
"""
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional, Tuple

from govscore.data_models.governance import (
    PreferenceCategory,
    Proposal,
    ProposalStatus,
    ProposalType,
    TreasuryTier,
)
from govscore.data_models.upstream_schemas import UpstreamProposal
from govscore.scoring.metrics import base_to_whole_units

ROUTINE_TIER_LIMIT = 1_000_000
SIGNIFICANT_TIER_LIMIT = 20_000_000

TREASURY_PREFS = [PreferenceCategory.TREASURY_CONSERVATIVE, PreferenceCategory.TREASURY_GROWTH]

TYPE_PREFS = {
    ProposalType.TREASURY_WITHDRAWALS: TREASURY_PREFS,
    ProposalType.PARAMETER_CHANGE: [PreferenceCategory.SECURITY],
    ProposalType.HARD_FORK_INITIATION: [PreferenceCategory.SECURITY, PreferenceCategory.INNOVATION],
    ProposalType.NO_CONFIDENCE: [PreferenceCategory.DECENTRALIZATION, PreferenceCategory.SECURITY],
    ProposalType.NEW_COMMITTEE: [PreferenceCategory.DECENTRALIZATION, PreferenceCategory.SECURITY],
    ProposalType.NEW_CONSTITUTION: [PreferenceCategory.SECURITY, PreferenceCategory.TRANSPARENCY],
}

# Info actions are non-binding; their relevance comes from their text
INFO_ACTION_KEYWORDS: List[Tuple[Tuple[str, ...], List[PreferenceCategory]]] = [
    (("defi", "innovation", "growth"), [PreferenceCategory.INNOVATION]),
    (("security", "stability", "parameter"), [PreferenceCategory.SECURITY]),
    (("treasury", "fund", "budget"), TREASURY_PREFS),
    (("decentralization", "governance", "community"), [PreferenceCategory.DECENTRALIZATION]),
    (("transparent", "accountability", "reporting"), [PreferenceCategory.TRANSPARENCY]),
]
INFO_ACTION_DEFAULT = [PreferenceCategory.TRANSPARENCY]


class MetadataShape(str, Enum):
    STRUCTURED = "structured"
    LEGACY = "legacy"
    ABSENT = "absent"


def metadata_shape(meta_json: Optional[Mapping[str, Any]]) -> MetadataShape:
    if not meta_json:
        return MetadataShape.ABSENT
    if isinstance(meta_json.get("body"), Mapping):
        return MetadataShape.STRUCTURED
    return MetadataShape.LEGACY


def _text(value: Any) -> Optional[str]:
    if isinstance(value, Mapping) and "@value" in value:
        value = value["@value"]
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _body_field(name: str) -> Callable[[UpstreamProposal], Optional[str]]:
    def extract(raw: UpstreamProposal) -> Optional[str]:
        if metadata_shape(raw.meta_json) is not MetadataShape.STRUCTURED:
            return None
        return _text(raw.meta_json["body"].get(name))
    return extract


def _flat_field(name: str) -> Callable[[UpstreamProposal], Optional[str]]:
    def extract(raw: UpstreamProposal) -> Optional[str]:
        if metadata_shape(raw.meta_json) is MetadataShape.ABSENT:
            return None
        return _text(raw.meta_json.get(name))
    return extract


def _description(raw: UpstreamProposal) -> Optional[str]:
    return _text(raw.proposal_description)


TITLE_EXTRACTORS = [_body_field("title"), _flat_field("title")]
ABSTRACT_EXTRACTORS = [
    _body_field("abstract"),
    _flat_field("abstract"),
    _description,
    _body_field("motivation"),
]


def _first_match(raw: UpstreamProposal, extractors) -> Optional[str]:
    for extract in extractors:
        value = extract(raw)
        if value:
            return value
    return None


def extract_title(raw: UpstreamProposal) -> str:
    return _first_match(raw, TITLE_EXTRACTORS) or f"Proposal {raw.proposal_tx_hash[:8]}..."


def extract_abstract(raw: UpstreamProposal) -> Optional[str]:
    return _first_match(raw, ABSTRACT_EXTRACTORS)


def extract_withdrawal_amount(raw: UpstreamProposal) -> Optional[float]:
    """Total withdrawal in whole units, or None when there are no line items."""
    if not raw.withdrawal:
        return None
    total_base_units = sum(item.amount for item in raw.withdrawal)
    return float(int(base_to_whole_units(total_base_units)))


def get_treasury_tier(amount: Optional[float]) -> Optional[TreasuryTier]:
    if amount is None:
        return None
    if amount < ROUTINE_TIER_LIMIT:
        return TreasuryTier.ROUTINE
    if amount < SIGNIFICANT_TIER_LIMIT:
        return TreasuryTier.SIGNIFICANT
    return TreasuryTier.MAJOR


def info_action_prefs(title: Optional[str], abstract: Optional[str]) -> List[PreferenceCategory]:
    search_text = " ".join(part for part in (title, abstract) if part).lower()
    prefs: List[PreferenceCategory] = []
    for keywords, categories in INFO_ACTION_KEYWORDS:
        if any(keyword in search_text for keyword in keywords):
            prefs.extend(c for c in categories if c not in prefs)
    return prefs or list(INFO_ACTION_DEFAULT)


def classify(raw: UpstreamProposal) -> Proposal:
    """
    Classify a raw proposal.

    Raises:
        ValueError: if the proposal type is not a known governance action
    """
    proposal_type = ProposalType(raw.proposal_type)
    title = extract_title(raw)
    abstract = extract_abstract(raw)

    withdrawal_amount = None
    treasury_tier = None
    if proposal_type is ProposalType.TREASURY_WITHDRAWALS:
        withdrawal_amount = extract_withdrawal_amount(raw)
        treasury_tier = get_treasury_tier(withdrawal_amount)

    if proposal_type is ProposalType.INFO_ACTION:
        # Keywords only look at declared title/abstract, never the placeholder
        relevant_prefs = info_action_prefs(
            _first_match(raw, TITLE_EXTRACTORS), _first_match(raw, ABSTRACT_EXTRACTORS[:2])
        )
    else:
        relevant_prefs = list(TYPE_PREFS.get(proposal_type, []))

    return Proposal(
        tx_hash=raw.proposal_tx_hash,
        proposal_index=raw.proposal_index,
        proposal_id=raw.proposal_id,
        proposal_type=proposal_type,
        title=title,
        abstract=abstract,
        withdrawal_amount=withdrawal_amount,
        treasury_tier=treasury_tier,
        relevant_prefs=relevant_prefs,
        param_changes=raw.param_proposal,
        proposed_epoch=raw.proposed_epoch,
        ratified_epoch=raw.ratified_epoch,
        enacted_epoch=raw.enacted_epoch,
        dropped_epoch=raw.dropped_epoch,
        expired_epoch=raw.expired_epoch,
        expiration_epoch=raw.expiration,
        block_time=raw.block_time,
    )


def proposal_status(proposal: Proposal) -> ProposalStatus:
    if proposal.enacted_epoch is not None:
        return ProposalStatus.ENACTED
    if proposal.ratified_epoch is not None:
        return ProposalStatus.RATIFIED
    if proposal.dropped_epoch is not None:
        return ProposalStatus.DROPPED
    if proposal.expired_epoch is not None:
        return ProposalStatus.EXPIRED
    return ProposalStatus.OPEN
