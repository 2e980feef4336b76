"""Unit tests for proposal classification."""
import pytest

from govscore.data_models.governance import PreferenceCategory, ProposalStatus, ProposalType, TreasuryTier
from govscore.data_models.upstream_schemas import UpstreamProposal
from govscore.scoring.classifier import (
    MetadataShape,
    classify,
    extract_abstract,
    extract_title,
    extract_withdrawal_amount,
    get_treasury_tier,
    info_action_prefs,
    metadata_shape,
    proposal_status,
)


def raw_proposal(proposal_type="InfoAction", meta_json=None, **kwargs) -> UpstreamProposal:
    data = {
        "proposal_tx_hash": "abcdef1234567890",
        "proposal_index": 0,
        "proposal_type": proposal_type,
        "proposed_epoch": 500,
        "block_time": 1_700_000_000,
        "meta_json": meta_json,
    }
    data.update(kwargs)
    return UpstreamProposal.model_validate(data)


class TestMetadataExtraction:
    """Test title and abstract fallbacks across metadata shapes."""

    def test_shapes(self):
        """Test the three metadata shapes are told apart."""
        assert metadata_shape(None) is MetadataShape.ABSENT
        assert metadata_shape({"title": "x"}) is MetadataShape.LEGACY
        assert metadata_shape({"body": {"title": "x"}}) is MetadataShape.STRUCTURED

    def test_structured_body(self):
        """Test title and abstract come from the body first."""
        raw = raw_proposal(meta_json={"body": {"title": {"@value": "Budget 2025"}, "abstract": "Fund things"}})
        assert extract_title(raw) == "Budget 2025"
        assert extract_abstract(raw) == "Fund things"

    def test_legacy_flat_fields(self):
        """Test flat title and abstract are used when there is no body."""
        raw = raw_proposal(meta_json={"title": "Legacy title", "abstract": "Legacy abstract"})
        assert extract_title(raw) == "Legacy title"
        assert extract_abstract(raw) == "Legacy abstract"

    def test_abstract_falls_back_to_description_then_motivation(self):
        """Test the abstract fallback order."""
        raw = raw_proposal(meta_json={"body": {"motivation": "Why"}}, proposal_description="Described")
        assert extract_abstract(raw) == "Described"
        assert extract_abstract(raw_proposal(meta_json={"body": {"motivation": "Why"}})) == "Why"

    def test_placeholder_title(self):
        """Test a proposal without metadata gets a hash placeholder."""
        assert extract_title(raw_proposal()) == "Proposal abcdef12..."
        assert extract_abstract(raw_proposal()) is None


class TestTreasury:
    """Test withdrawal amounts and tiers."""

    def test_amount_sums_line_items(self):
        """Test line items are summed and converted to whole units."""
        raw = raw_proposal(
            "TreasuryWithdrawals",
            withdrawal=[{"stake_address": "stake1", "amount": "1500000000000"}, {"amount": 500_000_000_000}],
        )
        assert extract_withdrawal_amount(raw) == 2_000_000

    def test_no_line_items(self):
        """Test a proposal without withdrawals has no amount."""
        assert extract_withdrawal_amount(raw_proposal("TreasuryWithdrawals")) is None

    @pytest.mark.parametrize("amount,tier", [
        (0, TreasuryTier.ROUTINE),
        (999_999, TreasuryTier.ROUTINE),
        (1_000_000, TreasuryTier.SIGNIFICANT),
        (19_999_999, TreasuryTier.SIGNIFICANT),
        (20_000_000, TreasuryTier.MAJOR),
    ])
    def test_tiers(self, amount, tier):
        """Test tier boundaries."""
        assert get_treasury_tier(amount) is tier

    def test_major_withdrawal(self):
        """Test a 25M withdrawal is classified major with both treasury prefs."""
        raw = raw_proposal("TreasuryWithdrawals", withdrawal=[{"amount": 25_000_000 * 1_000_000}])
        proposal = classify(raw)
        assert proposal.treasury_tier is TreasuryTier.MAJOR
        assert proposal.withdrawal_amount == 25_000_000
        assert proposal.relevant_prefs == [
            PreferenceCategory.TREASURY_CONSERVATIVE,
            PreferenceCategory.TREASURY_GROWTH,
        ]


class TestClassify:
    """Test type dispatch."""

    @pytest.mark.parametrize("proposal_type,prefs", [
        ("ParameterChange", [PreferenceCategory.SECURITY]),
        ("HardForkInitiation", [PreferenceCategory.SECURITY, PreferenceCategory.INNOVATION]),
        ("NoConfidence", [PreferenceCategory.DECENTRALIZATION, PreferenceCategory.SECURITY]),
        ("NewCommittee", [PreferenceCategory.DECENTRALIZATION, PreferenceCategory.SECURITY]),
        ("NewConstitution", [PreferenceCategory.SECURITY, PreferenceCategory.TRANSPARENCY]),
    ])
    def test_type_prefs(self, proposal_type, prefs):
        """Test each binding type maps to its categories."""
        proposal = classify(raw_proposal(proposal_type))
        assert proposal.relevant_prefs == prefs
        assert proposal.treasury_tier is None

    def test_type_aliases(self):
        """Test older type names resolve to the current ones."""
        assert classify(raw_proposal("UpdateConstitution")).proposal_type is ProposalType.NEW_CONSTITUTION
        assert classify(raw_proposal("NewConstitutionalCommittee")).proposal_type is ProposalType.NEW_COMMITTEE

    def test_unknown_type(self):
        """Test an unknown type is rejected."""
        with pytest.raises(ValueError):
            classify(raw_proposal("SomethingElse"))

    def test_info_action_keywords(self):
        """Test info actions take categories from their text."""
        raw = raw_proposal(meta_json={"body": {"title": "DeFi liquidity", "abstract": "Community budget"}})
        assert classify(raw).relevant_prefs == [
            PreferenceCategory.INNOVATION,
            PreferenceCategory.TREASURY_CONSERVATIVE,
            PreferenceCategory.TREASURY_GROWTH,
            PreferenceCategory.DECENTRALIZATION,
        ]

    def test_info_action_default(self):
        """Test info actions without keywords default to transparency."""
        assert info_action_prefs("Hello", "World") == [PreferenceCategory.TRANSPARENCY]
        assert classify(raw_proposal()).relevant_prefs == [PreferenceCategory.TRANSPARENCY]


class TestStatus:
    """Test lifecycle status."""

    def test_statuses(self):
        """Test the most advanced epoch wins."""
        assert proposal_status(classify(raw_proposal())) is ProposalStatus.OPEN
        assert proposal_status(classify(raw_proposal(expired_epoch=510))) is ProposalStatus.EXPIRED
        assert proposal_status(classify(raw_proposal(ratified_epoch=505))) is ProposalStatus.RATIFIED
        assert proposal_status(
            classify(raw_proposal(ratified_epoch=505, enacted_epoch=506))
        ) is ProposalStatus.ENACTED
