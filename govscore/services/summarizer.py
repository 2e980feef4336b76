"""
Short plain-language summaries for proposals and vote rationales.

The sync job only depends on the `Summarizer` protocol. The shipped
implementation wraps any langchain chat model; which model is used is up to
whoever builds the orchestrator.
"""
import asyncio
import re
from typing import Optional, Protocol

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from govscore.config.settings import SUMMARY_MAX_LENGTH, SUMMARY_TIMEOUT_SECONDS
from govscore.data_models.governance import Proposal, Vote
from govscore.utils.logger import logger
from govscore.utils.model_factory import extract_text_content

SYSTEM_PROMPT = (
    "You write neutral, factual one-line summaries of on-chain governance activity. "
    "Never include links, markdown or speculation."
)

PROPOSAL_DESCRIPTION_LIMIT = 2000
RATIONALE_TEXT_LIMIT = 1500

_URL_PATTERN = re.compile(r"(?:https?|ipfs)://\S+")
_WHITESPACE_RUN = re.compile(r"\s{2,}")


class Summarizer(Protocol):
    async def summarize(self, kind: str, text: str) -> Optional[str]:
        """Return a summary, or None when none could be produced."""


def truncate_to_word_boundary(text: str, max_length: int = SUMMARY_MAX_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    trimmed = text[:max_length]
    last_space = trimmed.rfind(" ")
    return trimmed[:last_space] if last_space > 0 else trimmed


def clean_summary(text: Optional[str], max_length: int = SUMMARY_MAX_LENGTH) -> Optional[str]:
    """Strip URLs and collapse whitespace, then cut at a word boundary."""
    if not text:
        return None
    cleaned = _WHITESPACE_RUN.sub(" ", _URL_PATTERN.sub("", text)).strip()
    if not cleaned:
        return None
    return truncate_to_word_boundary(cleaned, max_length)


def build_proposal_prompt(proposal: Proposal, description: Optional[str] = None) -> str:
    lines = [
        f"Summarize this governance proposal in 1-2 short sentences ({SUMMARY_MAX_LENGTH} characters or fewer). "
        "State what it does and, if it spends funds, how much.",
        "",
        f"Title: {proposal.title}",
        f"Type: {proposal.proposal_type.value}",
    ]
    if proposal.withdrawal_amount:
        lines.append(f"Amount: {proposal.withdrawal_amount:,.0f} ADA")
    body = description or proposal.abstract
    if body:
        lines.append(f"Description: {body[:PROPOSAL_DESCRIPTION_LIMIT]}")
    return "\n".join(lines)


def build_rationale_prompt(vote: Vote, rationale_text: str, proposal_title: Optional[str] = None) -> str:
    title = proposal_title or f"{vote.proposal_tx_hash[:8]}#{vote.proposal_index}"
    return (
        f'Summarize this delegate\'s rationale for voting {vote.decision.value} on "{title}" '
        f"in one sentence ({SUMMARY_MAX_LENGTH} characters or fewer).\n\n"
        f"Rationale: {rationale_text[:RATIONALE_TEXT_LIMIT]}"
    )


class LangChainSummarizer:
    """Summarizer backed by a langchain chat model."""

    def __init__(
        self,
        llm: BaseChatModel,
        timeout: float = None,
        max_length: int = None,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        self.llm = llm
        self.timeout = timeout or SUMMARY_TIMEOUT_SECONDS
        self.max_length = max_length or SUMMARY_MAX_LENGTH
        self.system_prompt = system_prompt

    async def summarize(self, kind: str, text: str) -> Optional[str]:
        messages = [SystemMessage(content=self.system_prompt), HumanMessage(content=text)]
        try:
            response = await asyncio.wait_for(self.llm.ainvoke(messages), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("[Summary] %s summary timed out after %.0fs", kind, self.timeout)
            return None
        except Exception as e:
            logger.warning("[Summary] %s summary failed: %s", kind, e)
            return None

        return clean_summary(extract_text_content(getattr(response, "content", response)), self.max_length)
