"""
Run one sync from the command line.

    python -m govscore.sync --type full

Exits non-zero when the run is recorded as unsuccessful, so a scheduler
can alert on it.
"""
import argparse
import asyncio
import sys

from govscore.config.settings import SUMMARY_MODEL
from govscore.data_models.governance import SyncType
from govscore.services.store_factory import get_store
from govscore.services.summarizer import LangChainSummarizer
from govscore.sync.orchestrator import SyncOrchestrator
from govscore.upstream.client import UpstreamClient
from govscore.utils.logger import logger
from govscore.utils.model_factory import create_chat_model


def build_summarizer(enabled: bool):
    if not enabled or not SUMMARY_MODEL:
        return None
    try:
        return LangChainSummarizer(create_chat_model(SUMMARY_MODEL))
    except ValueError as e:
        logger.warning("[Sync] Summaries disabled: %s", e)
        return None


async def run_sync(sync_type: SyncType, summaries: bool = True):
    store = get_store()
    async with UpstreamClient() as client:
        orchestrator = SyncOrchestrator(client, store, summarizer=build_summarizer(summaries))
        return await orchestrator.run(sync_type)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Sync and score governance delegates")
    parser.add_argument(
        "--type",
        choices=[t.value for t in SyncType],
        default=SyncType.FULL.value,
        help="fast: fetch, score and persist; full: also backfill power, rationales and summaries",
    )
    parser.add_argument("--no-summaries", action="store_true", help="Skip AI summaries on full runs")
    args = parser.parse_args(argv)

    run = asyncio.run(run_sync(SyncType(args.type), summaries=not args.no_summaries))
    if not run.success:
        logger.error("[Sync] Run %s failed: %s", run.id, run.error_message)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
