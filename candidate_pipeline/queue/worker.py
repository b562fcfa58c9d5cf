"""Background worker for candidate evaluation jobs.

Runs as a separate process, pulling jobs from the Redis queue and
evaluating each candidate with the LLM. SIGTERM/SIGINT stop new claims and
the process exits once in-flight evaluations finish.

Usage:
    python -m candidate_pipeline.queue.worker

Or via the installed script:
    candidate-worker
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys

from redis.exceptions import RedisError

from candidate_pipeline.config import WorkerSettings, load_settings
from candidate_pipeline.evaluation import CandidateEvaluator
from candidate_pipeline.evidence import EvidenceCollector
from candidate_pipeline.exceptions import ConfigurationError
from candidate_pipeline.llm import EvaluationLLM
from candidate_pipeline.queue.consumer import Processor
from candidate_pipeline.queue.gateway import create_candidate_evaluation_worker
from candidate_pipeline.store import ApplicationStore, create_db_engine

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger("worker")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT, force=True)
    # Third-party chatter
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def build_evaluator(settings: WorkerSettings) -> CandidateEvaluator:
    """Create the evaluator and everything it holds, once per process."""
    store = ApplicationStore(create_db_engine(settings.database_url))
    llm = EvaluationLLM(api_key=settings.gemini_api_key, model_name=settings.gemini_model_name)
    collector = EvidenceCollector(
        github_token=settings.github_token,
        enable_scraping=settings.enable_evidence_scraping,
    )
    return CandidateEvaluator(
        store,
        llm,
        collector,
        max_llm_retries=settings.llm_max_retries,
        model_name=settings.gemini_model_name,
    )


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    """Set ``stop_event`` on SIGTERM or SIGINT."""
    loop = asyncio.get_running_loop()

    def _handle(signame: str) -> None:
        logger.info(f"[worker] received {signame}, shutting down")
        stop_event.set()

    # Windows does not support add_signal_handler
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _handle, sig.name)


async def run_worker(settings: WorkerSettings, processor: Processor, stop_event: asyncio.Event) -> None:
    """Consume the queue until ``stop_event`` is set and in-flight jobs finish."""
    worker = create_candidate_evaluation_worker(
        settings.redis_url,
        processor,
        settings.worker_options(),
    )
    logger.info(
        f"[worker] starting (concurrency={worker.options.concurrency}, "
        f"rate_limit={settings.llm_rate_limit_per_minute}/min)"
    )
    await worker.run(stop_event)


async def _serve(settings: WorkerSettings) -> None:
    evaluator = build_evaluator(settings)
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)
    try:
        await run_worker(settings, evaluator, stop_event)
    finally:
        evaluator.store.engine.dispose()


def main() -> int:
    """Process entry point; returns the exit status."""
    try:
        settings = load_settings()
    except ConfigurationError as exc:
        configure_logging()
        logger.error(f"[worker] {exc}")
        return 1

    configure_logging(settings.log_level)
    try:
        asyncio.run(_serve(settings))
    except (RedisError, OSError) as exc:
        logger.error(f"[worker] could not start: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
