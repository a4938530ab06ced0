"""Dispatch a single job, or run only its cold-lead sourcing pipeline, from the command line."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Sequence

from sqlalchemy.engine.url import make_url

from app.config import Settings
from app.services.capabilities import build_orchestrator
from app.services.datastore import Datastore, SqlDatastore
from app.services.dispatch.orchestrator import DispatchOrchestrator
from app.services.errors import DispatchError, JobNotFoundError

logger = logging.getLogger("scripts.dispatch_job")


def _render_database_url(url: str) -> str:
    try:
        return make_url(url).render_as_string(hide_password=True)
    except Exception:
        return "<invalid DATABASE_URL>"


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Dispatch a job to technicians and cold leads.")
    parser.add_argument("--job-id", type=str, required=True, help="Job to dispatch.")
    parser.add_argument(
        "--pipeline-only",
        action="store_true",
        help="Only run the lead sourcing pipeline for the job; send nothing.",
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Override DATABASE_URL (falls back to .env).",
    )
    return parser.parse_args(argv)


async def run(
    args: argparse.Namespace,
    *,
    orchestrator: DispatchOrchestrator | None = None,
    datastore: Datastore | None = None,
) -> dict[str, Any]:
    """Execute the requested action and return a JSON-ready payload."""
    owned: SqlDatastore | None = None
    if orchestrator is None:
        local_settings = Settings()
        database_url = args.database_url or local_settings.database_url
        if not database_url:
            raise RuntimeError("DATABASE_URL is required to dispatch from the command line.")
        logger.info("Using DATABASE_URL=%s", _render_database_url(database_url))
        owned = SqlDatastore.from_url(database_url, pool_pre_ping=True)
        datastore = owned
        orchestrator = build_orchestrator(local_settings, datastore=owned)

    try:
        if not args.pipeline_only:
            result = await orchestrator.dispatch(args.job_id)
            return result.model_dump(mode="json")

        store = datastore
        if store is None or orchestrator.pipeline is None:
            raise RuntimeError("--pipeline-only requires a datastore and a configured pipeline.")
        job = await store.get_job(args.job_id)
        if job is None:
            raise JobNotFoundError(args.job_id)
        pipeline_result = await orchestrator.pipeline.run(job)
        return pipeline_result.model_dump(mode="json")
    finally:
        if owned is not None:
            await owned.dispose()


async def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        payload = await run(args)
    except DispatchError as exc:
        logger.error("dispatch_job.failed", extra={"job_id": args.job_id, "code": exc.code})
        print(json.dumps({"error": str(exc), "code": exc.code}, indent=2))
        return 1
    print(json.dumps(payload, indent=2))
    logger.info("dispatch_job.complete", extra={"job_id": args.job_id, "pipeline_only": args.pipeline_only})
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    sys.exit(asyncio.run(main()))
