"""Explicit wiring of optional providers into the dispatch core."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.clients.hunter import HunterClient
from app.config import Settings, settings
from app.core.database import get_engine, get_session_factory
from app.services.backoff import BackoffExecutor, BackoffPolicy
from app.services.datastore import Datastore, InMemoryDatastore, SqlDatastore
from app.services.dispatch.mailer import DryRunMailer, Mailer, SendGridMailer
from app.services.dispatch.orchestrator import DispatchConfig, DispatchOrchestrator
from app.services.sourcing.openai_ranker import AsyncOpenAIChatClient, OpenAICandidateRanker
from app.services.sourcing.pipeline import LeadSourcingPipeline, PipelineConfig
from app.services.sourcing.selector import CandidateRanker, LeadSelector
from app.services.sourcing.verification import EmailFinder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchCapabilities:
    """Which optional providers are available; None means that branch is disabled."""

    ranker: CandidateRanker | None
    email_finder: EmailFinder | None
    mailer: Mailer


def build_capabilities(config: Settings) -> DispatchCapabilities:
    ranker: CandidateRanker | None = None
    if config.openai_api_key:
        ranker = OpenAICandidateRanker(
            AsyncOpenAIChatClient(config.openai_api_key),
            model=config.ranker_model,
            temperature=config.ranker_temperature,
        )
    finder: EmailFinder | None = None
    if config.hunter_api_key:
        finder = HunterClient(
            config.hunter_api_key,
            base_url=config.hunter_base_url,
            timeout=config.hunter_timeout_seconds,
        )
    mailer: Mailer
    if config.sendgrid_api_key:
        mailer = SendGridMailer(
            config.sendgrid_api_key,
            from_email=config.sendgrid_from_email,
            from_name=config.sendgrid_from_name,
            template_id=config.sendgrid_template_id,
            base_url=config.sendgrid_base_url,
        )
    else:
        mailer = DryRunMailer()
    logger.info(
        "capabilities.built",
        extra={
            "ranker": ranker is not None,
            "email_finder": finder is not None,
            "mailer": type(mailer).__name__,
        },
    )
    return DispatchCapabilities(ranker=ranker, email_finder=finder, mailer=mailer)


def build_datastore(config: Settings) -> Datastore:
    if config.database_url:
        if config.database_url == settings.database_url:
            factory = get_session_factory()
            if factory is not None:
                return SqlDatastore(factory, engine=get_engine())
        return SqlDatastore.from_url(config.database_url, echo=config.debug, pool_pre_ping=True)
    logger.warning("No DATABASE_URL provided, using in-memory datastore")
    return InMemoryDatastore()


def build_orchestrator(
    config: Settings,
    *,
    datastore: Datastore | None = None,
    capabilities: DispatchCapabilities | None = None,
) -> DispatchOrchestrator:
    caps = capabilities or build_capabilities(config)
    store = datastore or build_datastore(config)
    ranker_executor = BackoffExecutor(BackoffPolicy.from_settings(config, max_retries=config.ranker_max_retries))
    selector = LeadSelector(
        ranker=caps.ranker,
        executor=ranker_executor,
        ai_min_pool=config.pipeline_ai_min_pool,
        ai_context_limit=config.pipeline_ai_context_limit,
    )
    pipeline = LeadSourcingPipeline(
        store,
        selector=selector,
        finder=caps.email_finder,
        executor=BackoffExecutor(BackoffPolicy.from_settings(config)),
        config=PipelineConfig.from_settings(config),
    )
    return DispatchOrchestrator(
        store,
        mailer=caps.mailer,
        pipeline=pipeline,
        config=DispatchConfig.from_settings(config),
    )


_ORCHESTRATOR_INSTANCE: DispatchOrchestrator | None = None


def get_dispatch_orchestrator() -> DispatchOrchestrator:
    """Singleton accessor used by API routes."""
    global _ORCHESTRATOR_INSTANCE  # noqa: PLW0603
    if _ORCHESTRATOR_INSTANCE is None:
        _ORCHESTRATOR_INSTANCE = build_orchestrator(settings)
    return _ORCHESTRATOR_INSTANCE


def get_lead_pipeline() -> LeadSourcingPipeline:
    pipeline = get_dispatch_orchestrator().pipeline
    if pipeline is None:  # pragma: no cover - build_orchestrator always wires one
        raise RuntimeError("Lead sourcing pipeline is not configured")
    return pipeline
