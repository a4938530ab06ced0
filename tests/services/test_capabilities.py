import pytest

from app.clients.hunter import HunterClient
from app.config import Settings
from app.services.capabilities import build_capabilities, build_datastore, build_orchestrator
from app.services.datastore import InMemoryDatastore
from app.services.dispatch.mailer import DryRunMailer, SendGridMailer
from app.services.sourcing.openai_ranker import OpenAICandidateRanker


def _settings(**overrides) -> Settings:
    base = {
        "database_url": None,
        "openai_api_key": None,
        "hunter_api_key": None,
        "sendgrid_api_key": None,
    }
    base.update(overrides)
    return Settings(**base)


def test_missing_keys_disable_optional_branches():
    caps = build_capabilities(_settings())

    assert caps.ranker is None
    assert caps.email_finder is None
    assert isinstance(caps.mailer, DryRunMailer)


def test_configured_keys_enable_providers():
    pytest.importorskip("openai")
    caps = build_capabilities(_settings(openai_api_key="sk-test", hunter_api_key="hk", sendgrid_api_key="sg"))

    assert isinstance(caps.ranker, OpenAICandidateRanker)
    assert isinstance(caps.email_finder, HunterClient)
    assert isinstance(caps.mailer, SendGridMailer)


def test_no_database_url_uses_in_memory_store():
    assert isinstance(build_datastore(_settings()), InMemoryDatastore)


def test_orchestrator_always_wires_a_pipeline():
    orchestrator = build_orchestrator(_settings())

    assert orchestrator.pipeline is not None
    assert orchestrator.pipeline.config.verify_limit == 10
