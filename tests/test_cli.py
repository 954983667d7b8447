"""arena command-line entry point."""

import pytest
from sqlalchemy import func, select

from arena.__main__ import build_parser, main
from arena.database import Database
from arena.schema import Agent, Cohort, Model
from llm_service.config import get_settings


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'arena.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    monkeypatch.setenv("OPENROUTER_API_KEY", "test-key")
    get_settings.cache_clear()
    yield url
    get_settings.cache_clear()


def count(url, model):
    database = Database(url)
    try:
        with database.session() as session:
            return session.scalar(select(func.count()).select_from(model))
    finally:
        database.dispose()


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
    assert build_parser().parse_args(["start-cohort", "--force"]).force


def test_init_db_then_forced_start(db_url):
    assert main(["init-db"]) == 0
    models = count(db_url, Model)
    assert models > 0

    assert main(["start-cohort", "--force"]) == 0
    assert count(db_url, Cohort) == 1
    assert count(db_url, Agent) == models


def test_settlement_pass_on_empty_store(db_url):
    assert main(["init-db"]) == 0
    assert main(["check-resolutions"]) == 0


def test_abort_exits_with_code_2(db_url):
    # No tables: listing cohorts fails
    assert main(["run-decisions"]) == 2
