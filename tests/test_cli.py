import logging
from logging.handlers import RotatingFileHandler

import pytest

from letterboxd_crawl import cli
from letterboxd_crawl.config import CrawlerConfig
from letterboxd_crawl.crawler import CrawlFailure, CrawlSummary
from letterboxd_crawl.database import Database


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("LETTERBOXD_DB", str(db_path))
    # Keep pytest's log capture handlers in place
    monkeypatch.setattr(cli, "setup_logging", lambda config, verbose=False: None)
    return db_path


def test_init_db_command_creates_schema(cli_env):
    cli.main(["init-db"])

    db = Database(cli_env)
    try:
        assert db.table_counts()["movies"] == 0
    finally:
        db.close()


def test_stats_command_lists_tables(cli_env, caplog):
    with caplog.at_level(logging.INFO):
        cli.main(["stats"])

    messages = "\n".join(rec.message for rec in caplog.records)
    assert "users_and_movies" in messages
    assert "releases" in messages


def test_session_history_empty(cli_env, caplog):
    with caplog.at_level(logging.INFO):
        cli.main(["session-history"])
    assert any("No crawl sessions" in rec.message for rec in caplog.records)


def test_session_history_lists_sessions(cli_env, caplog):
    db = Database(cli_env)
    db.init_schema()
    session_id = db.create_crawl_session()
    db.update_session_progress(session_id, users_crawled=2, movies_added=5, failures=0)
    db.complete_crawl_session(session_id)
    db.close()

    with caplog.at_level(logging.INFO):
        cli.main(["session-history", "--limit", "3"])

    line = next(rec.message for rec in caplog.records if f"[{session_id}]" in rec.message)
    assert "completed" in line
    assert "5 movies" in line


def test_crawl_command_applies_overrides(cli_env, monkeypatch, caplog):
    seen = {}

    async def fake_crawl(config, db):
        seen["config"] = config
        return CrawlSummary(users=1, movies=2, activities=3, failures=[
            CrawlFailure(unit="https://letterboxd.com/bob/", error="HTTP 404"),
        ])

    monkeypatch.setattr(cli, "_crawl", fake_crawl)

    with caplog.at_level(logging.INFO):
        cli.main(["crawl", "--max-pages", "2", "--no-headless", "--fail-fast"])

    config = seen["config"]
    assert config.max_pages == 2
    assert config.headless is False
    assert config.fail_fast is True
    assert config.db_path == cli_env
    assert any("https://letterboxd.com/bob/: HTTP 404" in rec.message for rec in caplog.records)


def test_crawl_command_keeps_env_headless_by_default(cli_env, monkeypatch):
    monkeypatch.setenv("LETTERBOXD_HEADLESS", "false")
    seen = {}

    async def fake_crawl(config, db):
        seen["config"] = config
        return CrawlSummary()

    monkeypatch.setattr(cli, "_crawl", fake_crawl)
    cli.main(["crawl"])

    assert seen["config"].headless is False


def test_silent_logging_uses_rotating_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    config = CrawlerConfig(silent=True, log_file=tmp_path / "logs" / "crawl.log")

    try:
        cli.setup_logging(config)
        handlers = root.handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], RotatingFileHandler)
        assert handlers[0].backupCount == 3
        assert root.level == logging.INFO
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers = saved_handlers
        root.setLevel(saved_level)


def test_verbose_flag_enables_debug(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level

    try:
        cli.setup_logging(CrawlerConfig(), verbose=True)
        assert root.level == logging.DEBUG
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)
