"""
Tests for configuration loading, formatting helpers and the CLI.
"""

import argparse
import json
from datetime import timedelta

import pytest

from adapters.base import Page
from ingestion import cli
from ingestion.errors import ConfigurationError
from utils.config import Config
from utils.formatting import format_age, format_currency, format_percent

from tests.conftest import FIXED_NOW, raw_item


class TestConfig:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("CRAWL_WORKERS", "4")
        monkeypatch.setenv("ENABLE_PERIODIC_CRAWLS", "yes")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("CRON_SECRET", "s3cret")

        config = Config.load()

        assert config.crawl_workers == 4
        assert config.enable_periodic_crawls is True
        assert config.log_level == "DEBUG"
        assert config.cron_secret == "s3cret"

    def test_empty_cron_secret_disables_auth(self, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "")

        assert Config.load().cron_secret is None

    def test_job_limits_default_below_direct_limits(self, monkeypatch):
        for name in ("JOB_MAX_PAGES", "JOB_MAX_LISTINGS", "CRAWL_MAX_PAGES", "CRAWL_MAX_LISTINGS"):
            monkeypatch.delenv(name, raising=False)

        config = Config.load()

        assert config.job_max_pages == 3
        assert config.job_max_listings == 200
        assert config.crawl_max_pages > config.job_max_pages

    @pytest.mark.parametrize("store_path,expected", [
        (None, "data/ingestion.json"),
        ("", None),
        ("/tmp/listings.json", "/tmp/listings.json"),
    ])
    def test_resolved_store_path(self, store_path, expected):
        config = Config(data_dir="data", store_path=store_path)

        assert config.resolved_store_path == expected

    def test_to_dict_redacts_secret(self):
        config = Config(cron_secret="s3cret")

        assert config.to_dict()["cron_secret"] == "***"
        assert "s3cret" not in json.dumps(config.to_dict())


class TestFormatting:
    def test_currency(self):
        assert format_currency(3250) == "$3,250"
        assert format_currency(3250.5) == "$3,250.50"

    def test_percent(self):
        assert format_percent(0.125) == "12.5%"

    def test_age(self):
        assert format_age(None) == "never"
        assert format_age(FIXED_NOW - timedelta(minutes=5), now=FIXED_NOW) == "5m ago"
        assert format_age(FIXED_NOW - timedelta(days=3), now=FIXED_NOW) == "3d ago"


class TestCommands:
    def test_crawl_prints_result(self, context, adapters, capsys):
        adapters.pages("src-a", Page(items=[raw_item(1), raw_item(2)]))
        args = argparse.Namespace(source_id="src-a", max_pages=1, max_listings=None, dry_run=False)

        assert cli.cmd_crawl(args, context) == 0

        output = json.loads(capsys.readouterr().out)
        assert output["listingsFound"] == 2
        assert output["newListings"] == 2

    def test_crawl_unknown_source(self, context, capsys):
        args = argparse.Namespace(source_id="nope", max_pages=None, max_listings=None, dry_run=False)

        assert cli.cmd_crawl(args, context) == 1
        assert "Source not found" in capsys.readouterr().err

    def test_crawl_misconfigured_source(self, context, adapters, capsys):
        adapters.pages("src-a", preflight_error=ConfigurationError("endpoint is required"))
        args = argparse.Namespace(source_id="src-a", max_pages=None, max_listings=None, dry_run=False)

        assert cli.cmd_crawl(args, context) == 2
        assert "misconfigured" in capsys.readouterr().err

    def test_crawl_all_respects_limit(self, context, capsys):
        args = argparse.Namespace(limit=2, dry_run=True)

        cli.cmd_crawl_all(args, context)

        output = json.loads(capsys.readouterr().out)
        assert output["sourcesCrawled"] == 2
        assert [r["sourceId"] for r in output["results"]] == ["src-b", "src-c"]

    def test_sources_table_and_json(self, context, capsys):
        assert cli.cmd_sources(argparse.Namespace(json=False), context) == 0
        table = capsys.readouterr().out
        assert "src-off" in table
        assert "never" in table

        cli.cmd_sources(argparse.Namespace(json=True), context)
        rows = json.loads(capsys.readouterr().out)
        assert [r["sourceId"] for r in rows] == ["src-off", "src-b", "src-c", "src-a"]

    def test_health(self, context, capsys):
        assert cli.cmd_health(argparse.Namespace(source_id="src-a", window=7), context) == 0
        assert json.loads(capsys.readouterr().out)["runs"] == 0

        assert cli.cmd_health(argparse.Namespace(source_id="nope", window=7), context) == 1

    def test_main_dispatches_subcommand(self, context, monkeypatch, capsys):
        monkeypatch.setattr(cli, "build_context", lambda config: context)
        monkeypatch.setenv("LOG_LEVEL", "WARNING")

        assert cli.main(["sources", "--json"]) == 0
        assert len(json.loads(capsys.readouterr().out)) == 4
