"""
Command line and configuration tests
"""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from db import ReportDB
from models import Availability, CheckOutcome, CheckStatus
from scraper import Config, load_asin_file, main, parse_args, run_command


class TestConfig:

    def test_defaults(self, monkeypatch):
        for name in ("MARKETPLACE_BASE", "NAV_TIMEOUT_MS", "REQUEST_DELAY_MS", "PAUSE_AFTER_LAST", "HEADLESS"):
            monkeypatch.delenv(name, raising=False)
        cfg = Config()
        assert cfg.marketplace_base == "https://www.amazon.ca"
        assert cfg.nav_timeout_ms == 45000
        assert cfg.title_wait_ms == 5000
        assert cfg.delay_ms == 3000
        assert cfg.pause_after_last is True
        assert cfg.headless is True

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("MARKETPLACE_BASE", "https://www.amazon.com")
        monkeypatch.setenv("REQUEST_DELAY_MS", "8000")
        monkeypatch.setenv("PAUSE_AFTER_LAST", "false")
        monkeypatch.setenv("HEADLESS", "0")
        cfg = Config()
        assert cfg.marketplace_base == "https://www.amazon.com"
        assert cfg.delay_ms == 8000
        assert cfg.pause_after_last is False
        assert cfg.headless is False


class TestParseArgs:

    def test_default_command_is_run(self):
        assert parse_args([]).command == "run"

    def test_import(self):
        args = parse_args(["import", "asins.csv"])
        assert args.command == "import"
        assert args.path == Path("asins.csv")

    def test_report_and_history(self):
        assert parse_args(["report", "--date", "2026-10-19"]).day == "2026-10-19"
        assert parse_args(["history", "B000000001"]).asin == "B000000001"


class TestLoadAsinFile:

    def test_first_column_with_header(self, tmp_path):
        path = tmp_path / "asins.csv"
        path.write_text("ASIN,comment\nB000000001,lamp\n  B000000002 ,\n\nX1,short\n", encoding="utf-8")
        assert load_asin_file(path) == ["B000000001", "B000000002"]

    def test_plain_text_list(self, tmp_path):
        path = tmp_path / "asins.txt"
        path.write_text("asins\nB000000001\nB000000002\n", encoding="utf-8")
        assert load_asin_file(path) == ["B000000001", "B000000002"]

    def test_first_row_skipped_whatever_it_holds(self, tmp_path):
        path = tmp_path / "asins.csv"
        path.write_text("product_asin,notes\nB000000001,lamp\n", encoding="utf-8")
        assert load_asin_file(path) == ["B000000001"]

    def test_header_only_file(self, tmp_path):
        path = tmp_path / "asins.csv"
        path.write_text("product_asin\n", encoding="utf-8")
        assert load_asin_file(path) == []


class TestCommands:

    @pytest.fixture
    def db_path(self, tmp_path, monkeypatch):
        path = tmp_path / "tracker.sqlite"
        monkeypatch.setenv("OUTPUT_DB", str(path))
        return path

    def test_import_then_report(self, tmp_path, db_path):
        csv_path = tmp_path / "asins.csv"
        csv_path.write_text("asin\nB000000001\nB000000002\nB000000001\n", encoding="utf-8")

        assert asyncio.run(main(["import", str(csv_path)])) == 0
        with ReportDB(str(db_path)) as db:
            assert db.list_asins() == ["B000000001", "B000000002"]
            db.insert_report(
                CheckOutcome(
                    asin="B000000001",
                    header="Desk Lamp",
                    availability=Availability.IN_STOCK,
                    status=CheckStatus.SUCCESS,
                ),
                "2026-10-19",
            )

        assert asyncio.run(main(["report", "--date", "2026-10-19"])) == 0
        assert asyncio.run(main(["history", "B000000001"])) == 0

    def test_import_missing_file(self, tmp_path, db_path):
        assert asyncio.run(main(["import", str(tmp_path / "nope.csv")])) == 1

    def test_run_fails_fast_without_database(self, tmp_path, cfg):
        cfg.output_db = str(tmp_path / "missing" / "tracker.sqlite")
        assert asyncio.run(run_command(cfg)) == 1

    def test_run_with_empty_catalog(self, cfg):
        assert asyncio.run(run_command(cfg)) == 0
        with ReportDB(cfg.output_db) as db:
            row = db._conn().execute("SELECT * FROM runs").fetchone()
        assert row["total"] == 0
        assert row["finished_at"] is not None
        assert row["failed"] == 0

    def test_crashed_run_is_still_closed_out(self, cfg):
        with ReportDB(cfg.output_db) as db:
            db.add_asins(["B000000001"])

        with patch("scraper.run_check", new=AsyncMock(side_effect=RuntimeError("browser died"))):
            with pytest.raises(RuntimeError):
                asyncio.run(run_command(cfg))

        with ReportDB(cfg.output_db) as db:
            row = db._conn().execute("SELECT * FROM runs").fetchone()
        assert row["finished_at"] is not None
        assert row["failed"] == 1
        assert row["total"] is None
