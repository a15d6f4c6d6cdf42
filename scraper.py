import argparse
import asyncio
import csv
import os
import signal
import sqlite3
import sys
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from dotenv import load_dotenv
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table
from playwright.async_api import Error as PWError, Page, async_playwright

from db import Failed, ReportDB
from models import (
    Availability,
    CheckOutcome,
    CheckStatus,
    ClassificationResult,
    IngestionRecord,
    ProgressEvent,
    RunSummary,
)
from progress import COMPLETE_EVENT, ERROR_EVENT, PROGRESS_EVENT, ProgressChannel, Subscription


console = Console()

#
# High-level overview
# - Configuration: runtime knobs via environment variables (`Config`)
# - Classifier: decide blocked vs. live listing and read a short title
# - Checker: navigate to one ASIN and fold every failure into an outcome
# - Orchestrator: `run_check` owns the browser session, pacing, persistence
#   and progress publishing for one pass over the catalog
# - Entrypoint: `main` wires config, the database and the CLI subcommands


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").strip().lower() in ("1", "true", "yes")


@dataclass
class Config:
    marketplace_base: str = field(default_factory=lambda: os.getenv("MARKETPLACE_BASE", "https://www.amazon.ca"))
    user_data_dir: str = field(default_factory=lambda: os.getenv("USER_DATA_DIR", "amazon_session"))
    headless: bool = field(default_factory=lambda: _env_bool("HEADLESS", True))
    user_agent: str = field(default_factory=lambda: os.getenv("USER_AGENT", ""))
    nav_timeout_ms: int = field(default_factory=lambda: _env_int("NAV_TIMEOUT_MS", 45000))
    title_wait_ms: int = field(default_factory=lambda: _env_int("TITLE_WAIT_MS", 5000))
    delay_ms: int = field(default_factory=lambda: _env_int("REQUEST_DELAY_MS", 3000))
    # Pause after the final ASIN as well; set false to finish a run sooner.
    pause_after_last: bool = field(default_factory=lambda: _env_bool("PAUSE_AFTER_LAST", True))
    output_db: str = field(default_factory=lambda: os.getenv("OUTPUT_DB", "amazon_tracker.sqlite"))


BLOCKED_MARKER_SELECTOR = 'img#dog-image, img[alt="Dogs of Amazon"]'
NOT_FOUND_TITLE_PHRASE = "Page Not Found"
PRODUCT_TITLE_SELECTOR = "span#productTitle"
UNKNOWN_HEADER = "Unknown"
ERROR_HEADER = "Error"
HEADER_WORDS = 4


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def header_fragment(text: str, words: int = HEADER_WORDS) -> str:
    """First `words` whitespace-separated tokens of a title, single-spaced."""
    return " ".join(text.strip().split()[:words])


async def classify_page(page: Page, title_wait_ms: int = 5000) -> ClassificationResult:
    """Inspect a loaded listing page without interacting with it.

    A page counts as blocked when either the "Dogs of Amazon" image is shown
    or the document title says the page was not found. Otherwise the product
    title is read with a short bounded wait, falling back to "Unknown".
    """
    page_title = await page.title()
    marker_visible = await page.locator(BLOCKED_MARKER_SELECTOR).first.is_visible()
    if marker_visible or NOT_FOUND_TITLE_PHRASE in page_title:
        return ClassificationResult(
            is_blocked_page=True,
            title_fragment=Availability.NOT_AVAILABLE.value,
            page_title=page_title,
        )

    title_loc = page.locator(PRODUCT_TITLE_SELECTOR).first
    try:
        await title_loc.wait_for(state="attached", timeout=title_wait_ms)
        raw_title = await title_loc.inner_text(timeout=title_wait_ms)
    except PWError:
        raw_title = UNKNOWN_HEADER
    return ClassificationResult(
        is_blocked_page=False,
        title_fragment=header_fragment(raw_title),
        page_title=page_title,
    )


def build_listing_url(marketplace_base: str, asin: str) -> str:
    return f"{marketplace_base.rstrip('/')}/dp/{asin}?th=1&psc=1"


async def check_asin(page: Page, asin: str, cfg: Config) -> CheckOutcome:
    """Load one listing and classify it. Failures never escape: navigation
    timeouts and any other automation error become a TIMEOUT outcome."""
    url = build_listing_url(cfg.marketplace_base, asin)
    try:
        await page.goto(url, wait_until="domcontentloaded", timeout=cfg.nav_timeout_ms)
        result = await classify_page(page, cfg.title_wait_ms)
    except Exception as e:
        console.log(f"check_asin: {asin} failed: {e}")
        return CheckOutcome(
            asin=asin,
            header=ERROR_HEADER,
            availability=None,
            is_blocked_page=False,
            status=CheckStatus.TIMEOUT,
        )

    if result.is_blocked_page:
        return CheckOutcome(
            asin=asin,
            header=Availability.NOT_AVAILABLE.value,
            availability=Availability.NOT_AVAILABLE,
            is_blocked_page=True,
            status=CheckStatus.NOT_FOUND,
        )
    return CheckOutcome(
        asin=asin,
        header=result.title_fragment,
        availability=Availability.IN_STOCK,
        is_blocked_page=False,
        status=CheckStatus.SUCCESS,
    )


@asynccontextmanager
async def open_browser_session(cfg: Config) -> AsyncIterator[Page]:
    """Launch Chromium on the persistent profile and yield its first tab.
    The context is closed on every exit path."""
    async with async_playwright() as p:
        context_args: Dict[str, Any] = {
            "headless": cfg.headless,
            "viewport": {"width": 1280, "height": 800},
        }
        if cfg.user_agent:
            context_args["user_agent"] = cfg.user_agent
        context = await p.chromium.launch_persistent_context(cfg.user_data_dir, **context_args)
        try:
            page = context.pages[0] if context.pages else await context.new_page()
            yield page
        finally:
            await context.close()


def progress_payload(current: int, total: int, outcome: CheckOutcome) -> Dict[str, Any]:
    if outcome.status is CheckStatus.TIMEOUT:
        event = ProgressEvent(current=current, total=total, asin=outcome.asin, status="error")
    else:
        event = ProgressEvent(
            current=current,
            total=total,
            asin=outcome.asin,
            status="complete",
            available=outcome.availability is Availability.IN_STOCK,
            title=outcome.header,
        )
    return event.model_dump(exclude_none=True)


def summary_payload(summary: RunSummary) -> Dict[str, Any]:
    return summary.model_dump(include={"total", "available", "unavailable", "errors"})


SessionFactory = Callable[[Config], Any]


async def run_check(
    asins: Sequence[str],
    cfg: Config,
    db: ReportDB,
    channel: ProgressChannel,
    *,
    run_id: Optional[str] = None,
    cancel: Optional[asyncio.Event] = None,
    session_factory: Optional[SessionFactory] = None,
    check_date: Optional[str] = None,
) -> RunSummary:
    """Check every ASIN once, in order, with a fixed pause between items.

    Each outcome is persisted (best effort) and published as one
    `scraper:progress` event. A finished run publishes `scraper:complete`;
    a cancelled or crashed run publishes `scraper:error`.
    """
    total = len(asins)
    summary = RunSummary(total=total)
    if total == 0:
        console.log("No ASINs in catalog; nothing to check")
        channel.publish(COMPLETE_EVENT, summary_payload(summary))
        return summary

    factory = session_factory or open_browser_session
    day = check_date or date.today().isoformat()
    console.log(f"Starting availability check for {total} ASINs")

    try:
        async with factory(cfg) as page:
            for current, asin in enumerate(asins, start=1):
                if cancel is not None and cancel.is_set():
                    console.log(f"Cancelled before {asin} ({current - 1}/{total} checked)")
                    summary.cancelled = True
                    break

                outcome = await check_asin(page, asin, cfg)

                saved = db.insert_report(outcome, day, run_id=run_id)
                if isinstance(saved, Failed):
                    console.log(f"DB insert failed for {asin}: {saved.reason}")

                summary.add(outcome)
                channel.publish(PROGRESS_EVENT, progress_payload(current, total, outcome))
                console.log(f"[{current}/{total}] {asin} | {outcome.status.value} | {outcome.header}")

                # Politeness
                if current < total or cfg.pause_after_last:
                    await asyncio.sleep(cfg.delay_ms / 1000.0)
    except BaseException:
        # includes task cancellation; observers still need a terminal event
        channel.publish(ERROR_EVENT, {})
        raise

    if summary.cancelled:
        channel.publish(ERROR_EVENT, {})
    else:
        channel.publish(COMPLETE_EVENT, summary_payload(summary))
    console.log(
        f"Run finished: {summary.available} available, {summary.unavailable} unavailable, "
        f"{summary.errors} errors"
    )
    return summary


async def render_progress(sub: Subscription) -> None:
    """Draw a live progress bar from channel messages until a terminal one."""
    with Progress(
        TextColumn("{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        transient=True,
    ) as bar:
        task = bar.add_task("Checking ASINs", total=None)
        while True:
            message = await sub.get()
            if message.is_terminal:
                break
            data = message.data
            bar.update(
                task,
                total=data["total"],
                completed=data["current"],
                description=f"{data['asin']} {data['status']}",
            )


def load_asin_file(path: Path) -> List[str]:
    """Read ASINs from the first column of a CSV or plain-text file.

    The first row is always a header and is skipped, whatever it holds.
    Values of five characters or fewer are ignored.
    """
    asins: List[str] = []
    with path.open("r", newline="", encoding="utf-8-sig") as f:
        reader = csv.reader(f)
        next(reader, None)
        for row in reader:
            if not row:
                continue
            value = row[0].strip()
            if len(value) <= 5:
                continue
            asins.append(value)
    return asins


def print_summary(summary: RunSummary) -> None:
    table = Table(title="Run summary")
    for col in ("total", "available", "unavailable", "errors"):
        table.add_column(col, justify="right")
    table.add_row(
        str(summary.total),
        str(summary.available),
        str(summary.unavailable),
        str(summary.errors),
    )
    console.print(table)


def print_reports(title: str, records: List[IngestionRecord]) -> None:
    table = Table(title=title)
    table.add_column("date")
    table.add_column("asin")
    table.add_column("header")
    table.add_column("availability")
    table.add_column("doggy")
    for r in records:
        table.add_row(
            r.check_date,
            r.asin,
            r.header or "",
            r.availability or "",
            "yes" if r.is_doggy else "",
        )
    console.print(table)


def _install_interrupt(cancel: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def on_interrupt() -> None:
        console.log("Interrupt received; stopping after the current ASIN")
        cancel.set()
        # a second Ctrl-C falls back to the default handler
        loop.remove_signal_handler(signal.SIGINT)

    with suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, on_interrupt)


async def run_command(cfg: Config) -> int:
    db = ReportDB(cfg.output_db)
    try:
        db.open()
    except sqlite3.Error as e:
        console.log(f"Database connection failed: {e}")
        return 1

    try:
        asins = db.list_asins()
        run_id = db.begin_run(now_iso())
        channel = ProgressChannel()
        sub = channel.subscribe()
        renderer = asyncio.create_task(render_progress(sub))
        cancel = asyncio.Event()
        _install_interrupt(cancel)
        summary: Optional[RunSummary] = None
        try:
            summary = await run_check(asins, cfg, db, channel, run_id=run_id, cancel=cancel)
        finally:
            channel.unsubscribe(sub)
            await asyncio.wait({renderer}, timeout=1.0)
            if not renderer.done():
                renderer.cancel()
            with suppress(asyncio.CancelledError):
                await renderer
            # a crashed run is closed out with failed=1 and no counters
            db.finish_run(run_id, now_iso(), summary)
    finally:
        db.close()

    print_summary(summary)
    return 0


def import_command(cfg: Config, path: Path) -> int:
    try:
        asins = load_asin_file(path)
    except OSError as e:
        console.log(f"Could not read {path}: {e}")
        return 1
    try:
        with ReportDB(cfg.output_db) as db:
            added, skipped = db.add_asins(asins)
    except sqlite3.Error as e:
        console.log(f"Database error: {e}")
        return 1
    console.log(f"Imported {len(asins)} ASINs: {added} added, {skipped} already present")
    return 0


def report_command(cfg: Config, day: Optional[str], asin: Optional[str]) -> int:
    try:
        with ReportDB(cfg.output_db) as db:
            if asin:
                records = db.history(asin)
                title = f"History for {asin}"
            else:
                day = day or date.today().isoformat()
                records = db.latest_reports(day)
                title = f"Availability on {day}"
    except sqlite3.Error as e:
        console.log(f"Database error: {e}")
        return 1
    print_reports(title, records)
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="asin-tracker",
        description="Check marketplace listings for availability with a persistent browser profile",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="check every ASIN in the catalog once (default)")

    imp = sub.add_parser("import", help="add ASINs from a CSV or text file to the catalog")
    imp.add_argument("path", type=Path)

    rep = sub.add_parser("report", help="show the latest result per ASIN for a day")
    rep.add_argument("--date", dest="day", default=None, help="YYYY-MM-DD, defaults to today")

    hist = sub.add_parser("history", help="show every recorded result for one ASIN")
    hist.add_argument("asin")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
    return args


def load_env() -> None:
    # Load from .env if present
    load_dotenv()


async def main(argv: Optional[List[str]] = None) -> int:
    """Entrypoint: load configuration and dispatch the chosen subcommand."""
    load_env()
    args = parse_args(argv)
    cfg = Config()

    if args.command == "import":
        return import_command(cfg, args.path)
    if args.command == "report":
        return report_command(cfg, args.day, None)
    if args.command == "history":
        return report_command(cfg, None, args.asin)
    return await run_command(cfg)


def cli() -> None:
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        console.log("Interrupted by user")
        code = 130
    except Exception as e:
        console.log(f"Fatal error: {e}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    cli()
