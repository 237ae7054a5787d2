#!/usr/bin/env python3
"""CLI entry point for opening URL lists in batches.

Usage:
    python open_batches.py dispatch urls.txt                 # Enter opens the next round
    #   then "n 2" / "p 2" steps through the URLs of batch 2 in its window
    python open_batches.py auto urls.csv --concurrency 3     # rounds until done
    python open_batches.py inline urls.txt --slice-size 20   # page through one window
    python open_batches.py history --search workorders       # list opened URLs
"""

import argparse
import sys
from pathlib import Path

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).parent))

from batching.config import BatchSettings, load_settings
from batching.errors import BatchError, InvalidConfiguration
from batching.history import JsonHistoryLog, filter_history
from batching.ingest import read_input
from batching.navigator import InlineNavigator
from batching.orchestrator import InlineBrowser, dispatch_all
from batching.runner import EventLogger, RunnerConfig, default_ndjson_path, default_run_id
from batching.scheduler import DispatchScheduler
from batching.session import RetryPolicy, ViewerSessionFactory
from batching.worklist import build_work_list, total_slices

INLINE_HELP = (
    "Commands: n=next URL  p=previous URL  N=next batch  P=previous batch  "
    "s <k>=show batch k  r=reload  q=quit"
)
DISPATCH_HELP = (
    "Window commands: n <k>=next URL in batch k  p <k>=previous URL  "
    "g <k> <url>=open URL in batch k  r <k>=reopen batch k"
)


def _add_job_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("input", help="Text file (one URL per line), CSV file, or - for stdin")
    parser.add_argument("--column", help="CSV column holding the URLs")
    parser.add_argument("--config", type=Path, help="YAML settings file")
    parser.add_argument("--slice-size", type=int, help="URLs per batch (default 10)")
    parser.add_argument("--concurrency", type=int, help="Windows opened per round (default 2)")
    parser.add_argument("--item-delay", type=float, help="Seconds between opening windows (default 0.3)")
    parser.add_argument("--round-delay", type=float, help="Seconds between rounds in auto mode (default 5)")
    parser.add_argument("--retry-attempts", type=int, help="Attempts per load on transient errors")
    parser.add_argument("--retry-delay", type=float, help="Seconds between load attempts")
    parser.add_argument("--timeout-ms", type=int, help="Navigation timeout per load")
    parser.add_argument("--history-path", type=Path, help="JSON file recording opened URLs")
    parser.add_argument(
        "--headless",
        action="store_true",
        default=None,
        help="Run Chromium without visible windows",
    )
    parser.add_argument("--quiet", action="store_true", help="Reduce console verbosity.")
    parser.add_argument("--live-events", action="store_true", help="Echo NDJSON events to stdout.")
    parser.add_argument("--log-ndjson", type=Path, help="Path to structured NDJSON run log.")


def _settings_from_args(args) -> BatchSettings:
    return load_settings(
        args.config,
        slice_size=args.slice_size,
        concurrency=args.concurrency,
        item_delay=args.item_delay,
        round_delay=args.round_delay,
        retry_attempts=args.retry_attempts,
        retry_delay=args.retry_delay,
        timeout_ms=args.timeout_ms,
        history_path=args.history_path,
        headless=args.headless,
    )


def _make_logger(args, prefix: str) -> EventLogger:
    run_id = default_run_id(prefix)
    cfg = RunnerConfig(
        run_id=run_id,
        verbose=not args.quiet,
        live_events=args.live_events,
        ndjson_path=args.log_ndjson or default_ndjson_path(run_id),
    )
    return EventLogger(cfg)


def _make_viewer_factory(settings: BatchSettings):
    # Imported lazily so `history` works without a browser install.
    from viewers.base_pw import PlaywrightViewerFactory

    return PlaywrightViewerFactory(headless=settings.headless, timeout_ms=settings.timeout_ms)


def _print_round(summary) -> None:
    print(summary.status_line())
    for n, result in sorted(summary.load_results.items()):
        if not result.ok:
            print(f"  batch {n + 1}: {result.status} {result.reason} {result.url}")


def _window_command(scheduler: DispatchScheduler, command: str) -> None:
    parts = command.split()
    try:
        slice_number = int(parts[1]) - 1
    except (IndexError, ValueError):
        print(DISPATCH_HELP)
        return

    result = None
    try:
        if parts[0] == "n":
            result = scheduler.next_item(slice_number)
        elif parts[0] == "p":
            result = scheduler.previous_item(slice_number)
        elif parts[0] == "g" and len(parts) == 3:
            result = scheduler.navigate(slice_number, parts[2])
        elif parts[0] == "r":
            scheduler.reopen(slice_number)
        else:
            print(DISPATCH_HELP)
            return
    except (KeyError, ValueError, BatchError) as exc:
        print(f"Error: {exc}")
        return

    line = f"  batch {slice_number + 1}: {scheduler.position_label(slice_number)}"
    if result is not None:
        line += f" | {result.status} {result.url}"
        if not result.ok:
            line += f" ({result.reason})"
    print(line)


def _run_dispatch(args, settings, work_list, logger, auto: bool) -> int:
    history = JsonHistoryLog(settings.history_path)
    viewers = _make_viewer_factory(settings)
    scheduler = DispatchScheduler(
        work_list,
        settings.slice_size,
        ViewerSessionFactory(viewers),
        history=history,
        logger=logger,
        retry_policy=RetryPolicy(settings.retry_attempts, settings.retry_delay),
        item_delay=settings.item_delay,
    )
    print(
        f"Will open {len(work_list)} URLs in {scheduler.total_slices} "
        f"batch{'es' if scheduler.total_slices != 1 else ''} "
        f"({settings.concurrency} window(s) per round)"
    )
    print(DISPATCH_HELP)
    try:
        if auto:
            summaries = dispatch_all(scheduler, settings.concurrency, settings.round_delay)
            print(summaries[-1].status_line())
        else:
            _print_round(scheduler.dispatch_next(settings.concurrency))
        while True:
            if scheduler.exhausted:
                prompt = "All batches dispatched. Window command, or Enter to quit: "
            else:
                prompt = "Enter=next round, window command, q=quit: "
            command = input(prompt).strip()
            if command == "q" or (not command and scheduler.exhausted):
                break
            if not command:
                _print_round(scheduler.dispatch_next(settings.concurrency))
            else:
                _window_command(scheduler, command)
    except (KeyboardInterrupt, EOFError):
        print()
    finally:
        scheduler.close_all()
        viewers.close()
    progress = scheduler.progress()
    print(f"Dispatched {len(progress['dispatched'])}/{progress['total_slices']} batches")
    return 0 if scheduler.exhausted else 1


def _run_inline(args, settings, work_list, logger) -> int:
    history = JsonHistoryLog(settings.history_path)
    viewers = _make_viewer_factory(settings)
    navigator = InlineNavigator(
        ViewerSessionFactory(viewers),
        history=history,
        logger=logger,
        retry_policy=RetryPolicy(settings.retry_attempts, settings.retry_delay),
    )
    browser = InlineBrowser(work_list, settings.slice_size, navigator)
    print(INLINE_HELP)
    try:
        browser.select(0)
        while True:
            print(f"{browser.label} | {navigator.status}")
            command = input("> ").strip()
            if command == "q":
                break
            elif command == "n":
                navigator.next()
            elif command == "p":
                navigator.previous()
            elif command == "N":
                browser.next_slice()
            elif command == "P":
                browser.previous_slice()
            elif command == "r":
                navigator.reload()
            elif command.startswith("s"):
                try:
                    browser.select(int(command[1:].strip()) - 1)
                except ValueError:
                    print(INLINE_HELP)
            else:
                print(INLINE_HELP)
    except (KeyboardInterrupt, EOFError):
        print()
    finally:
        navigator.close()
        viewers.close()
    return 0


def _run_history(args) -> int:
    path = args.history_path or load_settings(args.config).history_path
    entries = filter_history(JsonHistoryLog(path).read_all(), search=args.search, order=args.order)
    if not entries:
        print("No URL history found.")
        return 0
    for entry in entries[: args.limit] if args.limit else entries:
        print(f"{entry.get('timestamp', '')}  {entry.get('batch_id', '') or '-':<16}  {entry.get('url', '')}")
    print(f"\n{len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Open large URL lists in batches of browser windows")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("dispatch", "Open batches in new windows, one round per Enter"),
        ("auto", "Open batches round after round until the list is done"),
        ("inline", "Page through batches one URL at a time in a single window"),
    ):
        _add_job_args(sub.add_parser(name, help=help_text))

    hist = sub.add_parser("history", help="List previously opened URLs")
    hist.add_argument("--search", default="", help="Filter by URL text or batch id")
    hist.add_argument("--order", choices=["newest", "oldest"], default="newest")
    hist.add_argument("--limit", type=int, help="Show at most N entries")
    hist.add_argument("--config", type=Path, help="YAML settings file")
    hist.add_argument("--history-path", type=Path, help="JSON history file")

    args = parser.parse_args()

    if args.command == "history":
        return _run_history(args)

    try:
        settings = _settings_from_args(args)
    except InvalidConfiguration as exc:
        print(f"Error: {exc}")
        return 2

    work_list = build_work_list(read_input(args.input, column=args.column))
    if not len(work_list):
        print("No valid URLs found. URLs must start with http:// or https://")
        return 1
    print(
        f"Loaded {len(work_list)} URLs "
        f"({total_slices(work_list, settings.slice_size)} batches of up to {settings.slice_size})"
    )

    logger = _make_logger(args, args.command)
    try:
        if args.command == "inline":
            return _run_inline(args, settings, work_list, logger)
        return _run_dispatch(args, settings, work_list, logger, auto=args.command == "auto")
    except BatchError as exc:
        print(f"Error: {exc}")
        return 1
    finally:
        print(f"\n  Run log: {logger.cfg.ndjson_path}")
        logger.close()


if __name__ == "__main__":
    raise SystemExit(main())
