from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from contextlib import suppress
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from collector.checksum import LastModifiedMetadataChecksummer
from collector.config import CrawlerConfig, load_config
from collector.crawler import Crawler, SessionResult
from collector.filters import (
    DomainReferenceFilter,
    ExtensionReferenceFilter,
    MaxSizeDocumentFilter,
    RegexReferenceFilter,
)
from collector.orphans import ORPHANS_DELETE, ORPHANS_IGNORE, ORPHANS_PROCESS
from collector.utils import init_logging
from components.committer import JsonlCommitter
from components.fetchers import FileSystemFetcher, HttpFetcher
from components.importer import HtmlImporter
from extensions.checkpoint import CrawlCheckpoint
from extensions.logging import LoggingExtension
from extensions.output_paths import COMMITTER_FILENAME, ensure_crawler_dirs

EXIT_FINISHED = 0
EXIT_STOPPED = 3
EXIT_USAGE = 2


# ----------------------------
# CLI parsing
# ----------------------------

def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Incremental crawl: filter → fetch → checksum → commit, with a persistent ledger"
    )

    p.add_argument("seeds", nargs="*", help="Start references (URLs, paths or file:// URIs)")
    p.add_argument("--seeds-file", type=Path, default=None, help="File with one start reference per line")

    p.add_argument("--crawler-id", type=str, default=None, help="Logical crawl id (ledger namespace)")
    p.add_argument("--work-dir", type=Path, default=None, help="Work directory (default ./work)")
    p.add_argument("--num-threads", type=int, default=None, help="Concurrent workers")
    p.add_argument("--max-documents", type=int, default=None, help="Stop after this many dequeues (-1 = unlimited)")
    p.add_argument("--max-depth", type=int, default=None, help="Max depth of discovered references (-1 = unlimited)")
    p.add_argument(
        "--orphans",
        type=str.upper,
        default=None,
        choices=[ORPHANS_PROCESS, ORPHANS_DELETE, ORPHANS_IGNORE],
        help="What to do with references not seen in this run",
    )
    p.add_argument("--stop-on", type=str, default=None, help="Comma-separated error kinds that stop the session")
    p.add_argument("--no-resume", dest="resume", action="store_false", default=None, help="Never resume an unfinished session")
    p.add_argument("--no-fast-path", dest="fast_path", action="store_false", default=None,
                   help="Always fetch the document even when metadata did not change")
    p.add_argument("--keep-metadata-checksum", action="store_true", help="Store the metadata checksum in committed metadata")

    # Fetcher
    p.add_argument("--fetcher", choices=["auto", "http", "fs"], default="auto", help="Fetcher to use")
    p.add_argument("--timeout", type=float, default=20.0, help="HTTP timeout in seconds")

    # Filters
    p.add_argument("--include", action="append", default=[], help="Regex a reference must match (repeatable)")
    p.add_argument("--exclude", action="append", default=[], help="Regex a reference must not match (repeatable)")
    p.add_argument("--exclude-ext", type=str, default="", help="Comma-separated extensions to skip")
    p.add_argument("--domains", type=str, default="", help="Comma-separated registrable domains to stay within")
    p.add_argument("--max-bytes", type=int, default=None, help="Reject documents larger than this")

    # Output
    p.add_argument("--committer-file", type=Path, default=None, help="JSONL sink (default <work>/<id>/committer/)")
    p.add_argument("--no-content", action="store_true", help="Do not write document bodies to the sink")
    p.add_argument("--summary", action="store_true", help="Print the session result as JSON")

    # Logging
    p.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console/file log level")
    p.add_argument("--log-file", type=Path, default=None,
                   help="Log to this single file instead of the per-crawler log layout")
    return p.parse_args(argv)


# ----------------------------
# Small helpers
# ----------------------------

def _csv(raw: str) -> List[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


def _load_seeds(args: argparse.Namespace) -> List[str]:
    seeds = [s.strip() for s in args.seeds if s and s.strip()]
    if args.seeds_file is not None:
        for line in args.seeds_file.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                seeds.append(line)
    return seeds


def _is_http(ref: str) -> bool:
    return ref.lower().startswith(("http://", "https://"))


def _build_config(args: argparse.Namespace) -> CrawlerConfig:
    overrides: Dict[str, Any] = {}
    if args.crawler_id is not None:
        overrides["crawler_id"] = args.crawler_id
    if args.work_dir is not None:
        overrides["work_dir"] = args.work_dir
    if args.num_threads is not None:
        overrides["num_threads"] = args.num_threads
    if args.max_documents is not None:
        overrides["max_documents"] = args.max_documents
    if args.max_depth is not None:
        overrides["max_depth"] = args.max_depth
    if args.orphans is not None:
        overrides["orphans_strategy"] = args.orphans
    if args.stop_on is not None:
        overrides["stop_on"] = tuple(_csv(args.stop_on))
    if args.resume is not None:
        overrides["resume"] = args.resume
    if args.fast_path is not None:
        overrides["metadata_fast_path"] = args.fast_path
    if args.log_level is not None:
        overrides["log_level"] = args.log_level

    reference_filters: List[Any] = [RegexReferenceFilter(p, "INCLUDE") for p in args.include]
    reference_filters += [RegexReferenceFilter(p, "EXCLUDE") for p in args.exclude]
    if _csv(args.exclude_ext):
        reference_filters.append(ExtensionReferenceFilter(_csv(args.exclude_ext), "EXCLUDE"))
    if _csv(args.domains):
        reference_filters.append(DomainReferenceFilter(_csv(args.domains), "INCLUDE"))
    overrides["reference_filters"] = tuple(reference_filters)
    if args.max_bytes is not None:
        overrides["document_filters"] = (MaxSizeDocumentFilter(args.max_bytes),)
    if args.keep_metadata_checksum:
        overrides["metadata_checksummer"] = LastModifiedMetadataChecksummer(keep=True)

    return load_config(**overrides)


def _pick_fetcher(kind: str, seeds: List[str], timeout: float):
    if kind == "auto":
        kind = "http" if seeds and all(_is_http(s) for s in seeds) else "fs"
    if kind == "http":
        return HttpFetcher(timeout_s=timeout)
    return FileSystemFetcher()


def _log_result(log: logging.Logger, result: SessionResult) -> None:
    log.info(
        "Session %d %s%s: processed=%d",
        result.session_id,
        result.state,
        " (resumed)" if result.resumed else "",
        result.processed,
    )
    for status, n in sorted(result.counts_by_status.items()):
        log.info("  %-9s %d", status, n)
    if result.orphans is not None:
        log.info("  orphans: %s", result.orphans.to_dict())
    if result.stop_reason:
        log.warning("  stopped: %s", result.stop_reason)
    if result.failure is not None:
        log.error("  failure: %s", result.failure)


# ----------------------------
# Main
# ----------------------------

async def main_async(args: argparse.Namespace) -> int:
    seeds = _load_seeds(args)
    cfg = _build_config(args)

    level = getattr(logging, cfg.log_level.upper(), logging.INFO)
    log_ext: Optional[LoggingExtension] = None
    log_handlers: List[logging.Handler] = []
    if args.log_file is not None:
        log_handlers = init_logging(args.log_file, level)
        log = logging.getLogger(f"crawler.{cfg.crawler_id}")
    else:
        log_ext = LoggingExtension(cfg.work_dir, global_level=level, per_crawler_level=level)
        log = log_ext.get_crawler_logger(cfg.crawler_id)
        token = log_ext.set_crawler_context(cfg.crawler_id)

    fetcher = _pick_fetcher(args.fetcher, seeds, args.timeout)
    try:
        dirs = ensure_crawler_dirs(cfg.work_dir, cfg.crawler_id)
        committer = JsonlCommitter(
            args.committer_file or dirs["committer"] / COMMITTER_FILENAME,
            include_content=not args.no_content,
        )
        checkpoint = CrawlCheckpoint(cfg.crawler_id, cfg.work_dir)
        checkpoint.load()

        crawler = Crawler(cfg, fetcher, HtmlImporter(), committer)
        crawler.add_listener(checkpoint)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, crawler.stop)

        log.info(
            "Crawler=%s work_dir=%s threads=%d seeds=%d fetcher=%s",
            cfg.crawler_id, cfg.work_dir, cfg.num_threads, len(seeds), type(fetcher).__name__,
        )
        result = await crawler.run(seeds)
        _log_result(log, result)
        if args.summary:
            print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
        return EXIT_FINISHED if result.finished else EXIT_STOPPED
    finally:
        if isinstance(fetcher, HttpFetcher):
            await fetcher.aclose()
        if log_ext is not None:
            log_ext.reset_crawler_context(token)
            log_ext.close()
        root = logging.getLogger()
        for h in log_handlers:
            root.removeHandler(h)
            h.close()


# ----------------------------
# Entrypoint
# ----------------------------

def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    if not args.seeds and args.seeds_file is None:
        print("error: give at least one seed or --seeds-file")
        return EXIT_USAGE
    return asyncio.run(main_async(args))

if __name__ == "__main__":
    raise SystemExit(main())
