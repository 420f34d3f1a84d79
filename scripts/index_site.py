#!/usr/bin/env python
"""Crawl and index a website into a pipeline.

Usage:
    python scripts/index_site.py https://docs.example.com/
    python scripts/index_site.py https://docs.example.com/ --pipeline <id>
    python scripts/index_site.py https://docs.example.com/ --max-pages 50 --chunk-size 800
"""
import argparse
import asyncio
import re
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from sitechat import config, db
from sitechat.errors import SiteChatError
from sitechat.models import IndexingJob, JobStatus
from sitechat.services import build_services

logger = structlog.get_logger()

POLL_INTERVAL_SECONDS = 0.5
COUNTS_PATTERN = re.compile(r"(\d+)/(\d+)")


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None
        self._last_line = None

    def start(self, message: str):
        """Start progress reporting."""
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, label: str):
        """Update progress."""
        current = min(current, total)
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        line = f"  [{bar}] {percentage:5.1f}% {label[:40]:<40}"
        if line == self._last_line:
            return
        self._last_line = line

        print(f"\r{line}", end="", flush=True)

        if self.verbose:
            print()  # New line for verbose mode

    def finish(self, job: IndexingJob):
        """Finish progress reporting."""
        print("\n")  # New line after progress bar
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        title = "Indexing Complete!" if job.status is JobStatus.COMPLETE else "Indexing Failed"
        print(f"{'=' * 60}")
        print(f"  {title}")
        print(f"{'=' * 60}\n")
        print(f"  🌐 Pages indexed:        {job.pages_indexed}")
        print(f"  📝 Chunks created:       {job.chunks_created}")
        print(f"  ⏱️  Time elapsed:         {elapsed_seconds:.1f}s")

        if job.status is JobStatus.COMPLETE and job.chunks_created > 0 and elapsed_seconds > 0:
            rate = job.chunks_created / elapsed_seconds
            print(f"  ⚡ Indexing rate:        {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        if job.status is JobStatus.ERROR:
            print(f"❌ {job.progress}")
            if job.message and job.message != job.progress:
                print(f"   {job.message}\n")
        else:
            print(f"✅ {job.progress}")
            print(f"✅ Database at: {config.DB_PATH}\n")


async def watch(job: IndexingJob, max_pages: int, progress: ProgressReporter) -> None:
    """Render job progress until it finishes."""
    while job.is_active:
        # "Crawled 3/20 pages", "Embedded 6/30 chunks"
        counts = COUNTS_PATTERN.search(job.progress)
        if counts:
            progress.update(int(counts.group(1)), int(counts.group(2)), job.progress)
        else:
            progress.update(job.pages_indexed, max_pages, job.progress)
        await asyncio.sleep(POLL_INTERVAL_SECONDS)


async def main():
    """Main entry point for the indexing script."""
    parser = argparse.ArgumentParser(
        description="Crawl a website and index it for question answering",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/index_site.py https://docs.example.com/
  python scripts/index_site.py https://docs.example.com/ --pipeline 3f2a...
  python scripts/index_site.py https://docs.example.com/ --max-pages 50
        """,
    )

    parser.add_argument("url", help="Start URL of the crawl")

    parser.add_argument(
        "--pipeline",
        default=None,
        help="Pipeline ID to index into (a new pipeline is created if omitted)",
    )

    parser.add_argument(
        "--max-pages",
        type=int,
        default=None,
        help=f"Maximum pages to crawl (default: pipeline setting or {config.DEFAULT_MAX_PAGES})",
    )

    parser.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        help=f"Chunk size in characters (default: pipeline setting or {config.DEFAULT_CHUNK_SIZE})",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose progress output",
    )

    args = parser.parse_args()

    progress = ProgressReporter(verbose=args.verbose)

    try:
        services = build_services()

        pipeline_id = args.pipeline
        if pipeline_id is None:
            pipeline_id = db.create_pipeline(db_path=services.db_path)["id"]

        max_pages, chunk_size, chunk_overlap = services.indexing.resolve_settings(
            pipeline_id, args.max_pages, args.chunk_size
        )

        # Display configuration
        print("\n📋 Configuration:")
        print(f"   Pipeline:         {pipeline_id}")
        print(f"   Start URL:        {args.url}")
        print(f"   Max pages:        {max_pages}")
        print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
        print(f"   Chunk size:       {chunk_size} chars")
        print(f"   Chunk overlap:    {chunk_overlap} chars")

        progress.start(f"Indexing {args.url}")

        job = await services.indexing.start_indexing(
            pipeline_id,
            args.url,
            max_pages=max_pages,
            chunk_size=chunk_size,
        )
        await watch(job, max_pages, progress)
        await services.indexing.wait_for_jobs()

        progress.finish(job)

        if job.status is not JobStatus.COMPLETE:
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\n⚠️  Indexing cancelled by user.\n")
        sys.exit(1)

    except SiteChatError as e:
        print(f"\n❌ Error: {e.message}\n")
        sys.exit(1)

    except Exception as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("index_site_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
