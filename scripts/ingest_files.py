#!/usr/bin/env python
"""Upload local files into a tenant's knowledge base.

Usage:
    python scripts/ingest_files.py --tenant acme --knowledge-base kb1 docs/*.md
    python scripts/ingest_files.py --tenant acme --knowledge-base kb1 --chunk-size 500 --overlap 100 notes.txt
    python scripts/ingest_files.py --tenant acme --knowledge-base kb1 --verbose report.docx
"""
import argparse
import asyncio
import mimetypes
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from chatbot_rag import config
from chatbot_rag.main import configure_logging
from chatbot_rag.rag.ingest import UploadedFile, UploadReport
from chatbot_rag.services import build_services
import structlog

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        """Start progress reporting."""
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, file_name: str):
        """Update progress."""
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {file_name[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, report: UploadReport):
        """Print a summary of the upload."""
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()
        chunks = sum(result.chunks_created for result in report.results)
        tokens = sum(result.tokens_used for result in report.results)
        cost = sum(result.cost for result in report.results)

        print(f"{'=' * 60}")
        print(f"  Upload Complete!")
        print(f"{'=' * 60}\n")
        print(f"  📁 Files processed:  {report.total_processed}")
        print(f"  ❌ Files failed:     {report.total_errors}")
        print(f"  📝 Chunks created:   {chunks}")
        print(f"  🧮 Tokens embedded:  {tokens}")
        print(f"  💲 Embedding cost:   ${cost:.6f}")
        print(f"  ⏱️  Time elapsed:     {elapsed_seconds:.1f}s")
        print(f"\n{'=' * 60}\n")

        for error in report.errors:
            print(f"  ⚠️  {error.file_name}: {error.error}")
        if report.errors:
            print()


def load_files(paths):
    """Read files from disk, guessing each one's MIME type from its name."""
    uploads = []
    for path in paths:
        content_type, _ = mimetypes.guess_type(path.name)
        uploads.append(
            UploadedFile(filename=path.name, data=path.read_bytes(), content_type=content_type)
        )
    return uploads


async def main():
    """Main entry point for the upload script."""
    parser = argparse.ArgumentParser(
        description="Upload files into a knowledge base",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/ingest_files.py --tenant acme --knowledge-base kb1 docs/*.md
  python scripts/ingest_files.py --tenant acme --knowledge-base kb1 --chunk-size 500 notes.txt
        """,
    )

    parser.add_argument("--tenant", required=True, help="Tenant id")
    parser.add_argument("--knowledge-base", required=True, help="Knowledge base id")
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        help=f"Chunk size in characters (default: {config.CHUNK_SIZE})",
    )
    parser.add_argument(
        "--overlap",
        type=int,
        default=None,
        help=f"Chunk overlap in characters (default: {config.CHUNK_OVERLAP})",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose progress output",
    )
    parser.add_argument("files", nargs="+", type=Path, help="Files to upload")

    args = parser.parse_args()

    configure_logging()
    progress = ProgressReporter(verbose=args.verbose)

    try:
        missing = [str(path) for path in args.files if not path.is_file()]
        if missing:
            raise FileNotFoundError(f"File(s) not found: {', '.join(missing)}")

        print("\n📋 Configuration:")
        print(f"   Tenant:           {args.tenant}")
        print(f"   Knowledge base:   {args.knowledge_base}")
        print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
        print(f"   Chunk size:       {args.chunk_size or config.CHUNK_SIZE} chars")
        print(f"   Chunk overlap:    {config.CHUNK_OVERLAP if args.overlap is None else args.overlap} chars")
        print(f"   Index:            {config.INDEX_NAME}")

        progress.start("Uploading Documents")

        services = build_services()
        report = await services.ingest.upload_documents(
            load_files(args.files),
            knowledge_base_id=args.knowledge_base,
            tenant_id=args.tenant,
            chunk_size=args.chunk_size,
            overlap=args.overlap,
            progress_callback=progress.update,
        )

        progress.finish(report)

        # Exit with error code if there were failures
        if report.total_errors > 0:
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\n⚠️  Upload cancelled by user.\n")
        sys.exit(1)

    except FileNotFoundError as e:
        print(f"\n❌ Error: {e}\n")
        sys.exit(1)

    except Exception as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("ingest_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
