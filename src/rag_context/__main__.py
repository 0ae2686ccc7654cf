"""Entry point for rag-context MCP server."""

import argparse
import asyncio
import logging
import sys

from rag_context import __version__
from rag_context.config import get_settings, set_settings
from rag_context.server import create_server, initialize_services, shutdown_services


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="rag-context",
        description="RAG Context - retrieval-augmented context pipeline served over MCP",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--corpus",
        metavar="PATH",
        help="JSON corpus to index at startup (overrides RAG_CONTEXT_CORPUS_PATH)",
    )
    return parser.parse_args()


def configure_logging(level: str) -> None:
    """Send logs to stderr; stdout carries the MCP transport."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


async def main(corpus: str | None = None) -> None:
    """Main entry point for the MCP server."""
    settings = get_settings()
    if corpus:
        settings = settings.model_copy(update={"corpus_path": corpus})
        set_settings(settings)
    configure_logging(settings.log_level)

    await initialize_services(settings)

    mcp = create_server()

    try:
        # Already inside an event loop, so use the async stdio runner
        await mcp.run_stdio_async()
    finally:
        await shutdown_services()


def cli() -> None:
    """CLI entry point."""
    args = parse_args()
    asyncio.run(main(args.corpus))


if __name__ == "__main__":
    cli()
