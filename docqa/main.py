"""Command-line entry point.

Usage:
    docqa ask                       interactive session
    docqa ask --query "..." --k 5   one-shot query
    docqa ingest json data/json     populate the JSON index
    docqa ingest pdf data/pdfs      populate the PDF index
"""

import argparse
import logging
import os
import sys
from typing import Callable

from dotenv import load_dotenv

from docqa.config import Settings
from docqa.errors import ConfigurationError, DocQAError, VectorIndexError
from docqa.models import SourceCollection
from docqa.rag.embeddings import LocalEmbeddingProvider, WatsonxEmbeddingProvider
from docqa.rag.ingest import load_documents, populate_index
from docqa.rag.pipeline import Pipeline, format_report
from docqa.rag.vectorstore import IndexCatalog, build_vector_store

logger = logging.getLogger("docqa")

EXIT_SENTINELS = {"exit", "quit"}


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def parse_k(raw: str, default: int) -> int:
    raw = raw.strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        print(f"Invalid result count {raw!r}; using {default}.")
        return default
    if value < 1:
        print(f"Result count must be positive; using {default}.")
        return default
    return value


def parse_search_type(raw: str) -> SourceCollection:
    raw = raw.strip().lower()
    if not raw:
        return SourceCollection.JSON
    try:
        return SourceCollection(raw)
    except ValueError:
        print('Invalid index type. Using "json".')
        return SourceCollection.JSON


def answer_once(
    pipeline: Pipeline,
    query: str,
    k: int,
    search_type: SourceCollection,
    output: Callable[[str], None] = print,
) -> bool:
    """Run one query and print the answer plus the report.

    Returns:
        False if the query could not be answered, True otherwise.
    """
    try:
        result = pipeline.run(query, k=k, search_type=search_type)
    except VectorIndexError as e:
        logger.error(f"Vector store error: {e}")
        output(f"\nCould not search the {search_type.value} index: {e}")
        return False
    except Exception as e:
        logger.error(f"Query failed: {type(e).__name__}: {e}")
        output(f"\nCould not answer the query: {e}")
        return False
    output("\nAnswer:")
    output(result.answer)
    output("")
    output(format_report(result))
    return True


def interactive_loop(
    pipeline: Pipeline,
    default_k: int,
    input_fn: Callable[[str], str] = input,
    output: Callable[[str], None] = print,
) -> None:
    """Prompt for queries until an exit sentinel or end of input."""
    while True:
        try:
            query = input_fn('\nEnter your query (or "exit"): ').strip()
        except EOFError:
            break
        if query.lower() in EXIT_SENTINELS:
            break
        if not query:
            continue
        try:
            k = parse_k(input_fn(f"Number of results ({default_k}): "), default_k)
            search_type = parse_search_type(
                input_fn("Search in (json/pdf, default json): ")
            )
        except EOFError:
            break
        answer_once(pipeline, query, k, search_type, output)


def cmd_ask(args: argparse.Namespace, settings: Settings) -> int:
    settings.validate()
    pipeline = Pipeline.from_settings(settings)
    k = args.k or settings.top_k
    with pipeline.session():
        if args.query:
            ok = answer_once(pipeline, args.query, k, SourceCollection(args.index))
            return 0 if ok else 1
        print("\n=== Semantic question answering ===")
        print(f"Chat model: {settings.watsonx_gen_model or 'not configured'}")
        print(f"Embedding model: {settings.watsonx_embed_model}")
        try:
            interactive_loop(pipeline, k)
        except KeyboardInterrupt:
            print()
    print("\nSession closed.")
    return 0


def cmd_ingest(args: argparse.Namespace, settings: Settings) -> int:
    if args.local:
        provider = LocalEmbeddingProvider(settings.local_embed_model)
    else:
        settings.validate()
        provider = WatsonxEmbeddingProvider(settings)
    chunks = load_documents(settings, args.collection, args.directory)
    if not chunks:
        print(f"No documents found in {args.directory}.")
        return 1
    store = build_vector_store(settings)
    with store:
        index = IndexCatalog.from_settings(settings, store).index_for(args.collection)
        written = populate_index(index, chunks, provider)
    print(f"Indexed {written} chunks into {index.name} using {provider.model_id}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="docqa", description=__doc__.splitlines()[0])
    sub = parser.add_subparsers(dest="command", required=True)

    ask = sub.add_parser("ask", help="answer questions from the indexed documents")
    ask.add_argument("--query", help="answer a single query and exit")
    ask.add_argument("--k", type=int, help="number of results to retrieve")
    ask.add_argument(
        "--index",
        choices=[c.value for c in SourceCollection],
        default=SourceCollection.JSON.value,
        help="collection to search in one-shot mode",
    )
    ask.set_defaults(handler=cmd_ask)

    ingest = sub.add_parser("ingest", help="load documents into a vector index")
    ingest.add_argument("collection", choices=[c.value for c in SourceCollection])
    ingest.add_argument("directory")
    ingest.add_argument(
        "--local",
        action="store_true",
        help="embed with the local sentence-transformers model",
    )
    ingest.set_defaults(handler=cmd_ingest)
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    configure_logging()
    args = build_parser().parse_args(argv)
    try:
        settings = Settings.from_env()
        return args.handler(args, settings)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    except DocQAError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
