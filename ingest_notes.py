"""
Batch ingestion of a markdown notes directory into the Notes RAG store.

Every *.md file below the directory is chunked, embedded and stored for one
tenant. Source names are paths relative to the directory.

Usage:
    python ingest_notes.py --tenant user_123
    python ingest_notes.py ~/notes --tenant user_123 --chunk-size 800 --overlap 150
"""

import sys
import time
import argparse
import logging
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    arg_parser = argparse.ArgumentParser(description="Ingest a directory of markdown notes")
    arg_parser.add_argument(
        "directory",
        nargs="?",
        default="./data/notes",
        help="Directory containing .md files (default: ./data/notes)",
    )
    arg_parser.add_argument("--tenant", type=str, required=True, help="Tenant (user) id that will own the notes")
    arg_parser.add_argument("--chunk-size", type=int, default=1000, help="Maximum characters per chunk")
    arg_parser.add_argument("--overlap", type=int, default=200, help="Characters shared by consecutive chunks")
    args = arg_parser.parse_args()

    input_dir = Path(args.directory)
    if not input_dir.is_dir():
        logger.error(f"Directory not found: {input_dir}")
        sys.exit(1)

    from execution.notes_rag.chunker import ChunkConfig, TextChunker
    from execution.notes_rag.embeddings import get_embedding_service
    from execution.notes_rag.ingestion import IngestionPipeline
    from execution.notes_rag.vector_store import VectorStore

    if args.chunk_size <= 0 or not 0 <= args.overlap < args.chunk_size:
        logger.error("--overlap must be >= 0 and smaller than a positive --chunk-size")
        sys.exit(1)

    chunker = TextChunker(ChunkConfig(chunk_size=args.chunk_size, overlap=args.overlap))
    store = VectorStore(get_embedding_service())
    store.connect()
    store.initialize_schema()
    pipeline = IngestionPipeline(store, chunker=chunker)

    start_time = time.time()
    try:
        results = pipeline.ingest_directory(str(input_dir), tenant_id=args.tenant)
    finally:
        store.close()
    elapsed = time.time() - start_time

    succeeded = [r for r in results if r.success]
    failed = [r for r in results if not r.success]
    total_chunks = sum(r.chunks_inserted for r in results)

    print("\n" + "=" * 60)
    print(f"Ingestion complete in {elapsed:.1f}s")
    print("=" * 60)
    print(f"  Files:   {len(results)}")
    print(f"  Success: {len(succeeded)}")
    print(f"  Failed:  {len(failed)}")
    print(f"  Chunks:  {total_chunks}")
    for r in failed:
        print(f"  ! {r.source}: {r.error}")
    print("=" * 60)

    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
