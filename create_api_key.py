#!/usr/bin/env python3
"""Create an API key for a Notes RAG tenant."""

import os
import sys
import argparse

# Load .env
from dotenv import load_dotenv
load_dotenv()

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from execution.notes_rag.embeddings import get_embedding_service
from execution.notes_rag.vector_store import VectorStore


def main():
    parser = argparse.ArgumentParser(description="Create an API key for a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant (user) id the key authenticates as")
    parser.add_argument("--name", default="dev-local", help="Label for the key")
    args = parser.parse_args()

    store = VectorStore(get_embedding_service())
    store.connect()
    store.initialize_schema()

    raw_key = store.create_api_key(args.tenant, name=args.name)
    store.close()

    print("\n" + "=" * 50)
    print(f"API key created for tenant {args.tenant}")
    print("=" * 50)
    print(f"\n  {raw_key}\n")
    print("Save this key; it cannot be retrieved again.")
    print("=" * 50)


if __name__ == "__main__":
    main()
