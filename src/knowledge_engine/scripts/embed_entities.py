"""CLI for embedding a catalogue of entities into the vector store."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from collections import Counter
from pathlib import Path
from typing import Any

from knowledge_engine.config import Settings
from knowledge_engine.embeddings import EmbeddingService, build_embedding_text, extract_keywords
from knowledge_engine.errors import KnowledgeError
from knowledge_engine.vector_store import EmbeddingRecord, EntityMetadata, VectorStore, build_vector_store

logger = logging.getLogger(__name__)

_CORE_FIELDS = {"id", "name", "description", "entityType", "domain"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Embed catalogued entities for similarity search")
    parser.add_argument("entities", help="Path to a JSON file containing a list of entities")
    parser.add_argument("--domain", help="Only embed entities from this domain")
    parser.add_argument("--force", action="store_true", help="Re-embed entities that already have embeddings")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be embedded without calling the embedding provider",
    )
    return parser


def load_entities(path: Path) -> list[dict[str, Any]]:
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if isinstance(data, dict):
        data = data.get("entities", [])
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ValueError(f"{path} must contain a JSON list of entity objects")
    return data


def entity_to_record(entity: dict[str, Any], vector: list[float], *, text: str | None = None) -> EmbeddingRecord:
    metadata = entity.get("metadata")
    keyword_fields = {**entity, **metadata} if isinstance(metadata, dict) else entity
    return EmbeddingRecord(
        entity_id=str(entity["id"]),
        vector=tuple(vector),
        metadata=EntityMetadata(
            name=str(entity["name"]),
            description=str(entity.get("description") or ""),
            entity_type=str(entity.get("entityType") or ""),
            domain=str(entity.get("domain") or ""),
        ),
        text=text,
        keywords=extract_keywords(str(entity["name"]), keyword_fields),
    )


def embedding_text_for(entity: dict[str, Any], *, max_chars: int) -> str:
    extra = {key: value for key, value in entity.items() if key not in _CORE_FIELDS}
    return build_embedding_text(
        str(entity["name"]),
        entity.get("description"),
        entity.get("entityType"),
        extra,
        max_chars=max_chars,
    )


def _print_breakdown(entities: list[dict[str, Any]]) -> None:
    by_domain = Counter(str(entity.get("domain") or "unknown") for entity in entities)
    by_type = Counter(str(entity.get("entityType") or "unknown") for entity in entities)
    print("Breakdown by domain:")
    for domain, count in sorted(by_domain.items()):
        print(f"   {domain}: {count}")
    print("Breakdown by entity type:")
    for entity_type, count in sorted(by_type.items()):
        print(f"   {entity_type}: {count}")


def main(
    argv: list[str] | None = None,
    *,
    settings: Settings | None = None,
    embedding_service: EmbeddingService | None = None,
    vector_store: VectorStore | None = None,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        entities = load_entities(Path(args.entities))
    except (OSError, ValueError) as exc:
        parser.error(str(exc))
        return 2

    if args.domain:
        entities = [entity for entity in entities if entity.get("domain") == args.domain]
        print(f"Filtered to domain: {args.domain}")
    print(f"Total entities to process: {len(entities)}")
    _print_breakdown(entities)

    if args.dry_run:
        print("Dry run - no embeddings will be created.")
        for entity in entities[:5]:
            print(f"   - {entity.get('name')} ({entity.get('domain')}/{entity.get('entityType')})")
        return 0

    settings = settings or Settings.from_env()
    embedding_service = embedding_service or EmbeddingService(settings)
    store = vector_store or build_vector_store(settings, dimension=embedding_service.dimension)
    if not store.is_open:
        store.open()

    try:
        if not args.force:
            existing = {str(entity.get("id", "")) for entity in entities if store.contains(str(entity.get("id", "")))}
            if existing:
                print(f"{len(existing)} entities already have embeddings; use --force to re-embed them.")
                entities = [entity for entity in entities if str(entity.get("id", "")) not in existing]

        if not entities:
            print("All entities already embedded. Nothing to do.")
            return 0

        start = time.perf_counter()
        failures = 0
        for position, entity in enumerate(entities, start=1):
            try:
                text = embedding_text_for(entity, max_chars=settings.embedding_max_chars)
                store.upsert(entity_to_record(entity, embedding_service.embed(text), text=text))
            except (KeyError, KnowledgeError) as exc:
                failures += 1
                logger.warning("embed.entity_failed entity=%s error=%s", entity.get("id"), exc)
                print(f"Failed to embed {entity.get('id')!r}: {exc}", file=sys.stderr)
            print(f"Progress: {position}/{len(entities)}")

        stats = store.stats()
        elapsed = time.perf_counter() - start
        print(f"Embedded {len(entities) - failures} entities in {elapsed:.1f}s ({failures} failed)")
        print(f"Total embeddings: {stats.count} ({stats.storage_type})")
        return 1 if failures else 0
    finally:
        store.close()
        embedding_service.close()


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
