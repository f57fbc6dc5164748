"""
Conversation Storage - CRUD for indexed conversation records.

Reads used to enrich search results (single conversation/message fetches and
per-file timelines) can go through a QueryCache. Every write invalidates the
cached reads that depend on the identities it touched, so a read after a
write never sees the old value.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, Set, Tuple, Type

from sqlalchemy import select, delete, func, inspect

from .cache import CacheStats, QueryCache, make_cache_key
from .config import settings
from .database import DatabaseManager
from .models import Base, Conversation, Message, FileEdit, Decision, GitCommit

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Loader = Callable[[], Awaitable[Tuple[Any, Set[Hashable]]]]


def _to_record(row: Base) -> Record:
    """Model instance to a plain dict; the `meta` attribute is exposed as `metadata`."""
    record = {}
    for attr in inspect(row).mapper.column_attrs:
        name = "metadata" if attr.key == "meta" else attr.key
        record[name] = getattr(row, attr.key)
    return record


def _from_record(model: Type[Base], record: Record) -> Base:
    data = dict(record)
    if "metadata" in data:
        data["meta"] = data.pop("metadata")
    return model(**data)


def _json_like_pattern(value: str) -> str:
    """LIKE pattern matching value as a quoted element of a JSON-encoded list."""
    encoded = json.dumps(value)
    escaped = encoded.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


# Dependency identities
def _conversation_dep(conversation_id: str) -> Tuple[str, str]:
    return ("conversation", conversation_id)


def _file_dep(file_path: str) -> Tuple[str, str]:
    return ("file", file_path)


def _row_deps(kind: str, records: Iterable[Record], id_field: str = "id") -> Set[Hashable]:
    """A read depends on every row it returned and on those rows' conversations."""
    deps: Set[Hashable] = set()
    for record in records:
        deps.add((kind, record[id_field]))
        if record.get("conversation_id"):
            deps.add(_conversation_dep(record["conversation_id"]))
    return deps


class ConversationStorage:
    """
    Async storage for conversations, messages, file edits, decisions and commits.

    Args:
        db: Database manager holding the SQLite engine
        embedding_store: Optional EmbeddingStore; deleting a conversation
            also removes the embeddings of its messages and decisions
    """

    def __init__(self, db: DatabaseManager, embedding_store=None):
        self.db = db
        self.embedding_store = embedding_store
        self._cache: Optional[QueryCache] = None
        if settings.cache_enabled:
            self.enable_cache()

    # ==================== Cache control ====================

    def enable_cache(self, max_size: Optional[int] = None, ttl_ms: Optional[int] = None) -> None:
        """Start caching reads. Replaces any existing cache, discarding entries and stats."""
        self._cache = QueryCache(
            max_size=max_size or settings.cache_max_size,
            ttl_ms=ttl_ms or settings.cache_ttl_ms
        )
        logger.info(f"Query cache enabled (max_size={self._cache.max_size}, ttl_ms={self._cache.ttl_ms})")

    def disable_cache(self) -> None:
        self._cache = None
        logger.info("Query cache disabled")

    def is_cache_enabled(self) -> bool:
        return self._cache is not None

    def get_cache_stats(self) -> Optional[CacheStats]:
        """Cache statistics, or None while caching is disabled."""
        if self._cache is None:
            return None
        return self._cache.stats()

    def clear_cache(self) -> None:
        if self._cache is not None:
            self._cache.clear()

    def _invalidate(self, deps: Set[Hashable]) -> None:
        if self._cache is not None and deps:
            self._cache.invalidate_dependency(*deps)

    async def _read_through(self, key: Hashable, loader: Loader) -> Any:
        """Return the cached value for key, or load it and cache it with its dependencies."""
        if self._cache is None:
            value, _ = await loader()
            return value

        found, value = self._cache.get(key)
        if found:
            return value

        value, deps = await loader()
        self._cache.set(key, value, depends_on=deps)
        return value

    async def _merge_all(self, model: Type[Base], records: List[Record]) -> None:
        async with self.db.get_session() as session:
            for record in records:
                await session.merge(_from_record(model, record))

    # ==================== Conversations ====================

    async def store_conversations(self, conversations: List[Record]) -> None:
        await self._merge_all(Conversation, conversations)
        self._invalidate({_conversation_dep(c["id"]) for c in conversations})
        logger.info(f"Stored {len(conversations)} conversations")

    async def get_conversation(self, conversation_id: str) -> Optional[Record]:
        async def load():
            async with self.db.get_session() as session:
                row = await session.get(Conversation, conversation_id)
            return (_to_record(row) if row else None), {_conversation_dep(conversation_id)}

        return await self._read_through(make_cache_key("conversation", conversation_id), load)

    async def delete_conversation(self, conversation_id: str) -> bool:
        """
        Delete a conversation with its messages, edits and decisions.

        Embeddings of the deleted messages and decisions are removed too
        when an embedding store is attached.

        Returns:
            True if the conversation existed
        """
        async with self.db.get_session() as session:
            message_ids = (await session.execute(
                select(Message.id).where(Message.conversation_id == conversation_id)
            )).scalars().all()
            decision_ids = (await session.execute(
                select(Decision.id).where(Decision.conversation_id == conversation_id)
            )).scalars().all()

            # Child tables cascade through the foreign keys
            result = await session.execute(
                delete(Conversation).where(Conversation.id == conversation_id)
            )
            deleted = result.rowcount > 0

        self._invalidate(
            {_conversation_dep(conversation_id)}
            | {("message", m) for m in message_ids}
            | {("decision", d) for d in decision_ids}
        )

        if self.embedding_store is not None:
            for message_id in message_ids:
                await self.embedding_store.delete_embedding(message_id, owner_type="msg")
            for decision_id in decision_ids:
                await self.embedding_store.delete_embedding(decision_id, owner_type="dec")

        if deleted:
            logger.info(
                f"Deleted conversation {conversation_id} "
                f"({len(message_ids)} messages, {len(decision_ids)} decisions)"
            )
        return deleted

    # ==================== Messages ====================

    async def store_messages(self, messages: List[Record]) -> None:
        await self._merge_all(Message, messages)
        self._invalidate({("message", m["id"]) for m in messages})
        logger.info(f"Stored {len(messages)} messages")

    async def get_message(self, message_id: str) -> Optional[Record]:
        async def load():
            async with self.db.get_session() as session:
                row = await session.get(Message, message_id)
            if row is None:
                return None, {("message", message_id)}
            record = _to_record(row)
            return record, _row_deps("message", [record])

        return await self._read_through(make_cache_key("message", message_id), load)

    async def get_messages(self, conversation_id: Optional[str] = None) -> List[Record]:
        """All messages, or those of one conversation, oldest first. Not cached."""
        query = select(Message).order_by(Message.timestamp)
        if conversation_id:
            query = query.where(Message.conversation_id == conversation_id)
        async with self.db.get_session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [_to_record(r) for r in rows]

    # ==================== File edits ====================

    async def store_file_edits(self, file_edits: List[Record]) -> None:
        await self._merge_all(FileEdit, file_edits)
        self._invalidate(
            {_file_dep(e["file_path"]) for e in file_edits}
            | {("file_edit", e["id"]) for e in file_edits}
        )
        logger.info(f"Stored {len(file_edits)} file edits")

    async def _load_file_edits(self, file_path: str) -> Tuple[List[Record], Set[Hashable]]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(FileEdit)
                .where(FileEdit.file_path == file_path)
                .order_by(FileEdit.snapshot_timestamp.desc())
            )
            records = [_to_record(r) for r in result.scalars().all()]
        return records, {_file_dep(file_path)} | _row_deps("file_edit", records)

    async def get_file_edits(self, file_path: str) -> List[Record]:
        """Edits of a file, newest snapshot first."""
        return await self._read_through(
            make_cache_key("file_edits", file_path),
            lambda: self._load_file_edits(file_path)
        )

    # ==================== Decisions ====================

    async def store_decisions(self, decisions: List[Record]) -> None:
        await self._merge_all(Decision, decisions)
        deps: Set[Hashable] = {("decision", d["id"]) for d in decisions}
        for decision in decisions:
            deps |= {_file_dep(f) for f in decision.get("related_files") or []}
        self._invalidate(deps)
        logger.info(f"Stored {len(decisions)} decisions")

    async def get_decision(self, decision_id: str) -> Optional[Record]:
        async def load():
            async with self.db.get_session() as session:
                row = await session.get(Decision, decision_id)
            if row is None:
                return None, {("decision", decision_id)}
            record = _to_record(row)
            return record, _row_deps("decision", [record])

        return await self._read_through(make_cache_key("decision", decision_id), load)

    async def _load_decisions_for_file(self, file_path: str) -> Tuple[List[Record], Set[Hashable]]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Decision)
                .where(Decision.related_files.like(_json_like_pattern(file_path), escape="\\"))
                .order_by(Decision.timestamp.desc())
            )
            records = [_to_record(r) for r in result.scalars().all()]
        return records, {_file_dep(file_path)} | _row_deps("decision", records)

    async def get_decisions_for_file(self, file_path: str) -> List[Record]:
        """Decisions whose related files include file_path, newest first."""
        return await self._read_through(
            make_cache_key("decisions_for_file", file_path),
            lambda: self._load_decisions_for_file(file_path)
        )

    async def get_decisions(self, conversation_id: Optional[str] = None) -> List[Record]:
        """All decisions, or those of one conversation. Not cached."""
        query = select(Decision).order_by(Decision.timestamp)
        if conversation_id:
            query = query.where(Decision.conversation_id == conversation_id)
        async with self.db.get_session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [_to_record(r) for r in rows]

    # ==================== Git commits ====================

    async def store_git_commits(self, commits: List[Record]) -> None:
        await self._merge_all(GitCommit, commits)
        deps: Set[Hashable] = {("commit", c["hash"]) for c in commits}
        for commit in commits:
            deps |= {_file_dep(f) for f in commit.get("files_changed") or []}
        self._invalidate(deps)
        logger.info(f"Stored {len(commits)} git commits")

    async def _load_commits_for_file(self, file_path: str) -> Tuple[List[Record], Set[Hashable]]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(GitCommit)
                .where(GitCommit.files_changed.like(_json_like_pattern(file_path), escape="\\"))
                .order_by(GitCommit.timestamp.desc())
            )
            records = [_to_record(r) for r in result.scalars().all()]
        return records, {_file_dep(file_path)} | _row_deps("commit", records, id_field="hash")

    async def get_commits_for_file(self, file_path: str) -> List[Record]:
        """Commits that changed file_path, newest first."""
        return await self._read_through(
            make_cache_key("commits_for_file", file_path),
            lambda: self._load_commits_for_file(file_path)
        )

    # ==================== Queries ====================

    async def get_file_timeline(self, file_path: str) -> Record:
        """
        Edits, commits and decisions for one file.

        The timeline is cached under its own key; on a miss it is built from
        the three cached sub-reads, each counted separately in the stats.
        """
        async def load():
            edits = await self.get_file_edits(file_path)
            commits = await self.get_commits_for_file(file_path)
            decisions = await self.get_decisions_for_file(file_path)
            deps = (
                {_file_dep(file_path)}
                | _row_deps("file_edit", edits)
                | _row_deps("commit", commits, id_field="hash")
                | _row_deps("decision", decisions)
            )
            timeline = {
                "file_path": file_path,
                "edits": edits,
                "commits": commits,
                "decisions": decisions,
            }
            return timeline, deps

        return await self._read_through(make_cache_key("timeline", file_path), load)

    async def get_stats(self) -> Dict[str, int]:
        """Row counts per table."""
        stats = {}
        async with self.db.get_session() as session:
            for name, model in (
                ("conversations", Conversation),
                ("messages", Message),
                ("file_edits", FileEdit),
                ("decisions", Decision),
                ("git_commits", GitCommit),
            ):
                result = await session.execute(select(func.count()).select_from(model))
                stats[name] = result.scalar() or 0
        return stats
