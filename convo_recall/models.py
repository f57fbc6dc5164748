"""
ConvoRecall Models - Schema for indexed conversations and their embeddings.

Tables:
- conversations, messages: the indexed conversation records
- file_edits, decisions, git_commits: per-file history used for timelines
- embeddings: durable per-record vectors (authoritative copy)
- chunk_embeddings: vectors for sub-spans of long records
"""

from sqlalchemy import Column, Integer, String, Text, JSON, Boolean, LargeBinary, BigInteger, ForeignKey, Index
from sqlalchemy.orm import DeclarativeBase
import time


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


class Base(DeclarativeBase):
    pass


class Conversation(Base):
    """A single conversation session belonging to a project."""
    __tablename__ = "conversations"

    id = Column(String, primary_key=True)
    project_path = Column(String, nullable=False, index=True)
    first_message_at = Column(BigInteger, nullable=False)
    last_message_at = Column(BigInteger, nullable=False, index=True)
    message_count = Column(Integer, default=0)
    git_branch = Column(String, nullable=True)
    claude_version = Column(String, nullable=True)
    meta = Column("metadata", JSON, default=dict)
    created_at = Column(BigInteger, default=now_ms)
    updated_at = Column(BigInteger, default=now_ms)


class Message(Base):
    """A message within a conversation - the primary search target."""
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    conversation_id = Column(String, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    parent_id = Column(String, nullable=True)
    message_type = Column(String, nullable=False)
    role = Column(String, nullable=True)
    content = Column(Text, nullable=True)
    timestamp = Column(BigInteger, nullable=False, index=True)
    is_sidechain = Column(Boolean, default=False)
    agent_id = Column(String, nullable=True)
    request_id = Column(String, nullable=True)
    git_branch = Column(String, nullable=True)
    cwd = Column(String, nullable=True)
    meta = Column("metadata", JSON, default=dict)


class FileEdit(Base):
    """A recorded edit of a file during a conversation."""
    __tablename__ = "file_edits"

    id = Column(String, primary_key=True)
    conversation_id = Column(String, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    file_path = Column(String, nullable=False, index=True)
    message_id = Column(String, nullable=False)
    backup_version = Column(Integer, nullable=True)
    backup_time = Column(BigInteger, nullable=True)
    snapshot_timestamp = Column(BigInteger, nullable=False)
    meta = Column("metadata", JSON, default=dict)


class Decision(Base):
    """A decision extracted from a conversation."""
    __tablename__ = "decisions"

    id = Column(String, primary_key=True)
    conversation_id = Column(String, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    message_id = Column(String, nullable=False)
    decision_text = Column(Text, nullable=False)
    rationale = Column(Text, nullable=True)
    alternatives_considered = Column(JSON, default=list)
    rejected_reasons = Column(JSON, default=dict)
    context = Column(Text, nullable=True)
    # Stored as a JSON list; file lookups match the quoted path inside it
    related_files = Column(JSON, default=list)
    related_commits = Column(JSON, default=list)
    timestamp = Column(BigInteger, nullable=False)


class GitCommit(Base):
    """A git commit linked to a conversation."""
    __tablename__ = "git_commits"

    hash = Column(String, primary_key=True)
    message = Column(Text, nullable=False)
    author = Column(String, nullable=True)
    timestamp = Column(BigInteger, nullable=False)
    branch = Column(String, nullable=True)
    files_changed = Column(JSON, default=list)
    conversation_id = Column(String, nullable=True, index=True)
    related_message_id = Column(String, nullable=True)
    meta = Column("metadata", JSON, default=dict)


class Embedding(Base):
    """
    Durable vector for one owning record.

    The id is the owner id with a type prefix (msg_, dec_) so messages and
    decisions can share a single id namespace without collisions. One row per
    (id, model_name): re-indexing with the same model replaces in place.
    Vectors are packed little-endian float32 (see vectors.encode_vector).
    """
    __tablename__ = "embeddings"

    id = Column(String, primary_key=True)
    model_name = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    owner_type = Column(String, nullable=False, default="msg")
    content = Column(Text, nullable=True)
    embedding = Column(LargeBinary, nullable=False)
    created_at = Column(BigInteger, default=now_ms)

    __table_args__ = (
        Index('idx_embedding_owner_type', 'owner_type'),
    )


class ChunkEmbedding(Base):
    """Vector for a sub-span of a long message."""
    __tablename__ = "chunk_embeddings"

    id = Column(String, primary_key=True)
    model_name = Column(String, primary_key=True)
    parent_id = Column(String, nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)
    total_chunks = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    start_offset = Column(Integer, nullable=False)
    end_offset = Column(Integer, nullable=False)
    embedding = Column(LargeBinary, nullable=False)
    created_at = Column(BigInteger, default=now_ms)
