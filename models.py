"""
Database models for the Stashvault store.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    select,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# Where an operation came from: the web UI, the REST API or a tool-calling client
ACCESS_SOURCES = ("ui", "api", "mcp")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


def to_iso(value) -> str:
    return value.isoformat() if value else None


class Tag(Base):
    """Model for tag names shared across stashes (case-sensitive)."""

    __tablename__ = 'tags'

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False, unique=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        """String representation of Tag."""
        return f'<Tag {self.name}>'


class StashTag(Base):
    """Association between a stash and a tag, keeping display order."""

    __tablename__ = 'stash_tags'

    stash_id = Column(String(36), ForeignKey('stashes.id', ondelete='CASCADE'), primary_key=True)
    tag_id = Column(Integer, ForeignKey('tags.id', ondelete='CASCADE'), primary_key=True)
    position = Column(Integer, nullable=False, default=0)

    tag = relationship('Tag', lazy='joined')


class Stash(Base):
    """Model for a named, tagged bundle of text files."""

    __tablename__ = 'stashes'

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(500), nullable=False, default='')
    description = Column(Text, nullable=False, default='')
    # "metadata" is reserved on declarative classes
    meta = Column('metadata', JSON, nullable=False, default=dict)
    archived = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    files = relationship(
        'StashFile',
        backref='stash',
        lazy='selectin',
        cascade='all, delete-orphan',
        order_by='StashFile.sort_order',
    )
    tag_links = relationship(
        'StashTag',
        lazy='selectin',
        cascade='all, delete-orphan',
        order_by='StashTag.position',
    )
    versions = relationship(
        'StashVersion',
        backref='stash',
        lazy='select',
        cascade='all, delete-orphan',
        order_by='StashVersion.version',
    )

    def __repr__(self) -> str:
        """String representation of Stash."""
        return f'<Stash {self.id} v{self.version}>'

    @classmethod
    def filter_clauses(cls, tag: Optional[str] = None, archived: Optional[bool] = None) -> list:
        """WHERE clauses for the optional tag and archived filters."""
        clauses = []
        if tag:
            clauses.append(
                cls.id.in_(
                    select(StashTag.stash_id)
                    .join(Tag, Tag.id == StashTag.tag_id)
                    .where(Tag.name == tag)
                )
            )
        if archived is not None:
            clauses.append(cls.archived.is_(archived))
        return clauses

    @property
    def tags(self) -> List[str]:
        """Tag names in display order."""
        return [link.tag.name for link in self.tag_links]

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)

    def file_infos(self) -> List[Dict]:
        return [f.to_info() for f in self.files]

    def to_dict(self) -> dict:
        """Convert stash to dictionary, file contents included."""
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'tags': self.tags,
            'metadata': dict(self.meta or {}),
            'archived': self.archived,
            'version': self.version,
            'created_at': to_iso(self.created_at),
            'updated_at': to_iso(self.updated_at),
            'files': [f.to_dict() for f in self.files],
        }

    def to_meta_dict(self) -> dict:
        """Convert stash to dictionary without file contents."""
        data = self.to_list_item()
        data['metadata'] = dict(self.meta or {})
        return data

    def to_list_item(self) -> dict:
        """Summary used by list and search results."""
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'tags': self.tags,
            'archived': self.archived,
            'version': self.version,
            'created_at': to_iso(self.created_at),
            'updated_at': to_iso(self.updated_at),
            'total_size': self.total_size,
            'files': self.file_infos(),
        }


class StashFile(Base):
    """A file in the current file set of a stash."""

    __tablename__ = 'stash_files'
    __table_args__ = (UniqueConstraint('stash_id', 'filename', name='uq_stash_file_name'),)

    id = Column(String(36), primary_key=True, default=new_id)
    stash_id = Column(String(36), ForeignKey('stashes.id', ondelete='CASCADE'), nullable=False, index=True)
    filename = Column(String(255), nullable=False)
    content = Column(Text, nullable=False, default='')
    language = Column(String(50), nullable=False, default='')
    sort_order = Column(Integer, nullable=False, default=0)

    @property
    def size(self) -> int:
        return len(self.content or '')

    def to_info(self) -> dict:
        return {'filename': self.filename, 'language': self.language, 'size': self.size}

    def to_dict(self) -> dict:
        return {
            'filename': self.filename,
            'content': self.content,
            'language': self.language,
            'size': self.size,
            'sort_order': self.sort_order,
        }


class StashVersion(Base):
    """Immutable snapshot of a stash's content and fields."""

    __tablename__ = 'stash_versions'
    __table_args__ = (UniqueConstraint('stash_id', 'version', name='uq_stash_version_number'),)

    id = Column(String(36), primary_key=True, default=new_id)
    stash_id = Column(String(36), ForeignKey('stashes.id', ondelete='CASCADE'), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    name = Column(String(500), nullable=False, default='')
    description = Column(Text, nullable=False, default='')
    tags = Column(JSON, nullable=False, default=list)
    meta = Column('metadata', JSON, nullable=False, default=dict)
    created_by = Column(String(20), nullable=False, default='api')
    change_summary = Column(JSON, nullable=False, default=dict)
    restored_from = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    files = relationship(
        'StashVersionFile',
        lazy='selectin',
        cascade='all, delete-orphan',
        order_by='StashVersionFile.sort_order',
    )

    def __repr__(self) -> str:
        return f'<StashVersion {self.stash_id} v{self.version}>'

    def to_summary(self) -> dict:
        return {
            'id': self.id,
            'stash_id': self.stash_id,
            'name': self.name,
            'description': self.description,
            'version': self.version,
            'created_by': self.created_by,
            'created_at': to_iso(self.created_at),
            'restored_from': self.restored_from,
            'file_count': len(self.files),
            'total_size': sum(f.size for f in self.files),
        }

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'stash_id': self.stash_id,
            'name': self.name,
            'description': self.description,
            'tags': list(self.tags or []),
            'metadata': dict(self.meta or {}),
            'version': self.version,
            'created_by': self.created_by,
            'created_at': to_iso(self.created_at),
            'change_summary': dict(self.change_summary or {}),
            'restored_from': self.restored_from,
            'files': [f.to_dict() for f in self.files],
        }


class StashVersionFile(Base):
    """A file belonging to one historical version."""

    __tablename__ = 'stash_version_files'

    id = Column(String(36), primary_key=True, default=new_id)
    version_id = Column(String(36), ForeignKey('stash_versions.id', ondelete='CASCADE'), nullable=False, index=True)
    filename = Column(String(255), nullable=False)
    content = Column(Text, nullable=False, default='')
    language = Column(String(50), nullable=False, default='')
    sort_order = Column(Integer, nullable=False, default=0)

    @property
    def size(self) -> int:
        return len(self.content or '')

    def to_dict(self) -> dict:
        return {
            'filename': self.filename,
            'content': self.content,
            'language': self.language,
            'size': self.size,
            'sort_order': self.sort_order,
        }


class SearchTerm(Base):
    """Inverted-index row: how often a term occurs in one field of a stash."""

    __tablename__ = 'search_terms'

    id = Column(Integer, primary_key=True)
    stash_id = Column(String(36), ForeignKey('stashes.id', ondelete='CASCADE'), nullable=False, index=True)
    field = Column(String(20), nullable=False)
    term = Column(String(200), nullable=False, index=True)
    frequency = Column(Integer, nullable=False, default=1)


class AccessLog(Base):
    """Append-only audit entry for one operation on a stash."""

    __tablename__ = 'access_log'

    id = Column(Integer, primary_key=True)
    stash_id = Column(String(36), ForeignKey('stashes.id', ondelete='CASCADE'), nullable=False, index=True)
    source = Column(String(10), nullable=False)
    action = Column(String(100), nullable=False, default='read')
    ip = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'stash_id': self.stash_id,
            'source': self.source,
            'action': self.action,
            'ip': self.ip,
            'user_agent': self.user_agent,
            'timestamp': to_iso(self.timestamp),
        }


class AdminSession(Base):
    """Admin login session; only a hash of the session token is stored."""

    __tablename__ = 'admin_sessions'

    id = Column(String(36), primary_key=True, default=new_id)
    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=True, index=True)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class ApiToken(Base):
    """
    Scoped API token.

    The secret is stored as a salted werkzeug hash and is only shown once at
    creation. ``lookup_key`` is the public part used to find the row.
    """

    __tablename__ = 'api_tokens'

    id = Column(String(36), primary_key=True, default=new_id)
    label = Column(String(200), nullable=False, default='')
    lookup_key = Column(String(24), nullable=False, unique=True, index=True)
    token_hash = Column(String(255), nullable=False)
    token_prefix = Column(String(12), nullable=False)
    scopes = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_used_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f'<ApiToken {self.token_prefix} {self.label!r}>'

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'label': self.label,
            'token_prefix': self.token_prefix,
            'scopes': list(self.scopes or []),
            'created_at': to_iso(self.created_at),
            'last_used_at': to_iso(self.last_used_at),
        }
