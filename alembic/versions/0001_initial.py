"""Initial vault schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "stashes",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_stashes_created_at", "stashes", ["created_at"])
    op.create_index("ix_stashes_updated_at", "stashes", ["updated_at"])

    op.create_table(
        "stash_tags",
        sa.Column("stash_id", sa.String(length=36), sa.ForeignKey("stashes.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "stash_files",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("stash_id", sa.String(length=36), sa.ForeignKey("stashes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("language", sa.String(length=50), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("stash_id", "filename", name="uq_stash_file_name"),
    )
    op.create_index("ix_stash_files_stash_id", "stash_files", ["stash_id"])

    op.create_table(
        "stash_versions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("stash_id", sa.String(length=36), sa.ForeignKey("stashes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(length=20), nullable=False),
        sa.Column("change_summary", sa.JSON(), nullable=False),
        sa.Column("restored_from", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("stash_id", "version", name="uq_stash_version_number"),
    )
    op.create_index("ix_stash_versions_stash_id", "stash_versions", ["stash_id"])
    op.create_index("ix_stash_versions_created_at", "stash_versions", ["created_at"])

    op.create_table(
        "stash_version_files",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("version_id", sa.String(length=36), sa.ForeignKey("stash_versions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("language", sa.String(length=50), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_stash_version_files_version_id", "stash_version_files", ["version_id"])

    op.create_table(
        "search_terms",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("stash_id", sa.String(length=36), sa.ForeignKey("stashes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("field", sa.String(length=20), nullable=False),
        sa.Column("term", sa.String(length=200), nullable=False),
        sa.Column("frequency", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_search_terms_stash_id", "search_terms", ["stash_id"])
    op.create_index("ix_search_terms_term", "search_terms", ["term"])

    op.create_table(
        "access_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("stash_id", sa.String(length=36), sa.ForeignKey("stashes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("source", sa.String(length=10), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("ip", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_access_log_stash_id", "access_log", ["stash_id"])
    op.create_index("ix_access_log_timestamp", "access_log", ["timestamp"])

    op.create_table(
        "admin_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_admin_sessions_token_hash", "admin_sessions", ["token_hash"], unique=True)
    op.create_index("ix_admin_sessions_expires_at", "admin_sessions", ["expires_at"])

    op.create_table(
        "api_tokens",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("label", sa.String(length=200), nullable=False),
        sa.Column("lookup_key", sa.String(length=24), nullable=False),
        sa.Column("token_hash", sa.String(length=255), nullable=False),
        sa.Column("token_prefix", sa.String(length=12), nullable=False),
        sa.Column("scopes", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_used_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_api_tokens_lookup_key", "api_tokens", ["lookup_key"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_api_tokens_lookup_key", table_name="api_tokens")
    op.drop_table("api_tokens")
    op.drop_index("ix_admin_sessions_expires_at", table_name="admin_sessions")
    op.drop_index("ix_admin_sessions_token_hash", table_name="admin_sessions")
    op.drop_table("admin_sessions")
    op.drop_index("ix_access_log_timestamp", table_name="access_log")
    op.drop_index("ix_access_log_stash_id", table_name="access_log")
    op.drop_table("access_log")
    op.drop_index("ix_search_terms_term", table_name="search_terms")
    op.drop_index("ix_search_terms_stash_id", table_name="search_terms")
    op.drop_table("search_terms")
    op.drop_index("ix_stash_version_files_version_id", table_name="stash_version_files")
    op.drop_table("stash_version_files")
    op.drop_index("ix_stash_versions_created_at", table_name="stash_versions")
    op.drop_index("ix_stash_versions_stash_id", table_name="stash_versions")
    op.drop_table("stash_versions")
    op.drop_index("ix_stash_files_stash_id", table_name="stash_files")
    op.drop_table("stash_files")
    op.drop_table("stash_tags")
    op.drop_index("ix_stashes_updated_at", table_name="stashes")
    op.drop_index("ix_stashes_created_at", table_name="stashes")
    op.drop_table("stashes")
    op.drop_table("tags")
