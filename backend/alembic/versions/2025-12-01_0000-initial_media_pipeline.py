"""initial_media_pipeline_schema

Revision ID: 5b1e0c7d9a42
Revises:
Create Date: 2025-12-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector

# revision identifiers, used by Alembic.
revision: str = '5b1e0c7d9a42'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Must match settings.EMBEDDING_DIMENSION at the time of migration
EMBEDDING_DIMENSION = 384

# Enum columns store the member NAME (SQLAlchemy default for Enum types)
subscription_tier = sa.Enum('BASIC', 'PRO', 'ENTERPRISE', name='subscriptiontier')
source_kind = sa.Enum('UPLOAD', 'EXTERNAL', 'EMBED', name='sourcekind')
platform = sa.Enum('YOUTUBE', 'LOOM', 'MUX', 'VIMEO', name='platform')
media_status = sa.Enum(
    'PENDING', 'UPLOADING', 'TRANSCRIBING', 'PROCESSING', 'EMBEDDING', 'COMPLETED', 'FAILED',
    name='mediastatus',
)
error_category = sa.Enum(
    'UNSUPPORTED_INPUT', 'PROVIDER_ERROR', 'NO_TRANSCRIPT', 'RETRIES_EXHAUSTED',
    'RECOVERY_TERMINATED', 'INVALID_STATE',
    name='errorcategory',
)


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was created (UTC)'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was last updated (UTC)'),
    ]


def upgrade() -> None:
    """
    Create the media pipeline schema.

    Tables:
    1. tenants - accounts owning media, with a subscription tier
    2. usage_records - per-tenant, per-day usage and cost ledger
    3. media_items - one row per submitted media item and its pipeline state
    4. media_chunks - transcript chunks with embedding vectors

    Indexes:
    - ix_media_items_stuck_scan (status, created_at) for the stuck-item scan
    - ix_media_items_tenant_external for duplicate detection on submit
    - HNSW index on media_chunks.embedding for cosine similarity search
    """

    op.execute('CREATE EXTENSION IF NOT EXISTS vector')

    # ================================
    # tenants
    # ================================
    op.create_table(
        'tenants',
        sa.Column('id', sa.String(length=36), nullable=False, comment='Opaque tenant identifier (UUID4)'),
        *_timestamps(),
        sa.Column('name', sa.String(length=255), nullable=False, comment='Display name'),
        sa.Column('tier', subscription_tier, nullable=False, comment='Subscription tier driving quota limits'),
        sa.Column('is_active', sa.Boolean(), nullable=False, comment='Inactive tenants cannot submit new media'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_tenants')),
    )

    # ================================
    # usage_records
    # ================================
    op.create_table(
        'usage_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='Auto-incrementing primary key'),
        *_timestamps(),
        sa.Column('tenant_id', sa.String(length=36), nullable=False, comment='Owning tenant'),
        sa.Column('period', sa.Date(), nullable=False, comment='Ledger day (UTC)'),
        sa.Column('storage_bytes', sa.BigInteger(), server_default='0', nullable=False, comment='Bytes admitted to storage'),
        sa.Column('items_count', sa.Integer(), server_default='0', nullable=False, comment='Media items admitted'),
        sa.Column('processing_minutes', sa.Float(), server_default='0', nullable=False, comment='Transcribed minutes'),
        sa.Column('embedding_tokens', sa.BigInteger(), server_default='0', nullable=False, comment='Tokens embedded'),
        sa.Column('transcription_cost', sa.Numeric(12, 6), server_default='0', nullable=False, comment='Transcription cost (USD)'),
        sa.Column('embedding_cost', sa.Numeric(12, 6), server_default='0', nullable=False, comment='Embedding cost (USD)'),
        sa.Column('storage_cost', sa.Numeric(12, 6), server_default='0', nullable=False, comment='Storage cost (USD)'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], name=op.f('fk_usage_records_tenant_id_tenants'), ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_usage_records')),
        sa.UniqueConstraint('tenant_id', 'period', name='uq_usage_record_tenant_period'),
    )
    op.create_index(op.f('ix_usage_records_tenant_id'), 'usage_records', ['tenant_id'], unique=False)

    # ================================
    # media_items
    # ================================
    op.create_table(
        'media_items',
        sa.Column('id', sa.String(length=36), nullable=False, comment='Opaque media item identifier (UUID4)'),
        *_timestamps(),
        sa.Column('tenant_id', sa.String(length=36), nullable=False, comment='Owning tenant'),
        sa.Column('title', sa.String(length=255), nullable=False, comment='Display title'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('source_kind', source_kind, nullable=False, comment='upload / external / embed'),
        sa.Column('platform', platform, nullable=True, comment='Hosting platform for external and embed sources'),
        sa.Column('external_id', sa.String(length=255), nullable=True, comment='Platform video / embed id'),
        sa.Column('storage_path', sa.String(length=1000), nullable=True, comment='Storage reference for uploaded files'),
        sa.Column('source_url', sa.String(length=1000), nullable=True, comment='Fetchable media URL, if any'),
        sa.Column('status', media_status, nullable=False, comment='Pipeline status'),
        sa.Column('error_message', sa.Text(), nullable=True, comment='Human-readable error if processing failed'),
        sa.Column('error_category', error_category, nullable=True, comment='Machine-readable failure category'),
        sa.Column('processing_started_at', sa.DateTime(timezone=True), nullable=True, comment='First entry into an in-flight stage'),
        sa.Column('processing_completed_at', sa.DateTime(timezone=True), nullable=True, comment='Entry into COMPLETED or FAILED'),
        sa.Column('recovery_attempts', sa.Integer(), server_default='0', nullable=False, comment='Recovery attempts made so far'),
        sa.Column('recovery_last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('recovery_last_action', sa.String(length=50), nullable=True),
        sa.Column('file_size_bytes', sa.BigInteger(), nullable=True, comment='Size of the stored file (uploads)'),
        sa.Column('duration_seconds', sa.Float(), nullable=True, comment='Media duration'),
        sa.Column('transcript', sa.Text(), nullable=True, comment='Full transcript text'),
        sa.Column('transcript_segments', postgresql.JSONB(astext_type=sa.Text()), nullable=True, comment='Timestamped transcript segments'),
        sa.Column('language', sa.String(length=16), nullable=True, comment='Detected or declared transcript language'),
        sa.Column('embedding_stats', postgresql.JSONB(astext_type=sa.Text()), nullable=True, comment='Chunk/token/cost totals written on completion'),
        sa.Column('is_deleted', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], name=op.f('fk_media_items_tenant_id_tenants'), ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_media_items')),
    )
    op.create_index(op.f('ix_media_items_tenant_id'), 'media_items', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_media_items_source_kind'), 'media_items', ['source_kind'], unique=False)
    op.create_index(op.f('ix_media_items_status'), 'media_items', ['status'], unique=False)
    op.create_index(op.f('ix_media_items_is_deleted'), 'media_items', ['is_deleted'], unique=False)
    op.create_index('ix_media_items_stuck_scan', 'media_items', ['status', 'created_at'], unique=False)
    op.create_index(
        'ix_media_items_tenant_external',
        'media_items',
        ['tenant_id', 'platform', 'external_id'],
        unique=False,
    )

    # ================================
    # media_chunks
    # ================================
    op.create_table(
        'media_chunks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='Auto-incrementing primary key'),
        *_timestamps(),
        sa.Column('media_item_id', sa.String(length=36), nullable=False, comment='Parent media item'),
        sa.Column('chunk_index', sa.Integer(), nullable=False, comment='Ordinal of this chunk within the item (0-indexed)'),
        sa.Column('text', sa.Text(), nullable=False, comment='Chunk text'),
        sa.Column('word_count', sa.Integer(), nullable=False),
        sa.Column('token_count', sa.Integer(), nullable=False),
        sa.Column('start_seconds', sa.Float(), nullable=True),
        sa.Column('end_seconds', sa.Float(), nullable=True),
        sa.Column('chunk_metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True, comment='Sentence count, segment range, chunking method'),
        sa.Column('embedding', Vector(EMBEDDING_DIMENSION), nullable=True, comment='Embedding vector for semantic search'),
        sa.ForeignKeyConstraint(['media_item_id'], ['media_items.id'], name=op.f('fk_media_chunks_media_item_id_media_items'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_media_chunks')),
        sa.UniqueConstraint('media_item_id', 'chunk_index', name='uq_media_item_chunk_index'),
    )
    op.create_index(op.f('ix_media_chunks_media_item_id'), 'media_chunks', ['media_item_id'], unique=False)

    # HNSW: no training step, good recall for cosine distance
    op.execute(
        'CREATE INDEX ix_media_chunks_embedding_hnsw ON media_chunks '
        'USING hnsw (embedding vector_cosine_ops) WITH (m = 16, ef_construction = 64)'
    )


def downgrade() -> None:
    """Drop the media pipeline schema (the vector extension is left installed)."""
    op.execute('DROP INDEX IF EXISTS ix_media_chunks_embedding_hnsw')
    op.drop_index(op.f('ix_media_chunks_media_item_id'), table_name='media_chunks')
    op.drop_table('media_chunks')

    op.drop_index('ix_media_items_tenant_external', table_name='media_items')
    op.drop_index('ix_media_items_stuck_scan', table_name='media_items')
    op.drop_index(op.f('ix_media_items_is_deleted'), table_name='media_items')
    op.drop_index(op.f('ix_media_items_status'), table_name='media_items')
    op.drop_index(op.f('ix_media_items_source_kind'), table_name='media_items')
    op.drop_index(op.f('ix_media_items_tenant_id'), table_name='media_items')
    op.drop_table('media_items')

    op.drop_index(op.f('ix_usage_records_tenant_id'), table_name='usage_records')
    op.drop_table('usage_records')
    op.drop_table('tenants')

    bind = op.get_bind()
    for enum_type in (error_category, media_status, platform, source_kind, subscription_tier):
        enum_type.drop(bind, checkfirst=True)
