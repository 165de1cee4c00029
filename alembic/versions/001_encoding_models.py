"""Encoding models migration.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create videos table
    op.create_table(
        'videos',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('visibility', sa.String(20), nullable=False, server_default='private'),
        sa.Column('duration', sa.Integer(), nullable=True),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('current_job_id', sa.String(64), nullable=True),
        sa.Column('raw_path', sa.String(512), nullable=True),
        sa.Column('thumbnail_path', sa.String(512), nullable=True),
        sa.Column('audio_path', sa.String(512), nullable=True),
        sa.Column('audio_metadata', sa.JSON(), nullable=True),
        sa.Column('source_width', sa.Integer(), nullable=True),
        sa.Column('source_height', sa.Integer(), nullable=True),
        sa.Column('source_metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_videos_user_id', 'videos', ['user_id'])

    # Create encoding_jobs table
    op.create_table(
        'encoding_jobs',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('video_id', sa.String(64), nullable=False),
        sa.Column('requested_qualities', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('progress_message', sa.Text(), nullable=True),
        sa.Column('external_message_id', sa.String(255), nullable=True),
        sa.Column('error_code', sa.String(100), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('error_details', sa.Text(), nullable=True),
        sa.Column('attempt_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('queued_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['video_id'], ['videos.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_encoding_jobs_video_id', 'encoding_jobs', ['video_id'])

    # Create video_variants table
    op.create_table(
        'video_variants',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('video_id', sa.String(64), nullable=False),
        sa.Column('quality', sa.String(10), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('width', sa.Integer(), nullable=True),
        sa.Column('height', sa.Integer(), nullable=True),
        sa.Column('bitrate', sa.Integer(), nullable=True),
        sa.Column('file_size', sa.BigInteger(), nullable=True),
        sa.Column('output_path', sa.String(512), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['video_id'], ['videos.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('video_id', 'quality', name='uq_video_variants_video_quality'),
    )
    op.create_index('ix_video_variants_video_id', 'video_variants', ['video_id'])

    # Create encoding_webhook_events table
    op.create_table(
        'encoding_webhook_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.String(64), nullable=False),
        sa.Column('video_id', sa.String(64), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('quality_key', sa.String(10), nullable=False, server_default=''),
        sa.Column('event_time_us', sa.BigInteger(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('job_id', 'event_type', 'quality_key', name='uq_encoding_webhook_events_key'),
    )
    op.create_index('ix_encoding_webhook_events_job_id', 'encoding_webhook_events', ['job_id'])


def downgrade() -> None:
    op.drop_index('ix_encoding_webhook_events_job_id', table_name='encoding_webhook_events')
    op.drop_table('encoding_webhook_events')
    op.drop_index('ix_video_variants_video_id', table_name='video_variants')
    op.drop_table('video_variants')
    op.drop_index('ix_encoding_jobs_video_id', table_name='encoding_jobs')
    op.drop_table('encoding_jobs')
    op.drop_index('ix_videos_user_id', table_name='videos')
    op.drop_table('videos')
