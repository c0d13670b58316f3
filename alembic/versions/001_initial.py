"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Scan states table
    op.create_table(
        'scan_states',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('creator_id', sa.String(length=64), nullable=False),
        sa.Column('provider_id', sa.String(length=32), nullable=False),
        sa.Column('credential_ref', sa.String(length=256), nullable=False),
        sa.Column('last_scan_at', sa.DateTime(), nullable=True),
        sa.Column('next_scan_at', sa.DateTime(), nullable=False),
        sa.Column('scan_interval_hours', sa.Integer(), nullable=False),
        sa.Column('last_snapshot', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('last_snapshot_hash', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('consecutive_failures', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('disabled', sa.Boolean(), nullable=False),
        sa.Column('disabled_reason', sa.String(length=32), nullable=True),
        sa.Column('disabled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('creator_id', 'provider_id', name='uq_scan_state_creator_provider')
    )
    op.create_index('ix_scan_states_due', 'scan_states', ['disabled', 'next_scan_at'])

    # Creator discography tables
    op.create_table(
        'catalog_releases',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('creator_id', sa.String(length=64), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('release_type', sa.String(length=32), nullable=True),
        sa.Column('release_date', sa.Date(), nullable=True),
        sa.Column('upc', sa.String(length=32), nullable=True),
        sa.Column('provider_id', sa.String(length=32), nullable=True),
        sa.Column('external_release_id', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_catalog_releases_creator_id', 'catalog_releases', ['creator_id'])
    op.create_index('ix_catalog_releases_upc', 'catalog_releases', ['upc'])

    op.create_table(
        'catalog_tracks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('release_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('isrc', sa.String(length=16), nullable=True),
        sa.Column('track_number', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['release_id'], ['catalog_releases.id'], ondelete='CASCADE')
    )
    op.create_index('ix_catalog_tracks_isrc', 'catalog_tracks', ['isrc'])

    # Detected releases table
    op.create_table(
        'detected_releases',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('creator_id', sa.String(length=64), nullable=False),
        sa.Column('provider_id', sa.String(length=32), nullable=False),
        sa.Column('external_release_id', sa.String(length=128), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('release_type', sa.String(length=32), nullable=True),
        sa.Column('release_date', sa.Date(), nullable=True),
        sa.Column('artwork_ref', sa.Text(), nullable=True),
        sa.Column('track_count', sa.Integer(), nullable=True),
        sa.Column('upc', sa.String(length=32), nullable=True),
        sa.Column('lead_isrc', sa.String(length=16), nullable=True),
        sa.Column('matched_catalog_id', sa.Integer(), nullable=True),
        sa.Column('match_confidence', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('dispute_notes', sa.Text(), nullable=True),
        sa.Column('first_detected_at', sa.DateTime(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=False),
        sa.Column('was_removed', sa.Boolean(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['matched_catalog_id'], ['catalog_releases.id'], ondelete='SET NULL'),
        sa.UniqueConstraint(
            'creator_id', 'provider_id', 'external_release_id',
            name='uq_detected_release_creator_provider_external'
        )
    )
    op.create_index(
        'ix_detected_releases_creator_status', 'detected_releases', ['creator_id', 'status']
    )

    # Alerts table
    op.create_table(
        'alerts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('detected_release_id', sa.Integer(), nullable=False),
        sa.Column('alert_type', sa.String(length=32), nullable=False),
        sa.Column('channel', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(), nullable=False),
        sa.Column('dedup_key', sa.String(length=64), nullable=False),
        sa.Column('action_token', sa.String(length=64), nullable=True),
        sa.Column('action_token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('action_taken_at', sa.DateTime(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('delivery_id', sa.String(length=128), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['detected_release_id'], ['detected_releases.id'], ),
        sa.UniqueConstraint('dedup_key', name='uq_alert_dedup_key')
    )
    op.create_index('ix_alerts_detected_release_id', 'alerts', ['detected_release_id'])
    op.create_index('ix_alerts_due', 'alerts', ['status', 'scheduled_for'])


def downgrade() -> None:
    op.drop_index('ix_alerts_due', table_name='alerts')
    op.drop_index('ix_alerts_detected_release_id', table_name='alerts')
    op.drop_table('alerts')
    op.drop_index('ix_detected_releases_creator_status', table_name='detected_releases')
    op.drop_table('detected_releases')
    op.drop_index('ix_catalog_tracks_isrc', table_name='catalog_tracks')
    op.drop_table('catalog_tracks')
    op.drop_index('ix_catalog_releases_upc', table_name='catalog_releases')
    op.drop_index('ix_catalog_releases_creator_id', table_name='catalog_releases')
    op.drop_table('catalog_releases')
    op.drop_table('scan_states')
