"""create_url_finder_tables

Revision ID: 3f9a1c27d8e4
Revises:
Create Date: 2026-10-16 10:00:00.000000

Creates the tables URL Finder owns:
- storage_providers: per-provider scheduling state and health flags
- url_results: append-only discovery results
- deal_labels: write-once deal label cache
- bms_bandwidth_results: bandwidth measurement jobs

unified_verified_deal is populated by the deal indexer and is not touched.
Tables that already exist are skipped so the migration can be applied to a
database that was bootstrapped with ``init_db``.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


# revision identifiers, used by Alembic.
revision = '3f9a1c27d8e4'
down_revision = None
branch_labels = None
depends_on = None


def _uuid():
    return sa.String(36).with_variant(PG_UUID(as_uuid=True), 'postgresql')


def upgrade() -> None:
    """Create storage_providers, url_results, deal_labels and bms_bandwidth_results."""
    bind = op.get_bind()
    existing_tables = sa.inspect(bind).get_table_names()

    if 'storage_providers' not in existing_tables:
        op.create_table(
            'storage_providers',
            sa.Column('id', _uuid(), primary_key=True),
            sa.Column('provider_id', sa.String(20), nullable=False, unique=True),
            sa.Column('next_url_discovery_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
            sa.Column('url_discovery_status', sa.String(20), nullable=True),
            sa.Column('last_working_url', sa.Text(), nullable=True),
            sa.Column('next_bms_test_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
            sa.Column('bms_test_status', sa.String(20), nullable=True),
            sa.Column('bms_routing_key', sa.String(50), nullable=True),
            sa.Column('last_bms_region_discovery_at', sa.DateTime(), nullable=True),
            sa.Column('is_consistent', sa.Boolean(), nullable=True),
            sa.Column('is_reliable', sa.Boolean(), nullable=True),
            sa.Column('url_metadata', sa.JSON(), nullable=True),
            sa.Column('cached_http_endpoints', sa.JSON(), nullable=True),
            sa.Column('endpoints_fetched_at', sa.DateTime(), nullable=True),
            sa.Column('peer_id', sa.String(255), nullable=True),
            sa.Column('peer_id_fetched_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
            sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        )
        op.create_index('ix_storage_providers_next_url_discovery', 'storage_providers', ['next_url_discovery_at'])
        op.create_index('ix_storage_providers_next_bms_test', 'storage_providers', ['next_bms_test_at'])

    if 'url_results' not in existing_tables:
        op.create_table(
            'url_results',
            sa.Column('id', _uuid(), primary_key=True),
            sa.Column('provider_id', sa.String(20), nullable=False),
            sa.Column('client_id', sa.String(20), nullable=True),
            sa.Column('result_type', sa.String(20), nullable=False),
            sa.Column('working_url', sa.Text(), nullable=True),
            sa.Column('retrievability_percent', sa.Float(), nullable=True),
            sa.Column('result_code', sa.String(50), nullable=False),
            sa.Column('error_code', sa.String(50), nullable=True),
            sa.Column('content_length', sa.BigInteger(), nullable=True),
            sa.Column('invalid_evidence_url', sa.Text(), nullable=True),
            sa.Column('car_files_percent', sa.Float(), nullable=True),
            sa.Column('large_files_percent', sa.Float(), nullable=True),
            sa.Column('is_consistent', sa.Boolean(), nullable=True),
            sa.Column('is_reliable', sa.Boolean(), nullable=True),
            sa.Column('url_metadata', sa.JSON(), nullable=True),
            sa.Column('tested_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
            sa.CheckConstraint(
                'retrievability_percent IS NULL OR (retrievability_percent >= 0 AND retrievability_percent <= 100)',
                name='ck_url_results_retrievability_range',
            ),
            sa.CheckConstraint(
                'car_files_percent IS NULL OR (car_files_percent >= 0 AND car_files_percent <= 100)',
                name='ck_url_results_car_files_range',
            ),
            sa.CheckConstraint(
                'large_files_percent IS NULL OR (large_files_percent >= 0 AND large_files_percent <= 100)',
                name='ck_url_results_large_files_range',
            ),
        )
        op.create_index('ix_url_results_provider_tested', 'url_results', ['provider_id', 'tested_at'])
        op.create_index('ix_url_results_provider_client_tested', 'url_results', ['provider_id', 'client_id', 'tested_at'])

    if 'deal_labels' not in existing_tables:
        op.create_table(
            'deal_labels',
            sa.Column('deal_id', sa.BigInteger(), primary_key=True, autoincrement=False),
            sa.Column('piece_cid', sa.String(255), nullable=False),
            sa.Column('label_raw', sa.Text(), nullable=True),
            sa.Column('payload_cid', sa.String(255), nullable=True),
            sa.Column('fetched_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        )

    if 'bms_bandwidth_results' not in existing_tables:
        op.create_table(
            'bms_bandwidth_results',
            sa.Column('id', _uuid(), primary_key=True),
            sa.Column('provider_id', sa.String(20), nullable=False),
            sa.Column('bms_job_id', sa.String(64), nullable=False, unique=True),
            sa.Column('url_tested', sa.Text(), nullable=False),
            sa.Column('routing_key', sa.String(50), nullable=False),
            sa.Column('worker_count', sa.Integer(), nullable=False),
            sa.Column('status', sa.String(20), nullable=False, server_default='Pending'),
            sa.Column('ping_avg_ms', sa.Float(), nullable=True),
            sa.Column('head_avg_ms', sa.Float(), nullable=True),
            sa.Column('ttfb_ms', sa.Float(), nullable=True),
            sa.Column('download_speed_mbps', sa.Float(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_bms_bandwidth_results_provider_id', 'bms_bandwidth_results', ['provider_id'])
        op.create_index('ix_bms_bandwidth_results_status', 'bms_bandwidth_results', ['status'])


def downgrade() -> None:
    """Drop the URL Finder tables."""
    op.drop_index('ix_bms_bandwidth_results_status', table_name='bms_bandwidth_results')
    op.drop_index('ix_bms_bandwidth_results_provider_id', table_name='bms_bandwidth_results')
    op.drop_table('bms_bandwidth_results')

    op.drop_table('deal_labels')

    op.drop_index('ix_url_results_provider_client_tested', table_name='url_results')
    op.drop_index('ix_url_results_provider_tested', table_name='url_results')
    op.drop_table('url_results')

    op.drop_index('ix_storage_providers_next_bms_test', table_name='storage_providers')
    op.drop_index('ix_storage_providers_next_url_discovery', table_name='storage_providers')
    op.drop_table('storage_providers')
