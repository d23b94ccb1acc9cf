"""Initial schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Providers table
    op.create_table(
        'providers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('slug', sa.String(length=64), nullable=False),
        sa.Column('api_base_url', sa.Text(), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_preferred', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('pricing_margin_percent', sa.Numeric(precision=6, scale=2), nullable=False, server_default='15.00'),
        sa.Column('min_margin_percent', sa.Numeric(precision=6, scale=2), nullable=False, server_default='0.00'),
        sa.Column('failover_priority', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('sync_interval_minutes', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('api_rate_limit_per_hour', sa.Integer(), nullable=False, server_default='1000'),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug'),
        sa.CheckConstraint('pricing_margin_percent >= 0', name='ck_provider_margin_non_negative'),
        sa.CheckConstraint('min_margin_percent >= 0', name='ck_provider_min_margin_non_negative'),
        sa.CheckConstraint('sync_interval_minutes > 0', name='ck_provider_sync_interval_positive'),
        sa.CheckConstraint('api_rate_limit_per_hour > 0', name='ck_provider_rate_limit_positive'),
    )

    # Locations
    op.create_table(
        'destinations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('slug', sa.String(length=128), nullable=False),
        sa.Column('country_code', sa.String(length=2), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug'),
        sa.UniqueConstraint('country_code'),
    )

    op.create_table(
        'regions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('slug', sa.String(length=128), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True),
        sa.Column('countries', sa.JSON(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug'),
        sa.UniqueConstraint('code'),
    )

    op.create_table(
        'country_code_mappings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('external_code', sa.String(length=128), nullable=False),
        sa.Column('internal_code', sa.String(length=2), nullable=False),
        sa.Column('country_name', sa.String(length=128), nullable=True),
        sa.Column('code_type', sa.String(length=16), nullable=False, server_default='iso3'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_code', 'code_type', name='uq_country_mapping_code_type'),
    )

    # Unified packages table
    op.create_table(
        'unified_packages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider_id', sa.Integer(), nullable=False),
        sa.Column('provider_package_id', sa.String(length=128), nullable=False),
        sa.Column('destination_id', sa.Integer(), nullable=True),
        sa.Column('region_id', sa.Integer(), nullable=True),
        sa.Column('country_code', sa.String(length=2), nullable=True),
        sa.Column('coverage', sa.JSON(), nullable=True),
        sa.Column('location_status', sa.String(length=16), nullable=False, server_default='resolved'),
        sa.Column('package_type', sa.String(length=16), nullable=False, server_default='local'),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('data_amount', sa.String(length=64), nullable=True),
        sa.Column('data_amount_bytes', sa.BigInteger(), nullable=True),
        sa.Column('is_unlimited', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('validity_days', sa.Integer(), nullable=False),
        sa.Column('voice_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sms_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('wholesale_cost', sa.Numeric(precision=12, scale=4), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('sell_price', sa.Numeric(precision=12, scale=4), nullable=False),
        sa.Column('price_override', sa.Numeric(precision=12, scale=4), nullable=True),
        sa.Column('is_best_price', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('manual_override', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['provider_id'], ['providers.id']),
        sa.ForeignKeyConstraint(['destination_id'], ['destinations.id']),
        sa.ForeignKeyConstraint(['region_id'], ['regions.id']),
        sa.UniqueConstraint('provider_id', 'provider_package_id', name='uq_unified_package_provider_native'),
    )
    op.create_index('ix_unified_packages_provider_id', 'unified_packages', ['provider_id'])
    op.create_index('ix_unified_packages_destination_id', 'unified_packages', ['destination_id'])
    op.create_index('ix_unified_packages_region_id', 'unified_packages', ['region_id'])
    op.create_index('ix_unified_packages_active_currency', 'unified_packages', ['active', 'currency'])

    # Best price marks table
    op.create_table(
        'best_price_marks',
        sa.Column('group_key', sa.String(length=255), nullable=False),
        sa.Column('package_id', sa.Integer(), nullable=False),
        sa.Column('destination_id', sa.Integer(), nullable=True),
        sa.Column('region_id', sa.Integer(), nullable=True),
        sa.Column('member_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('runner_up_delta', sa.Numeric(precision=12, scale=4), nullable=True),
        sa.Column('computed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('group_key'),
        sa.ForeignKeyConstraint(['package_id'], ['unified_packages.id']),
    )
    op.create_index('ix_best_price_marks_destination_id', 'best_price_marks', ['destination_id'])
    op.create_index('ix_best_price_marks_region_id', 'best_price_marks', ['region_id'])

    # Price brackets table
    op.create_table(
        'price_brackets',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.String(length=128), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('step_size', sa.Numeric(precision=12, scale=4), nullable=False),
        sa.Column('bucket_index', sa.Integer(), nullable=False),
        sa.Column('min_price', sa.Numeric(precision=12, scale=4), nullable=False),
        sa.Column('max_price', sa.Numeric(precision=12, scale=4), nullable=False),
        sa.Column('android_status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('android_sync_error', sa.Text(), nullable=True),
        sa.Column('android_last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('apple_status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('apple_sync_error', sa.Text(), nullable=True),
        sa.Column('apple_last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id'),
    )
    op.create_index('ix_price_brackets_currency', 'price_brackets', ['currency'])

    # Sync runs table
    op.create_table(
        'sync_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('run_id', sa.String(length=64), nullable=False),
        sa.Column('provider_id', sa.Integer(), nullable=False),
        sa.Column('trigger', sa.String(length=32), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='running'),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('pages_fetched', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('offers_seen', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('packages_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('normalization_errors', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('packages_created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('packages_updated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('packages_deactivated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_code', sa.String(length=64), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['provider_id'], ['providers.id']),
    )
    op.create_index('ix_sync_runs_run_id', 'sync_runs', ['run_id'])
    op.create_index('ix_sync_runs_provider_id', 'sync_runs', ['provider_id'])


def downgrade() -> None:
    op.drop_index('ix_sync_runs_provider_id', table_name='sync_runs')
    op.drop_index('ix_sync_runs_run_id', table_name='sync_runs')
    op.drop_table('sync_runs')
    op.drop_index('ix_price_brackets_currency', table_name='price_brackets')
    op.drop_table('price_brackets')
    op.drop_index('ix_best_price_marks_region_id', table_name='best_price_marks')
    op.drop_index('ix_best_price_marks_destination_id', table_name='best_price_marks')
    op.drop_table('best_price_marks')
    op.drop_index('ix_unified_packages_active_currency', table_name='unified_packages')
    op.drop_index('ix_unified_packages_region_id', table_name='unified_packages')
    op.drop_index('ix_unified_packages_destination_id', table_name='unified_packages')
    op.drop_index('ix_unified_packages_provider_id', table_name='unified_packages')
    op.drop_table('unified_packages')
    op.drop_table('country_code_mappings')
    op.drop_table('regions')
    op.drop_table('destinations')
    op.drop_table('providers')
