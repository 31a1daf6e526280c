"""curtailment and bitcoin calculation schema

Revision ID: 001
Revises:
Create Date: 2025-03-10 09:12:44.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table('curtailment_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('settlement_date', sa.Date(), nullable=False),
        sa.Column('settlement_period', sa.Integer(), nullable=False),
        sa.Column('farm_id', sa.String(length=50), nullable=False),
        sa.Column('lead_party_name', sa.String(length=255), nullable=True),
        sa.Column('volume', sa.Numeric(precision=14, scale=4), nullable=False),
        sa.Column('payment', sa.Numeric(precision=14, scale=4), nullable=False),
        sa.Column('original_price', sa.Numeric(precision=12, scale=4), nullable=True),
        sa.Column('final_price', sa.Numeric(precision=12, scale=4), nullable=True),
        sa.Column('so_flag', sa.Boolean(), nullable=True),
        sa.Column('cadl_flag', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_curtailment_date_period_farm', 'curtailment_records', ['settlement_date', 'settlement_period', 'farm_id'], unique=False)

    op.create_table('historical_bitcoin_calculations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('settlement_date', sa.Date(), nullable=False),
        sa.Column('settlement_period', sa.Integer(), nullable=False),
        sa.Column('farm_id', sa.String(length=50), nullable=False),
        sa.Column('miner_model', sa.String(length=50), nullable=False),
        sa.Column('bitcoin_mined', sa.Numeric(precision=20, scale=8), nullable=False),
        sa.Column('difficulty', sa.Numeric(precision=30, scale=8), nullable=False),
        sa.Column('calculated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('settlement_date', 'settlement_period', 'farm_id', 'miner_model', name='uq_bitcoin_calc_date_period_farm_model')
    )
    op.create_index('idx_bitcoin_calc_date_model', 'historical_bitcoin_calculations', ['settlement_date', 'miner_model'], unique=False)

    op.create_table('bitcoin_daily_summaries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('summary_date', sa.Date(), nullable=False),
        sa.Column('miner_model', sa.String(length=50), nullable=False),
        sa.Column('bitcoin_mined', sa.Numeric(precision=20, scale=8), nullable=False),
        sa.Column('average_difficulty', sa.Numeric(precision=30, scale=8), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('summary_date', 'miner_model', name='uq_bitcoin_daily_date_model')
    )
    op.create_index(op.f('ix_bitcoin_daily_summaries_summary_date'), 'bitcoin_daily_summaries', ['summary_date'], unique=False)

    op.create_table('bitcoin_monthly_summaries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('year_month', sa.String(length=7), nullable=False),
        sa.Column('miner_model', sa.String(length=50), nullable=False),
        sa.Column('bitcoin_mined', sa.Numeric(precision=20, scale=8), nullable=False),
        sa.Column('average_difficulty', sa.Numeric(precision=30, scale=8), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('year_month', 'miner_model', name='uq_bitcoin_monthly_month_model')
    )
    op.create_index(op.f('ix_bitcoin_monthly_summaries_year_month'), 'bitcoin_monthly_summaries', ['year_month'], unique=False)

    op.create_table('bitcoin_yearly_summaries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('year', sa.String(length=4), nullable=False),
        sa.Column('miner_model', sa.String(length=50), nullable=False),
        sa.Column('bitcoin_mined', sa.Numeric(precision=20, scale=8), nullable=False),
        sa.Column('average_difficulty', sa.Numeric(precision=30, scale=8), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('year', 'miner_model', name='uq_bitcoin_yearly_year_model')
    )
    op.create_index(op.f('ix_bitcoin_yearly_summaries_year'), 'bitcoin_yearly_summaries', ['year'], unique=False)

    op.create_table('bitcoin_difficulty',
        sa.Column('difficulty_date', sa.Date(), nullable=False),
        sa.Column('difficulty', sa.Numeric(precision=30, scale=8), nullable=False),
        sa.Column('source', sa.String(length=50), nullable=False),
        sa.Column('fetched_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('difficulty_date')
    )


def downgrade() -> None:
    op.drop_table('bitcoin_difficulty')
    op.drop_index(op.f('ix_bitcoin_yearly_summaries_year'), table_name='bitcoin_yearly_summaries')
    op.drop_table('bitcoin_yearly_summaries')
    op.drop_index(op.f('ix_bitcoin_monthly_summaries_year_month'), table_name='bitcoin_monthly_summaries')
    op.drop_table('bitcoin_monthly_summaries')
    op.drop_index(op.f('ix_bitcoin_daily_summaries_summary_date'), table_name='bitcoin_daily_summaries')
    op.drop_table('bitcoin_daily_summaries')
    op.drop_index('idx_bitcoin_calc_date_model', table_name='historical_bitcoin_calculations')
    op.drop_table('historical_bitcoin_calculations')
    op.drop_index('idx_curtailment_date_period_farm', table_name='curtailment_records')
    op.drop_table('curtailment_records')
