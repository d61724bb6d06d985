"""Create marketplace tables

Revision ID: 20260301_initial_marketplace
Revises:
Create Date: 2026-03-01

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '20260301_initial_marketplace'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('first_name', sa.String(255), nullable=True),
        sa.Column('last_name', sa.String(255), nullable=True),
        sa.Column('profile_image_url', sa.String(500), nullable=True),
        sa.Column('user_type', sa.String(20), nullable=True),
        sa.Column('onboarding_completed', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )

    op.create_table(
        'businesses',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('owner_id', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('industry', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('annual_revenue', sa.String(100), nullable=True),
        sa.Column('years_in_business', sa.Integer(), nullable=True),
        sa.Column('location', sa.String(255), nullable=True),
        sa.Column('selling_reason', sa.String(255), nullable=True),
        sa.Column('timeline', sa.String(100), nullable=True),
        sa.Column('asking_price', sa.Float(), nullable=True),
        sa.Column('employees', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['owner_id'], ['users.id']),
    )
    op.create_index('ix_businesses_owner_id', 'businesses', ['owner_id'])
    op.create_index('ix_businesses_industry', 'businesses', ['industry'])
    op.create_index('ix_businesses_is_active', 'businesses', ['is_active'])

    op.create_table(
        'buyer_profiles',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('budget_range', sa.String(100), nullable=False),
        sa.Column('preferred_industries', JSON, nullable=True),
        sa.Column('experience', sa.String(100), nullable=True),
        sa.Column('investment_focus', sa.Text(), nullable=True),
        sa.Column('timeline', sa.String(100), nullable=True),
        sa.Column('location', sa.String(255), nullable=True),
        sa.Column('acquisition_structure', JSON, nullable=True),
        sa.Column('has_financing', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
    )
    op.create_index('ix_buyer_profiles_user_id', 'buyer_profiles', ['user_id'])
    op.create_index('ix_buyer_profiles_is_active', 'buyer_profiles', ['is_active'])

    op.create_table(
        'matches',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('business_id', sa.String(36), nullable=False),
        sa.Column('buyer_id', sa.String(36), nullable=False),
        sa.Column('seller_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('ai_compatibility_score', sa.Float(), nullable=True),
        sa.Column('seller_action', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('buyer_action', sa.String(20), nullable=False, server_default='pending'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id']),
        sa.ForeignKeyConstraint(['buyer_id'], ['buyer_profiles.id']),
        sa.ForeignKeyConstraint(['seller_id'], ['users.id']),
    )
    op.create_index('ix_matches_business_id', 'matches', ['business_id'])
    op.create_index('ix_matches_buyer_id', 'matches', ['buyer_id'])
    op.create_index('ix_matches_seller_id', 'matches', ['seller_id'])

    op.create_table(
        'deals',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('match_id', sa.String(36), nullable=False),
        sa.Column('current_stage', sa.String(30), nullable=False, server_default='initial_discussion'),
        sa.Column('stage_progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('estimated_value', sa.Float(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('next_milestone', sa.Text(), nullable=True),
        sa.Column('milestone_due_date', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['match_id'], ['matches.id']),
    )
    # One deal per match
    op.create_index('ix_deals_match_id', 'deals', ['match_id'], unique=True)

    op.create_table(
        'documents',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('deal_id', sa.String(36), nullable=True),
        sa.Column('business_id', sa.String(36), nullable=True),
        sa.Column('uploader_id', sa.String(255), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_type', sa.String(100), nullable=False),
        sa.Column('file_size', sa.Integer(), nullable=False),
        sa.Column('file_path', sa.String(500), nullable=False),
        sa.Column('document_type', sa.String(30), nullable=False),
        sa.Column('ai_analysis_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('ai_analysis_results', JSON, nullable=True),
        sa.Column('risk_flags', JSON, nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id']),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id']),
        sa.ForeignKeyConstraint(['uploader_id'], ['users.id']),
    )
    op.create_index('ix_documents_deal_id', 'documents', ['deal_id'])

    op.create_table(
        'messages',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('deal_id', sa.String(36), nullable=False),
        sa.Column('sender_id', sa.String(255), nullable=False),
        sa.Column('receiver_id', sa.String(255), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('message_type', sa.String(20), nullable=False, server_default='text'),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['deal_id'], ['deals.id']),
        sa.ForeignKeyConstraint(['sender_id'], ['users.id']),
        sa.ForeignKeyConstraint(['receiver_id'], ['users.id']),
    )
    op.create_index('ix_messages_deal_id', 'messages', ['deal_id'])
    op.create_index('ix_messages_receiver_id', 'messages', ['receiver_id'])
    op.create_index('ix_messages_created_at', 'messages', ['created_at'])

    op.create_table(
        'ai_insights',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('entity_type', sa.String(20), nullable=False),
        sa.Column('entity_id', sa.String(100), nullable=False),
        sa.Column('insight_type', sa.String(30), nullable=False),
        sa.Column('insights', JSON, nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    # Composite index for get_ai_insights_by_entity
    op.create_index('idx_ai_insights_entity', 'ai_insights', ['entity_type', 'entity_id'])


def downgrade() -> None:
    op.drop_index('idx_ai_insights_entity', table_name='ai_insights', if_exists=True)
    op.drop_table('ai_insights')
    op.drop_table('messages')
    op.drop_table('documents')
    op.drop_table('deals')
    op.drop_table('matches')
    op.drop_table('buyer_profiles')
    op.drop_table('businesses')
    op.drop_table('users')
