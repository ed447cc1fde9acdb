"""Add import pipeline and deck tables

Revision ID: 3f2a9c1d7e10
Revises:
Create Date: 2026-10-17 10:12:41.508211

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f2a9c1d7e10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Reference card catalog
    op.create_table('cards',
        sa.Column('card_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('set_code', sa.String(length=10), nullable=False),
        sa.Column('collector_number', sa.String(length=20), nullable=True),
        sa.Column('released_at', sa.String(length=10), nullable=True),
        sa.Column('rarity', sa.String(length=20), nullable=True),
        sa.Column('colors', sa.String(length=20), nullable=True),
        sa.PrimaryKeyConstraint('card_id')
    )
    op.create_index(op.f('ix_cards_name'), 'cards', ['name'], unique=False)

    # Decks, folders and collection
    op.create_table('decks',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('user_id', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('commander', sa.String(length=255), nullable=True),
        sa.Column('format', sa.String(length=50), nullable=False),
        sa.Column('import_job_id', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_decks_user_id'), 'decks', ['user_id'], unique=False)

    op.create_table('deck_cards',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('deck_id', sa.String(length=50), nullable=False),
        sa.Column('card_id', sa.String(length=64), nullable=False),
        sa.Column('card_name', sa.String(length=255), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('category', sa.String(length=50), nullable=False),
        sa.ForeignKeyConstraint(['deck_id'], ['decks.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_deck_cards_deck_id'), 'deck_cards', ['deck_id'], unique=False)

    op.create_table('folders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('parent_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['parent_id'], ['folders.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_folders_user_id'), 'folders', ['user_id'], unique=False)

    op.create_table('folder_decks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('folder_id', sa.Integer(), nullable=False),
        sa.Column('deck_id', sa.String(length=50), nullable=False),
        sa.ForeignKeyConstraint(['deck_id'], ['decks.id'], ),
        sa.ForeignKeyConstraint(['folder_id'], ['folders.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_folder_decks_folder_id'), 'folder_decks', ['folder_id'], unique=False)
    op.create_index(op.f('ix_folder_decks_deck_id'), 'folder_decks', ['deck_id'], unique=False)

    op.create_table('collection_cards',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=100), nullable=False),
        sa.Column('card_id', sa.String(length=64), nullable=False),
        sa.Column('card_name', sa.String(length=255), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_collection_cards_user_id'), 'collection_cards', ['user_id'], unique=False)
    op.create_index(op.f('ix_collection_cards_card_name'), 'collection_cards', ['card_name'], unique=False)

    # Import jobs
    op.create_table('import_jobs',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('user_id', sa.String(length=100), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('raw_data', sa.String(), nullable=True),
        sa.Column('source_url', sa.String(length=2000), nullable=True),
        sa.Column('file_name', sa.String(length=500), nullable=True),
        sa.Column('file_size', sa.Integer(), nullable=True),
        sa.Column('mime_type', sa.String(length=100), nullable=True),
        sa.Column('options', sa.JSON(), nullable=True),
        sa.Column('conflict_resolution', sa.String(length=20), nullable=False),
        sa.Column('progress', sa.Integer(), nullable=False),
        sa.Column('current_step', sa.String(length=50), nullable=True),
        sa.Column('total_steps', sa.Integer(), nullable=True),
        sa.Column('estimated_time_remaining', sa.Integer(), nullable=True),
        sa.Column('decks_found', sa.Integer(), nullable=False),
        sa.Column('decks_imported', sa.Integer(), nullable=False),
        sa.Column('cards_processed', sa.Integer(), nullable=False),
        sa.Column('cards_resolved', sa.Integer(), nullable=False),
        sa.Column('errors', sa.JSON(), nullable=True),
        sa.Column('warnings', sa.JSON(), nullable=True),
        sa.Column('processing_started_at', sa.DateTime(), nullable=True),
        sa.Column('processing_completed_at', sa.DateTime(), nullable=True),
        sa.Column('processing_time', sa.Integer(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('max_retries', sa.Integer(), nullable=False),
        sa.Column('next_retry_at', sa.DateTime(), nullable=True),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False),
        sa.Column('locked_by', sa.String(length=100), nullable=True),
        sa.Column('locked_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_import_jobs_user_id'), 'import_jobs', ['user_id'], unique=False)
    op.create_index(op.f('ix_import_jobs_source'), 'import_jobs', ['source'], unique=False)
    op.create_index(op.f('ix_import_jobs_status'), 'import_jobs', ['status'], unique=False)
    op.create_index(op.f('ix_import_jobs_priority'), 'import_jobs', ['priority'], unique=False)
    op.create_index(op.f('ix_import_jobs_next_retry_at'), 'import_jobs', ['next_retry_at'], unique=False)
    op.create_index(op.f('ix_import_jobs_created_at'), 'import_jobs', ['created_at'], unique=False)

    op.create_table('import_job_items',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('import_job_id', sa.String(length=50), nullable=False),
        sa.Column('item_index', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('raw_data', sa.String(), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=True),
        sa.Column('source_identifier', sa.String(length=500), nullable=True),
        sa.Column('deck_id', sa.String(length=50), nullable=True),
        sa.Column('deck_name', sa.String(length=255), nullable=True),
        sa.Column('parsed_deck', sa.JSON(), nullable=True),
        sa.Column('resolved_cards', sa.JSON(), nullable=True),
        sa.Column('cards_found', sa.Integer(), nullable=False),
        sa.Column('cards_imported', sa.Integer(), nullable=False),
        sa.Column('conflicts_checked', sa.Boolean(), nullable=False),
        sa.Column('errors', sa.JSON(), nullable=True),
        sa.Column('warnings', sa.JSON(), nullable=True),
        sa.Column('rollback_data', sa.JSON(), nullable=True),
        sa.Column('processing_started_at', sa.DateTime(), nullable=True),
        sa.Column('processing_completed_at', sa.DateTime(), nullable=True),
        sa.Column('processing_time', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['import_job_id'], ['import_jobs.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_import_job_items_import_job_id'), 'import_job_items', ['import_job_id'], unique=False)
    op.create_index(op.f('ix_import_job_items_status'), 'import_job_items', ['status'], unique=False)
    op.create_index(op.f('ix_import_job_items_deck_id'), 'import_job_items', ['deck_id'], unique=False)

    op.create_table('import_conflicts',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('import_job_id', sa.String(length=50), nullable=False),
        sa.Column('item_id', sa.String(length=50), nullable=True),
        sa.Column('conflict_type', sa.String(length=50), nullable=False),
        sa.Column('description', sa.String(length=1000), nullable=False),
        sa.Column('blocking', sa.Boolean(), nullable=False),
        sa.Column('existing_data', sa.JSON(), nullable=True),
        sa.Column('new_data', sa.JSON(), nullable=True),
        sa.Column('resolution', sa.String(length=20), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['import_job_id'], ['import_jobs.id'], ),
        sa.ForeignKeyConstraint(['item_id'], ['import_job_items.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_import_conflicts_import_job_id'), 'import_conflicts', ['import_job_id'], unique=False)
    op.create_index(op.f('ix_import_conflicts_resolution'), 'import_conflicts', ['resolution'], unique=False)

    op.create_table('import_previews',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('import_job_id', sa.String(length=50), nullable=False),
        sa.Column('preview_data', sa.JSON(), nullable=True),
        sa.Column('decks_preview', sa.JSON(), nullable=True),
        sa.Column('statistics', sa.JSON(), nullable=True),
        sa.Column('warnings', sa.JSON(), nullable=True),
        sa.Column('conflicts', sa.JSON(), nullable=True),
        sa.Column('is_approved', sa.Boolean(), nullable=False),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('consumed', sa.Boolean(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['import_job_id'], ['import_jobs.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('import_job_id')
    )
    op.create_index(op.f('ix_import_previews_expires_at'), 'import_previews', ['expires_at'], unique=False)

    op.create_table('import_history',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('user_id', sa.String(length=100), nullable=False),
        sa.Column('import_job_id', sa.String(length=50), nullable=False),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('description', sa.String(length=1000), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('can_rollback', sa.Boolean(), nullable=False),
        sa.Column('rollback_data', sa.JSON(), nullable=True),
        sa.Column('rolled_back_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['import_job_id'], ['import_jobs.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_import_history_user_id'), 'import_history', ['user_id'], unique=False)
    op.create_index(op.f('ix_import_history_import_job_id'), 'import_history', ['import_job_id'], unique=False)
    op.create_index(op.f('ix_import_history_created_at'), 'import_history', ['created_at'], unique=False)

    op.create_table('rollback_operations',
        sa.Column('id', sa.String(length=50), nullable=False),
        sa.Column('import_job_id', sa.String(length=50), nullable=False),
        sa.Column('history_id', sa.String(length=50), nullable=False),
        sa.Column('user_id', sa.String(length=100), nullable=False),
        sa.Column('description', sa.String(length=1000), nullable=False),
        sa.Column('rollback_data', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['history_id'], ['import_history.id'], ),
        sa.ForeignKeyConstraint(['import_job_id'], ['import_jobs.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_rollback_operations_import_job_id'), 'rollback_operations', ['import_job_id'], unique=False)
    op.create_index(op.f('ix_rollback_operations_history_id'), 'rollback_operations', ['history_id'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index(op.f('ix_rollback_operations_history_id'), table_name='rollback_operations')
    op.drop_index(op.f('ix_rollback_operations_import_job_id'), table_name='rollback_operations')
    op.drop_table('rollback_operations')
    op.drop_index(op.f('ix_import_history_created_at'), table_name='import_history')
    op.drop_index(op.f('ix_import_history_import_job_id'), table_name='import_history')
    op.drop_index(op.f('ix_import_history_user_id'), table_name='import_history')
    op.drop_table('import_history')
    op.drop_index(op.f('ix_import_previews_expires_at'), table_name='import_previews')
    op.drop_table('import_previews')
    op.drop_index(op.f('ix_import_conflicts_resolution'), table_name='import_conflicts')
    op.drop_index(op.f('ix_import_conflicts_import_job_id'), table_name='import_conflicts')
    op.drop_table('import_conflicts')
    op.drop_index(op.f('ix_import_job_items_deck_id'), table_name='import_job_items')
    op.drop_index(op.f('ix_import_job_items_status'), table_name='import_job_items')
    op.drop_index(op.f('ix_import_job_items_import_job_id'), table_name='import_job_items')
    op.drop_table('import_job_items')
    op.drop_index(op.f('ix_import_jobs_created_at'), table_name='import_jobs')
    op.drop_index(op.f('ix_import_jobs_next_retry_at'), table_name='import_jobs')
    op.drop_index(op.f('ix_import_jobs_priority'), table_name='import_jobs')
    op.drop_index(op.f('ix_import_jobs_status'), table_name='import_jobs')
    op.drop_index(op.f('ix_import_jobs_source'), table_name='import_jobs')
    op.drop_index(op.f('ix_import_jobs_user_id'), table_name='import_jobs')
    op.drop_table('import_jobs')
    op.drop_index(op.f('ix_collection_cards_card_name'), table_name='collection_cards')
    op.drop_index(op.f('ix_collection_cards_user_id'), table_name='collection_cards')
    op.drop_table('collection_cards')
    op.drop_index(op.f('ix_folder_decks_deck_id'), table_name='folder_decks')
    op.drop_index(op.f('ix_folder_decks_folder_id'), table_name='folder_decks')
    op.drop_table('folder_decks')
    op.drop_index(op.f('ix_folders_user_id'), table_name='folders')
    op.drop_table('folders')
    op.drop_index(op.f('ix_deck_cards_deck_id'), table_name='deck_cards')
    op.drop_table('deck_cards')
    op.drop_index(op.f('ix_decks_user_id'), table_name='decks')
    op.drop_table('decks')
    op.drop_index(op.f('ix_cards_name'), table_name='cards')
    op.drop_table('cards')
