"""Create the history log and the content tables.

- history_log: one row per insert/update/delete, id is the log sequence
- history_entries: old/new field values of each update
- pages / content_elements: content records with soft delete

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create history and content tables."""

    op.create_table(
        'history_log',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('action', sa.SmallInteger, nullable=False),  # 1 insert, 2 update, 3 delete
        sa.Column('table_name', sa.String(64), nullable=False),
        sa.Column('record_id', sa.Integer, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    )
    op.create_index('ix_history_log_record', 'history_log', ['table_name', 'record_id'])

    op.create_table(
        'history_entries',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('log_id', sa.Integer,
                  sa.ForeignKey('history_log.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('table_name', sa.String(64), nullable=False),
        sa.Column('record_id', sa.Integer, nullable=False),
        sa.Column('history_data', sa.JSON, nullable=True),
        sa.Column('field_list', sa.Text, nullable=False, server_default=''),
        sa.Column('snapshot', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    )
    op.create_index('ix_history_entries_log_id', 'history_entries', ['log_id'])
    op.create_index('ix_history_entries_record', 'history_entries', ['table_name', 'record_id'])

    op.create_table(
        'pages',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('pid', sa.Integer, nullable=False, server_default='0'),
        sa.Column('title', sa.String(255), nullable=False, server_default=''),
        sa.Column('nav_title', sa.String(255), nullable=True),
        sa.Column('slug', sa.String(2048), nullable=True),
        sa.Column('hidden', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('media', sa.JSON, nullable=True),
        sa.Column('deleted', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_pages_pid', 'pages', ['pid'])

    op.create_table(
        'content_elements',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('pid', sa.Integer, nullable=False, server_default='0'),
        sa.Column('ctype', sa.String(64), nullable=False, server_default='text'),
        sa.Column('header', sa.String(255), nullable=False, server_default=''),
        sa.Column('bodytext', sa.Text, nullable=True),
        sa.Column('sorting', sa.Integer, nullable=False, server_default='0'),
        sa.Column('hidden', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('image', sa.JSON, nullable=True),
        sa.Column('deleted', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_content_elements_pid', 'content_elements', ['pid'])


def downgrade() -> None:
    """Drop history and content tables."""
    op.drop_index('ix_content_elements_pid', table_name='content_elements')
    op.drop_table('content_elements')

    op.drop_index('ix_pages_pid', table_name='pages')
    op.drop_table('pages')

    op.drop_index('ix_history_entries_record', table_name='history_entries')
    op.drop_index('ix_history_entries_log_id', table_name='history_entries')
    op.drop_table('history_entries')

    op.drop_index('ix_history_log_record', table_name='history_log')
    op.drop_table('history_log')
