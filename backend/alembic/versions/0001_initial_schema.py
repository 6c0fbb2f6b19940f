"""Initial schema

Revision ID: 0001
Revises: 
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create documents table; assignments and sessions share it, keyed by collection
    op.create_table('documents',
        sa.Column('collection', sa.String(length=64), nullable=False),
        sa.Column('doc_id', sa.String(length=255), nullable=False),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('collection', 'doc_id')
    )
    op.create_index('ix_documents_collection', 'documents', ['collection'])


def downgrade() -> None:
    op.drop_index('ix_documents_collection', table_name='documents')
    op.drop_table('documents')
