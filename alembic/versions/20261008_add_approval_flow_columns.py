"""add approval flow: template approval flag, rejection reason and reviewer columns

Revision ID: 20261008_add_approval_flow_columns
Revises: 20261001_initial_contract_schema
Create Date: 2026-10-08
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261008_add_approval_flow_columns'
down_revision = '20261001_initial_contract_schema'
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table('contract_templates') as batch_op:
        batch_op.add_column(
            sa.Column('requires_approval', sa.Boolean(), server_default=sa.text('true'), nullable=False)
        )

    with op.batch_alter_table('contracts') as batch_op:
        batch_op.add_column(sa.Column('rejection_reason', sa.Text(), nullable=True))
        batch_op.add_column(sa.Column('reviewed_by', sa.String(), nullable=True))
        batch_op.add_column(sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table('contracts') as batch_op:
        batch_op.drop_column('reviewed_at')
        batch_op.drop_column('reviewed_by')
        batch_op.drop_column('rejection_reason')

    with op.batch_alter_table('contract_templates') as batch_op:
        batch_op.drop_column('requires_approval')
