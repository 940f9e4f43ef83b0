"""initial contract schema: stored files, templates, contracts, audit logs

Revision ID: 20261001_initial_contract_schema
Revises:
Create Date: 2026-10-01
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261001_initial_contract_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'stored_files',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('mime_type', sa.String(length=255), nullable=False),
        sa.Column('data', sa.LargeBinary(), nullable=False),
        sa.Column('size', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'contract_templates',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('variables', sa.JSON(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('logo_url', sa.String(), nullable=True),
        sa.Column('master_document_id', sa.String(), sa.ForeignKey('stored_files.id'), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'contracts',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('template_id', sa.String(), sa.ForeignKey('contract_templates.id'), nullable=False),
        sa.Column('created_by', sa.String(), nullable=False),
        sa.Column('client_name', sa.String(length=255), nullable=False),
        sa.Column('variable_values', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('signing_token', sa.String(length=128), nullable=True),
        sa.Column('short_link_code', sa.String(length=50), nullable=True),
        sa.Column('verification_code_hash', sa.String(length=255), nullable=True),
        sa.Column('signature_artifact_id', sa.String(), sa.ForeignKey('stored_files.id'), nullable=True),
        sa.Column('signature_ip', sa.String(length=64), nullable=True),
        sa.Column('signed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('signing_token', name='uq_contracts_signing_token'),
        sa.UniqueConstraint('short_link_code', name='uq_contracts_short_link_code'),
    )
    op.create_index('ix_contracts_template_id', 'contracts', ['template_id'])
    op.create_index('ix_contracts_created_by', 'contracts', ['created_by'])
    op.create_index('ix_contracts_status', 'contracts', ['status'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('actor_id', sa.String(), nullable=True),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('resource_id', sa.String(length=255), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])


def downgrade() -> None:
    op.drop_index('ix_audit_logs_action', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('ix_contracts_status', table_name='contracts')
    op.drop_index('ix_contracts_created_by', table_name='contracts')
    op.drop_index('ix_contracts_template_id', table_name='contracts')
    op.drop_table('contracts')
    op.drop_table('contract_templates')
    op.drop_table('stored_files')
