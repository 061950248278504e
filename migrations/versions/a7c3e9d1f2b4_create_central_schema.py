"""create central schema (schools, super_admins, audit_events)

Revision ID: a7c3e9d1f2b4
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a7c3e9d1f2b4'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'schools',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('code', sa.String(length=16), nullable=False),
        sa.Column('school_type', sa.String(length=32), nullable=False),
        sa.Column('affiliation_board', sa.String(length=32), nullable=False),
        sa.Column('established_year', sa.Integer(), nullable=False),
        sa.Column('principal_name', sa.String(length=255), nullable=True),
        sa.Column('principal_email', sa.String(length=320), nullable=True),
        sa.Column('contact_phone', sa.String(length=32), nullable=True),
        sa.Column('contact_email', sa.String(length=320), nullable=True),
        sa.Column('website', sa.String(length=255), nullable=True),
        sa.Column('street', sa.String(length=255), nullable=True),
        sa.Column('city', sa.String(length=128), nullable=True),
        sa.Column('state', sa.String(length=128), nullable=True),
        sa.Column('pincode', sa.String(length=16), nullable=True),
        sa.Column('country', sa.String(length=64), nullable=False),
        sa.Column('current_academic_year', sa.String(length=16), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('database_name', sa.String(length=128), nullable=False),
        sa.Column('database_created', sa.Boolean(), nullable=False),
        sa.Column('database_created_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code'),
        sa.UniqueConstraint('database_name'),
    )
    op.create_index('idx_schools_active', 'schools', ['is_active'], unique=False)
    op.create_index('idx_schools_name', 'schools', ['name'], unique=False)

    op.create_table(
        'super_admins',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('last_login', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )

    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('request_id', sa.String(length=64), nullable=True),
        sa.Column('actor_id', sa.String(length=64), nullable=True),
        sa.Column('actor_role', sa.String(length=32), nullable=True),
        sa.Column('action', sa.String(length=128), nullable=False),
        sa.Column('entity_type', sa.String(length=128), nullable=True),
        sa.Column('entity_id', sa.String(length=128), nullable=True),
        sa.Column('reason', sa.String(length=512), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('client_ip', sa.String(length=64), nullable=True),
        sa.Column('school_code', sa.String(length=16), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )


def downgrade() -> None:
    op.drop_table('audit_events')
    op.drop_table('super_admins')
    op.drop_index('idx_schools_name', table_name='schools')
    op.drop_index('idx_schools_active', table_name='schools')
    op.drop_table('schools')
