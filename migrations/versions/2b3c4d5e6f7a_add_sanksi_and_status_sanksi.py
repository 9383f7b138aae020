"""add sanksi rules and Status_Sanksi on perizinan

Revision ID: 2b3c4d5e6f7a
Revises: 1a2b3c4d5e6f
Create Date: 2025-11-14 20:30:00.000000
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '2b3c4d5e6f7a'
down_revision = '1a2b3c4d5e6f'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'sanksi',
        sa.Column('ID_Sanksi', sa.Integer(), primary_key=True),
        sa.Column('Min_Keterlambatan_Jam', sa.Integer(), nullable=False),
        sa.Column('Keterangan_Sanksi', sa.Text(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    with op.batch_alter_table('perizinan', schema=None) as batch_op:
        batch_op.add_column(sa.Column('Status_Sanksi', sa.String(length=20), nullable=True))

    # perizinan terlambat yang sudah ada dianggap belum menjalani sanksi
    op.execute("UPDATE perizinan SET \"Status_Sanksi\" = 'Belum Selesai' WHERE \"Status_Kembali\" = 'Terlambat'")


def downgrade():
    with op.batch_alter_table('perizinan', schema=None) as batch_op:
        batch_op.drop_column('Status_Sanksi')

    op.drop_table('sanksi')
