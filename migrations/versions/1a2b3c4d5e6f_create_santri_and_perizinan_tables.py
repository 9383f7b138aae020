"""create pengguna, santri, pengajuan and perizinan tables

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2025-10-06 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '1a2b3c4d5e6f'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'pengguna',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(length=32), nullable=False, unique=True),
        sa.Column('password', sa.String(length=255), nullable=False),
        sa.Column('peran', sa.String(length=30), nullable=False),
        sa.Column('nama_lengkap', sa.String(length=100), nullable=True),
    )

    op.create_table(
        'santri',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('nama_santri', sa.String(length=100), nullable=False),
        sa.Column('foto', sa.String(length=255), nullable=True),
        sa.Column('jenis_kelamin', sa.String(length=1), nullable=True),
        sa.Column('status_santri', sa.String(length=20), nullable=True, server_default='santri'),
        sa.Column('alamat', sa.String(length=255), nullable=True),
        sa.Column('nama_ibu', sa.String(length=100), nullable=True),
        sa.Column('kontak_ibu', sa.String(length=50), nullable=True),
        sa.Column('nama_ayah', sa.String(length=100), nullable=True),
        sa.Column('kontak_ayah', sa.String(length=50), nullable=True),
        sa.Column('nama_wali', sa.String(length=100), nullable=True),
        sa.Column('kontak_wali', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.text("CURRENT_TIMESTAMP")),
    )

    op.create_table(
        'pengajuan',
        sa.Column('ID_Pengajuan', sa.Integer(), primary_key=True),
        sa.Column('ID_santri', sa.Integer(), sa.ForeignKey('santri.id'), nullable=False),
        sa.Column('nama_pengajuan', sa.String(length=200), nullable=False),
        sa.Column('keterangan', sa.Text(), nullable=True),
        sa.Column('pengaju', sa.String(length=32), nullable=True),
        sa.Column('keputusan', sa.String(length=20), nullable=False, server_default='menunggu'),
        sa.Column('disetujui_oleh', sa.String(length=32), nullable=True),
        sa.Column('tanggal_pengajuan', sa.DateTime(), nullable=True, server_default=sa.text("CURRENT_TIMESTAMP")),
    )

    op.create_table(
        'perizinan',
        sa.Column('ID_Perizinan', sa.Integer(), primary_key=True),
        sa.Column('ID_Santri', sa.Integer(), sa.ForeignKey('santri.id'), nullable=False),
        sa.Column('ID_Pengajuan', sa.Integer(), sa.ForeignKey('pengajuan.ID_Pengajuan'), nullable=False),
        sa.Column('Tanggal_Kembali', sa.DateTime(), nullable=False),
        sa.Column('Status_Kembali', sa.String(length=20), nullable=False, server_default='Belum Kembali'),
        sa.Column('Tanggal_Aktual_Kembali', sa.DateTime(), nullable=True),
        sa.Column('Keterlambatan_Jam', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.UniqueConstraint('ID_Pengajuan', name='uq_perizinan_pengajuan'),
    )


def downgrade():
    op.drop_table('perizinan')
    op.drop_table('pengajuan')
    op.drop_table('santri')
    op.drop_table('pengguna')
