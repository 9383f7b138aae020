import os
import sys
import uuid
from datetime import datetime
from pathlib import Path

import pytest
import sqlalchemy as sa
from sqlalchemy import text
from werkzeug.security import generate_password_hash


DATABASE_URL = os.getenv("DATABASE_URL")
USE_POSTGRES = bool(DATABASE_URL and DATABASE_URL.startswith("postgres"))

SCHEMA_NAME = f"test_schema_{uuid.uuid4().hex}"
TEST_PASSWORD = "rahasia123"

PENGGUNA_TEST = [
    ("admin_perizinan", "Admin Perizinan", "admin_perizinan"),
    ("admin_datasantri", "Admin Data Santri", "admin_datasantri"),
    ("ndalem", "KH. Ahmad Ndalem", "ndalem"),
]


@pytest.fixture(scope="session")
def app_instance(tmp_path_factory):
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
    engine = None
    if USE_POSTGRES:
        engine = sa.create_engine(DATABASE_URL)
        with engine.connect() as conn:
            conn.execute(text(f'CREATE SCHEMA "{SCHEMA_NAME}"'))
            conn.commit()
        os.environ["DB_SEARCH_PATH"] = SCHEMA_NAME
        os.environ["SQLALCHEMY_DATABASE_URI"] = DATABASE_URL
    else:
        db_path = tmp_path_factory.mktemp("db") / "perizinan_test.db"
        os.environ.pop("DATABASE_URL", None)
        os.environ["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{db_path}"

    os.environ["SECRET_KEY"] = "test-secret"
    os.environ["UPLOAD_FOLDER"] = str(tmp_path_factory.mktemp("uploads"))

    try:
        if "app" in sys.modules:
            del sys.modules["app"]

        from app import app, db

        app.config.update(TESTING=True)
        with app.app_context():
            db.create_all()

        yield app
    finally:
        if "app" in locals():
            with app.app_context():
                db.session.remove()
                db.engine.dispose()
        if engine is not None:
            with engine.connect() as conn:
                conn.execute(text(f'DROP SCHEMA IF EXISTS "{SCHEMA_NAME}" CASCADE'))
                conn.commit()


@pytest.fixture(scope="session")
def password_hash():
    return generate_password_hash(TEST_PASSWORD, method='pbkdf2:sha256')


@pytest.fixture()
def client(app_instance):
    return app_instance.test_client()


@pytest.fixture(autouse=True)
def clean_db(app_instance, tmp_path):
    from app import db, login_limiter

    with app_instance.app_context():
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
    login_limiter.attempts.clear()
    app_instance.config['UPLOAD_FOLDER'] = str(tmp_path / "uploads")
    yield


@pytest.fixture()
def pengguna(app_instance, password_hash):
    """Tiga akun sesuai peran; mengembalikan dict username -> id."""
    from app import db, Pengguna

    ids = {}
    with app_instance.app_context():
        for username, nama_lengkap, peran in PENGGUNA_TEST:
            user = Pengguna(username=username, password=password_hash,
                            peran=peran, nama_lengkap=nama_lengkap)
            db.session.add(user)
            db.session.flush()
            ids[username] = user.id
        db.session.commit()
    return ids


@pytest.fixture()
def auth_headers(app_instance, pengguna):
    """auth_headers('ndalem') -> header Authorization untuk akun tersebut."""
    from app import Pengguna, create_token

    def _headers(username):
        with app_instance.app_context():
            user = Pengguna.query.filter_by(username=username).first()
            return {"Authorization": f"Bearer {create_token(user)}"}

    return _headers


@pytest.fixture()
def make_santri(app_instance):
    from app import db, Santri

    def _make(nama_santri="Ahmad Fauzi", jenis_kelamin="L", status_santri="santri", **fields):
        with app_instance.app_context():
            santri = Santri(nama_santri=nama_santri, jenis_kelamin=jenis_kelamin,
                            status_santri=status_santri, **fields)
            db.session.add(santri)
            db.session.commit()
            return santri.id

    return _make


@pytest.fixture()
def make_perizinan(app_instance, make_santri):
    """Buat pengajuan yang sudah disetujui beserta perizinannya; mengembalikan ID_Perizinan."""
    from app import db, Pengajuan, Perizinan

    def _make(tanggal_kembali, santri_id=None, disetujui_oleh="ndalem"):
        santri_id = santri_id or make_santri()
        with app_instance.app_context():
            pengajuan = Pengajuan(
                id_santri=santri_id,
                nama_pengajuan="Pulang",
                keterangan="Acara keluarga",
                pengaju="admin_perizinan",
                keputusan="disetujui",
                disetujui_oleh=disetujui_oleh,
                tanggal_keputusan=datetime.utcnow(),
            )
            db.session.add(pengajuan)
            db.session.flush()
            izin = Perizinan(
                id_santri=santri_id,
                id_pengajuan=pengajuan.id_pengajuan,
                tanggal_kembali=tanggal_kembali,
            )
            db.session.add(izin)
            db.session.commit()
            return izin.id_perizinan

    return _make
