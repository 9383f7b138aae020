from flask import Flask, request, jsonify, abort, g, render_template, send_from_directory
from flask import make_response
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from werkzeug.security import check_password_hash
from werkzeug.exceptions import HTTPException
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from datetime import datetime, date, timezone
from functools import wraps
from sqlalchemy.exc import IntegrityError
import sqlalchemy as sa
import io
import logging
import math
import mimetypes
import os
import re
import time
import uuid
import pandas as pd
import pdfkit  # pastikan sudah install pdfkit dan wkhtmltopdf


# --- Logging ---
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(message)s"
)
security_logger = logging.getLogger('security')

app = Flask(__name__)

# Konfigurasi dasar
basedir = os.path.abspath(os.path.dirname(__file__))

SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    # Di production SECRET_KEY wajib diset, fallback hanya untuk development lokal
    if os.getenv("FLASK_ENV") == "production":
        raise RuntimeError("SECRET_KEY tidak ditemukan di environment.")
    SECRET_KEY = "dev-secret-key"
app.config['SECRET_KEY'] = SECRET_KEY


def get_database_uri():
    url = os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URI")
    if url:
        if url.startswith("postgres://"):
            url = "postgresql://" + url[len("postgres://"):]
        return url
    return "sqlite:///" + os.path.join(basedir, "perizinan.db")


db_url = get_database_uri()
app.config['SQLALCHEMY_DATABASE_URI'] = db_url
search_path = os.getenv("DB_SEARCH_PATH")
if search_path and db_url.startswith("postgres"):
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        "connect_args": {"options": f"-csearch_path={search_path}"}
    }
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# Object store foto santri
app.config['UPLOAD_FOLDER'] = os.getenv("UPLOAD_FOLDER") or os.path.join(basedir, 'static/uploads')
app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024

db = SQLAlchemy(app)

# Inisialisasi Flask-Migrate
migrate = Migrate(app, db)


# --- Konstanta ---
TOKEN_MAX_AGE_HOURS = int(os.getenv("TOKEN_MAX_AGE_HOURS", "8"))
TOKEN_MAX_AGE_SECONDS = TOKEN_MAX_AGE_HOURS * 60 * 60
TOKEN_SALT = "perizinan-santri-auth"

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 32
USERNAME_REGEX = re.compile(r'^[a-zA-Z0-9_]{3,32}$')
LOGIN_ATTEMPT_LIMIT = 8
LOGIN_ATTEMPT_WINDOW_SECONDS = 60
RATE_LIMIT_MAX_ENTRIES = 5000
MAX_INPUT_LENGTH = 1000
IMAGE_CACHE_MAX_AGE = 3600
SEARCH_RESULT_LIMIT = 10
PAGINATION_LIMIT = 5
MAX_PAGE = 10000
MAX_DB_INT = 2**31 - 1  # batas kolom INTEGER
MAX_FILE_SIZE = 5 * 1024 * 1024

PERAN_ADMIN_PERIZINAN = 'admin_perizinan'
PERAN_ADMIN_DATASANTRI = 'admin_datasantri'
PERAN_NDALEM = 'ndalem'

# Dashboard yang dibuka client setelah login, per peran
DASHBOARD_PERAN = {
    PERAN_ADMIN_PERIZINAN: 'perizinan',
    PERAN_ADMIN_DATASANTRI: 'datasantri',
    PERAN_NDALEM: 'ndalem',
}

JENIS_KELAMIN = ('L', 'P')
STATUS_SANTRI = ('santri', 'alumni', 'pengurus', 'pengabdi')
STATUS_BOLEH_IZIN = ('santri', 'pengurus', 'pengabdi')

KEPUTUSAN_MENUNGGU = 'menunggu'
KEPUTUSAN_DISETUJUI = 'disetujui'
KEPUTUSAN_DITOLAK = 'ditolak'

STATUS_BELUM_KEMBALI = 'Belum Kembali'
STATUS_TEPAT_WAKTU = 'Tepat Waktu'
STATUS_TERLAMBAT = 'Terlambat'

SANKSI_BELUM_SELESAI = 'Belum Selesai'
SANKSI_SELESAI = 'Selesai'

KODE_SURAT = os.getenv("KODE_SURAT", "IZN/E-NAJAH")
NAMA_PONDOK = os.getenv("NAMA_PONDOK", "PONDOK PESANTREN E-NAJAH")
ALAMAT_PONDOK = os.getenv("ALAMAT_PONDOK", "Jl. Raya Pahlawan No. 123, Sumbersuko, Jawa Timur")
KOTA_SURAT = os.getenv("KOTA_SURAT", "Sumbersuko")

NAMA_HARI = ['Senin', 'Selasa', 'Rabu', 'Kamis', 'Jumat', 'Sabtu', 'Minggu']
NAMA_BULAN = [
    'Januari', 'Februari', 'Maret', 'April', 'Mei', 'Juni',
    'Juli', 'Agustus', 'September', 'Oktober', 'November', 'Desember',
]
ANGKA_ROMAWI = [
    (1000, 'M'), (900, 'CM'), (500, 'D'), (400, 'CD'),
    (100, 'C'), (90, 'XC'), (50, 'L'), (40, 'XL'),
    (10, 'X'), (9, 'IX'), (5, 'V'), (4, 'IV'), (1, 'I'),
]


# --- Model Database ---
class Pengguna(db.Model):
    __tablename__ = 'pengguna'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(32), unique=True, nullable=False)
    password = db.Column(db.String(255), nullable=False)
    peran = db.Column(db.String(30), nullable=False)  # admin_perizinan / admin_datasantri / ndalem
    nama_lengkap = db.Column(db.String(100), nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'password': self.password,
            'peran': self.peran,
            'nama_lengkap': self.nama_lengkap,
        }


class Santri(db.Model):
    __tablename__ = 'santri'

    id = db.Column(db.Integer, primary_key=True)
    nama_santri = db.Column(db.String(100), nullable=False)
    foto = db.Column(db.String(255), nullable=True)  # key file di UPLOAD_FOLDER
    jenis_kelamin = db.Column(db.String(1), nullable=True)  # L / P
    status_santri = db.Column(db.String(20), default='santri')  # santri/alumni/pengurus/pengabdi
    alamat = db.Column(db.String(255), nullable=True)

    # Orang tua / wali
    nama_ibu = db.Column(db.String(100), nullable=True)
    kontak_ibu = db.Column(db.String(50), nullable=True)
    nama_ayah = db.Column(db.String(100), nullable=True)
    kontak_ayah = db.Column(db.String(50), nullable=True)
    nama_wali = db.Column(db.String(100), nullable=True)
    kontak_wali = db.Column(db.String(50), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'nama_santri': self.nama_santri,
            'foto': self.foto,
            'jenis_kelamin': self.jenis_kelamin,
            'status_santri': self.status_santri,
            'alamat': self.alamat,
            'nama_ibu': self.nama_ibu,
            'kontak_ibu': self.kontak_ibu,
            'nama_ayah': self.nama_ayah,
            'kontak_ayah': self.kontak_ayah,
            'nama_wali': self.nama_wali,
            'kontak_wali': self.kontak_wali,
            'created_at': serialize_value(self.created_at),
        }


class Pengajuan(db.Model):
    __tablename__ = 'pengajuan'

    id_pengajuan = db.Column('ID_Pengajuan', db.Integer, primary_key=True)
    id_santri = db.Column('ID_santri', db.Integer, db.ForeignKey('santri.id'), nullable=False)
    nama_pengajuan = db.Column(db.String(200), nullable=False)
    keterangan = db.Column(db.Text, nullable=True)
    pengaju = db.Column(db.String(32), nullable=True)  # username admin perizinan
    keputusan = db.Column(db.String(20), nullable=False, default=KEPUTUSAN_MENUNGGU)
    disetujui_oleh = db.Column(db.String(32), nullable=True)  # username ndalem
    tanggal_pengajuan = db.Column(db.DateTime, default=datetime.utcnow)
    tanggal_keputusan = db.Column(db.DateTime, nullable=True)

    santri = db.relationship('Santri', backref=db.backref('pengajuan', lazy=True))


class Perizinan(db.Model):
    __tablename__ = 'perizinan'

    id_perizinan = db.Column('ID_Perizinan', db.Integer, primary_key=True)
    id_santri = db.Column('ID_Santri', db.Integer, db.ForeignKey('santri.id'), nullable=False)
    # satu perizinan untuk satu pengajuan yang disetujui
    id_pengajuan = db.Column('ID_Pengajuan', db.Integer, db.ForeignKey('pengajuan.ID_Pengajuan'),
                             unique=True, nullable=False)
    tanggal_kembali = db.Column('Tanggal_Kembali', db.DateTime, nullable=False)
    status_kembali = db.Column('Status_Kembali', db.String(20), nullable=False,
                               default=STATUS_BELUM_KEMBALI)
    tanggal_aktual_kembali = db.Column('Tanggal_Aktual_Kembali', db.DateTime, nullable=True)
    keterlambatan_jam = db.Column('Keterlambatan_Jam', db.Integer, nullable=False, default=0)
    status_sanksi = db.Column('Status_Sanksi', db.String(20), nullable=True)

    santri = db.relationship('Santri', backref=db.backref('perizinan', lazy=True))
    pengajuan = db.relationship('Pengajuan', backref=db.backref('perizinan', uselist=False))


class Sanksi(db.Model):
    __tablename__ = 'sanksi'

    id_sanksi = db.Column('ID_Sanksi', db.Integer, primary_key=True)
    min_keterlambatan_jam = db.Column('Min_Keterlambatan_Jam', db.Integer, nullable=False)
    keterangan_sanksi = db.Column('Keterangan_Sanksi', db.Text, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self):
        return {
            'ID_Sanksi': self.id_sanksi,
            'Min_Keterlambatan_Jam': self.min_keterlambatan_jam,
            'Keterangan_Sanksi': self.keterangan_sanksi,
            'is_active': 1 if self.is_active else 0,
        }


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('pengguna.id'), nullable=True)
    action = db.Column(db.String(100), nullable=False)
    entity_type = db.Column(db.String(100), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    details = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


# --- Helper audit ---
def log_action(action, entity_type, entity_id, details=None, user_id=None):
    """
    Catat aksi ke audit_log. Entry hanya ditambahkan ke session;
    commit dilakukan pemanggil bersama perubahan datanya.
    """
    if user_id is None and 'pengguna' in g:
        user_id = g.pengguna.get('id')
    entry = AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details
    )
    db.session.add(entry)
    return entry


# --- Helper umum ---
def serialize_value(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def sanitize_input(value, max_length=MAX_INPUT_LENGTH):
    """Buang karakter berbahaya (< > & ' " `), potong, lalu trim."""
    if not value or not isinstance(value, str):
        return ''
    return re.sub(r'[<>&\'"`]', '', value)[:max_length].strip()


def is_valid_username(username):
    return bool(USERNAME_REGEX.match(username or ''))


def is_valid_password(password):
    return PASSWORD_MIN_LENGTH <= len(password or '') <= PASSWORD_MAX_LENGTH


def is_valid_id(value):
    if isinstance(value, bool):
        return False
    try:
        return 0 < int(str(value).strip()) <= MAX_DB_INT
    except (TypeError, ValueError):
        return False


def mask_sensitive_data(obj):
    if not obj:
        return obj
    masked = dict(obj)
    masked.pop('password', None)
    masked.pop('SECRET_KEY', None)
    return masked


def get_client_ip():
    return request.headers.get("CF-Connecting-IP") or request.remote_addr or "local"


def get_json_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return {}
    return body


def get_page_arg():
    page = request.args.get('page', 1, type=int)
    return min(max(1, page), MAX_PAGE)


def to_roman(number):
    """
    Mengubah angka menjadi angka Romawi, dipakai untuk bulan nomor surat.
    Contoh: 10 -> 'X', 12 -> 'XII'.
    """
    result = ''
    for value, numeral in ANGKA_ROMAWI:
        while number >= value:
            result += numeral
            number -= value
    return result


def format_letter_number(id_perizinan, tanggal=None, kode_surat=None):
    """Nomor surat: <urut 3 digit>/<kode>/<bulan romawi>/<tahun>, mis. 007/IZN/E-NAJAH/X/2026."""
    tanggal = tanggal or datetime.now()
    kode_surat = kode_surat or KODE_SURAT
    return f"{int(id_perizinan):03d}/{kode_surat}/{to_roman(tanggal.month)}/{tanggal.year}"


def format_indonesian_date(value, with_weekday=False):
    if not value:
        return ""
    teks = f"{value.day} {NAMA_BULAN[value.month - 1]} {value.year}"
    if with_weekday:
        teks = f"{NAMA_HARI[value.weekday()]}, {teks}"
    return teks


def parse_return_date(value):
    """
    Parse tanggal kembali dari client: "YYYY-MM-DD", "YYYY-MM-DDTHH:MM"
    atau ISO dengan zona waktu. Hasil selalu naive UTC, None jika tidak valid.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def calculate_lateness(tanggal_kembali, waktu_aktual):
    """
    Hitung status kembali dan keterlambatan dalam jam (dibulatkan ke atas).
    Kembali tepat pada jadwal dihitung tepat waktu.
    """
    if waktu_aktual > tanggal_kembali:
        selisih_detik = (waktu_aktual - tanggal_kembali).total_seconds()
        return STATUS_TERLAMBAT, int(math.ceil(selisih_detik / 3600))
    return STATUS_TEPAT_WAKTU, 0


def get_pdfkit_config():
    """
    Kembalikan konfigurasi pdfkit dengan wkhtmltopdf.
    - Gunakan env WKHTMLTOPDF_PATH jika diset.
    - Jika wkhtmltopdf tidak ditemukan, kembalikan None agar pemanggil bisa memberi pesan error.
    """
    wkhtmltopdf_path = os.getenv("WKHTMLTOPDF_PATH")
    try:
        if wkhtmltopdf_path:
            if os.path.isfile(wkhtmltopdf_path):
                return pdfkit.configuration(wkhtmltopdf=wkhtmltopdf_path)
            return None
        # Autodetect di PATH
        return pdfkit.configuration()
    except (IOError, OSError):
        return None


# --- Rate limit login ---
class LoginRateLimiter:
    """
    Pembatas percobaan login per IP, disimpan di memori proses.
    Map dikosongkan jika sudah melebihi max_entries.
    """

    def __init__(self, limit=LOGIN_ATTEMPT_LIMIT, window_seconds=LOGIN_ATTEMPT_WINDOW_SECONDS,
                 max_entries=RATE_LIMIT_MAX_ENTRIES):
        self.limit = limit
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self.attempts = {}

    def check(self, ip, now=None):
        if len(self.attempts) > self.max_entries:
            self.attempts.clear()
        now = time.time() if now is None else now

        entry = self.attempts.get(ip)
        if entry is None or now - entry['last_attempt'] > self.window_seconds:
            self.attempts[ip] = {'count': 1, 'last_attempt': now}
            return True
        if entry['count'] >= self.limit:
            return False

        entry['count'] += 1
        entry['last_attempt'] = now
        return True

    def record_failure(self, ip):
        entry = self.attempts.get(ip)
        if entry:
            entry['count'] += 1

    def reset(self, ip):
        self.attempts.pop(ip, None)


login_limiter = LoginRateLimiter()


# --- Token & otorisasi ---
def get_token_serializer():
    return URLSafeTimedSerializer(app.config['SECRET_KEY'], salt=TOKEN_SALT)


def create_token(user):
    now = int(time.time())
    payload = {
        'id': user.id,
        'username': user.username,
        'peran': user.peran,
        'nama_lengkap': user.nama_lengkap,
        'iat': now,
        'exp': now + TOKEN_MAX_AGE_SECONDS,
    }
    return get_token_serializer().dumps(payload)


def read_token(token):
    return get_token_serializer().loads(token, max_age=TOKEN_MAX_AGE_SECONDS)


def token_required(*peran_diizinkan):
    """
    Wajib bearer token yang valid. Jika peran_diizinkan diisi,
    hanya peran tersebut yang boleh mengakses.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            skema, _, token = request.headers.get('Authorization', '').partition(' ')
            token = token.strip()
            if skema.lower() != 'bearer' or not token:
                abort(401, description="Unauthorized")
            try:
                payload = read_token(token)
            except SignatureExpired:
                abort(401, description="Token kedaluwarsa, silakan login kembali.")
            except BadSignature:
                abort(401, description="Unauthorized")

            if peran_diizinkan and payload.get('peran') not in peran_diizinkan:
                security_logger.warning(
                    "Akses ditolak - user=%s peran=%s endpoint=%s",
                    payload.get('username'), payload.get('peran'), request.endpoint
                )
                abort(403, description="Tidak memiliki akses.")

            g.pengguna = payload
            return f(*args, **kwargs)
        return decorated_function
    return decorator


# --- Error handler ---
@app.errorhandler(HTTPException)
def handle_http_exception(error):
    return jsonify({"error": error.description}), error.code


@app.errorhandler(Exception)
def handle_unexpected_error(error):
    app.logger.exception("[API ERROR] %s", error)
    db.session.rollback()
    return jsonify({"error": "Internal Server Error"}), 500


# --- Foto santri ---
def save_photo(foto):
    """
    Simpan upload foto ke UPLOAD_FOLDER dan kembalikan key-nya.
    None jika tidak ada file yang dipilih.
    """
    if foto is None or not foto.filename:
        return None

    data = foto.read()
    if not data or len(data) > MAX_FILE_SIZE:
        abort(400, description="File invalid")

    file_name = re.sub(r'[^a-zA-Z0-9.-]', '', foto.filename)
    file_name = sanitize_input(re.sub(r'\.{2,}', '.', file_name))
    foto_key = f"{uuid.uuid4()}-{file_name}"

    upload_folder = app.config['UPLOAD_FOLDER']
    os.makedirs(upload_folder, exist_ok=True)
    with open(os.path.join(upload_folder, foto_key), 'wb') as handle:
        handle.write(data)
    return foto_key


@app.route('/api/images/<path:key>')
def get_image(key):
    key = sanitize_input(key)
    if not key or '..' in key or '//' in key:
        abort(400, description="Invalid key")

    content_type = mimetypes.guess_type(key)[0] or "image/png"
    response = send_from_directory(app.config['UPLOAD_FOLDER'], key, mimetype=content_type)
    response.headers['Cache-Control'] = f"public, max-age={IMAGE_CACHE_MAX_AGE}"
    return response


# --- ROUTES: AUTH ---
@app.route('/api/login', methods=['POST'])
def login():
    client_ip = get_client_ip()
    if not login_limiter.check(client_ip):
        security_logger.warning("Rate limit login - IP: %s", client_ip)
        return jsonify({"error": "Terlalu banyak percobaan. Coba lagi nanti."}), 429

    body = get_json_body()
    username = body.get('username')
    password = body.get('password')

    if not username or not password:
        login_limiter.record_failure(client_ip)
        abort(400, description="Username dan password diperlukan")

    username = sanitize_input(username)
    password = sanitize_input(password)

    if not is_valid_username(username) or not is_valid_password(password):
        login_limiter.record_failure(client_ip)
        abort(400, description="Format kredensial tidak valid")

    user = Pengguna.query.filter_by(username=username).first()
    if not user or not check_password_hash(user.password, password):
        login_limiter.record_failure(client_ip)
        security_logger.warning("Login gagal - IP: %s, User: %s", client_ip, username)
        return jsonify({"error": "Username atau password salah"}), 401

    login_limiter.reset(client_ip)

    dashboard = DASHBOARD_PERAN.get(user.peran)
    if not dashboard:
        security_logger.warning("Login dengan peran tidak dikenal - User: %s, Peran: %s", username, user.peran)
        abort(403, description="Peran pengguna tidak dikenali")

    log_action('login', 'pengguna', user.id, f'ip={client_ip}', user_id=user.id)
    db.session.commit()

    return jsonify({
        "data": {
            "token": create_token(user),
            "user": mask_sensitive_data(user.to_dict()),
            "dashboard": dashboard,
        },
        "message": "Login berhasil"
    }), 200


@app.route('/api/admin/profile')
@token_required()
def profile():
    return jsonify({"data": mask_sensitive_data(g.pengguna), "message": "OK"}), 200


# --- ROUTES: DATA SANTRI ---
@app.route('/api/admin/santri/stats')
@token_required(PERAN_ADMIN_DATASANTRI)
def santri_stats():
    aktif = Santri.query.filter_by(status_santri='santri')
    return jsonify({
        "data": {
            "putra": aktif.filter_by(jenis_kelamin='L').count(),
            "putri": aktif.filter_by(jenis_kelamin='P').count(),
            "totalSantri": aktif.count(),
            "totalAlumni": Santri.query.filter_by(status_santri='alumni').count(),
            "totalPengurus": Santri.query.filter_by(status_santri='pengurus').count(),
            "totalPengabdi": Santri.query.filter_by(status_santri='pengabdi').count(),
        },
        "message": "Statistik berhasil"
    }), 200


def read_santri_form(santri, partial=False):
    """Isi field santri dari form multipart; partial=True hanya mengubah field yang dikirim."""
    form = request.form

    if not partial or 'nama_santri' in form:
        nama_santri = sanitize_input(form.get('nama_santri'))
        if not nama_santri:
            abort(400, description="Nama wajib")
        santri.nama_santri = nama_santri

    if not partial or 'jenis_kelamin' in form:
        jenis_kelamin = sanitize_input(form.get('jenis_kelamin')).upper()
        if jenis_kelamin not in JENIS_KELAMIN:
            abort(400, description="Jenis kelamin harus L atau P")
        santri.jenis_kelamin = jenis_kelamin

    if not partial or 'status_santri' in form:
        status_santri = sanitize_input(form.get('status_santri')).lower() or 'santri'
        if status_santri not in STATUS_SANTRI:
            abort(400, description="Status santri tidak valid")
        santri.status_santri = status_santri

    for field in ('alamat', 'nama_ibu', 'kontak_ibu', 'nama_ayah',
                  'kontak_ayah', 'nama_wali', 'kontak_wali'):
        if not partial or field in form:
            setattr(santri, field, sanitize_input(form.get(field)))


@app.route('/api/admin/santri/create', methods=['POST'])
@token_required(PERAN_ADMIN_DATASANTRI)
def create_santri():
    santri = Santri()
    read_santri_form(santri)
    santri.foto = save_photo(request.files.get('foto'))

    db.session.add(santri)
    db.session.flush()
    log_action('create_santri', 'santri', santri.id, santri.nama_santri)
    db.session.commit()

    return jsonify({"data": {"id": santri.id}, "message": "Berhasil"}), 201


@app.route('/api/admin/santri/search')
@token_required(PERAN_ADMIN_DATASANTRI)
def search_santri():
    query = sanitize_input(request.args.get('q', ''))
    page = get_page_arg()

    pagination = (Santri.query
                  .filter(Santri.nama_santri.like(f"%{query}%"))
                  .order_by(Santri.id)
                  .paginate(page=page, per_page=PAGINATION_LIMIT, error_out=False))

    return jsonify({
        "data": {
            "results": [s.to_dict() for s in pagination.items],
            "pagination": {
                "currentPage": page,
                "totalPages": pagination.pages,
                "totalCount": pagination.total,
                "limit": PAGINATION_LIMIT,
            },
        },
        "message": "OK"
    }), 200


def get_santri_or_404(santri_id):
    if not is_valid_id(santri_id):
        abort(400, description="ID Invalid")
    return Santri.query.get_or_404(int(santri_id), description="Data santri tidak ditemukan")


@app.route('/api/admin/santri/<santri_id>')
@token_required(PERAN_ADMIN_DATASANTRI, PERAN_ADMIN_PERIZINAN, PERAN_NDALEM)
def santri_detail(santri_id):
    santri = get_santri_or_404(santri_id)
    return jsonify({"data": santri.to_dict(), "message": "OK"}), 200


@app.route('/api/admin/santri/<santri_id>', methods=['PUT'])
@token_required(PERAN_ADMIN_DATASANTRI)
def update_santri(santri_id):
    santri = get_santri_or_404(santri_id)
    read_santri_form(santri, partial=True)

    foto_baru = save_photo(request.files.get('foto'))
    if foto_baru:
        santri.foto = foto_baru

    log_action('update_santri', 'santri', santri.id)
    db.session.commit()
    return jsonify({"data": santri.to_dict(), "message": "Data santri berhasil diperbarui"}), 200


# --- ROUTES: PERIZINAN ---
@app.route('/api/admin/perizinan/search-santri')
@token_required(PERAN_ADMIN_PERIZINAN)
def perizinan_search_santri():
    query = sanitize_input(request.args.get('q', ''))
    if not query:
        return jsonify({"data": {"results": []}, "message": "Empty"}), 200

    hasil = (Santri.query
             .filter(Santri.nama_santri.like(f"%{query}%"),
                     Santri.status_santri.in_(STATUS_BOLEH_IZIN))
             .order_by(Santri.nama_santri)
             .limit(SEARCH_RESULT_LIMIT)
             .all())
    results = [{
        'id': s.id,
        'nama_santri': s.nama_santri,
        'status_santri': s.status_santri,
        'jenis_kelamin': s.jenis_kelamin,
    } for s in hasil]
    return jsonify({"data": {"results": results}, "message": "OK"}), 200


@app.route('/api/admin/perizinan/create', methods=['POST'])
@token_required(PERAN_ADMIN_PERIZINAN)
def create_pengajuan():
    body = get_json_body()
    santri_id = body.get('santriId')
    nama_pengajuan = sanitize_input(body.get('namaPengajuan'))

    if not is_valid_id(santri_id) or not nama_pengajuan:
        abort(400, description="Santri dan nama pengajuan wajib diisi")

    santri = Santri.query.get_or_404(int(santri_id), description="Data santri tidak ditemukan")

    pengajuan = Pengajuan(
        id_santri=santri.id,
        nama_pengajuan=nama_pengajuan,
        keterangan=sanitize_input(body.get('keterangan')),
        pengaju=g.pengguna['username'],
    )
    db.session.add(pengajuan)
    db.session.flush()
    log_action('create_pengajuan', 'pengajuan', pengajuan.id_pengajuan, f'santri={santri.id}')
    db.session.commit()

    return jsonify({"data": {"pengajuanId": pengajuan.id_pengajuan}, "message": "OK"}), 201


@app.route('/api/admin/perizinan/pending')
@token_required(PERAN_NDALEM)
def pending_pengajuan():
    rows = (db.session.query(Pengajuan, Santri)
            .join(Santri, Pengajuan.id_santri == Santri.id)
            .filter(Pengajuan.keputusan == KEPUTUSAN_MENUNGGU)
            .order_by(Pengajuan.id_pengajuan.desc())
            .all())
    results = [{
        'ID_Pengajuan': p.id_pengajuan,
        'nama_pengajuan': p.nama_pengajuan,
        'keterangan': p.keterangan,
        'pengaju': p.pengaju,
        'tanggal_pengajuan': serialize_value(p.tanggal_pengajuan),
        'nama_santri': s.nama_santri,
        'status_santri': s.status_santri,
    } for p, s in rows]
    return jsonify({"data": {"results": results}, "message": "OK"}), 200


@app.route('/api/admin/perizinan/update-status', methods=['POST'])
@token_required(PERAN_NDALEM)
def update_status_pengajuan():
    body = get_json_body()
    pengajuan_id = body.get('pengajuanId')
    new_status = body.get('newStatus')

    if not is_valid_id(pengajuan_id) or new_status not in (KEPUTUSAN_DISETUJUI, KEPUTUSAN_DITOLAK):
        abort(400, description="Data keputusan tidak valid")

    tanggal_kembali = None
    if new_status == KEPUTUSAN_DISETUJUI:
        tanggal_kembali = parse_return_date(body.get('tanggalKembali'))
        if not tanggal_kembali:
            abort(400, description="Tanggal kembali wajib diisi dengan format yang benar")

    pengajuan = Pengajuan.query.get_or_404(int(pengajuan_id), description="Pengajuan tidak ditemukan")
    approver = g.pengguna['username']

    # Hanya pengajuan yang masih menunggu yang boleh diputuskan
    updated = (Pengajuan.query
               .filter(Pengajuan.id_pengajuan == pengajuan.id_pengajuan,
                       Pengajuan.keputusan == KEPUTUSAN_MENUNGGU)
               .update({
                   Pengajuan.keputusan: new_status,
                   Pengajuan.disetujui_oleh: approver if new_status == KEPUTUSAN_DISETUJUI else None,
                   Pengajuan.tanggal_keputusan: datetime.utcnow(),
               }, synchronize_session=False))
    if not updated:
        db.session.rollback()
        abort(409, description="Pengajuan sudah diputuskan sebelumnya")

    if new_status == KEPUTUSAN_DISETUJUI:
        db.session.add(Perizinan(
            id_santri=pengajuan.id_santri,
            id_pengajuan=pengajuan.id_pengajuan,
            tanggal_kembali=tanggal_kembali,
        ))

    log_action(f'{new_status}_pengajuan', 'pengajuan', pengajuan.id_pengajuan,
               f'oleh={approver}')
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        abort(409, description="Perizinan untuk pengajuan ini sudah ada")

    return jsonify({"message": "OK"}), 200


def perizinan_rows():
    """Semua pengajuan beserta santri, perizinan (jika ada) dan nama penyetuju."""
    return (db.session.query(Pengajuan, Santri, Perizinan, Pengguna.nama_lengkap)
            .join(Santri, Pengajuan.id_santri == Santri.id)
            .outerjoin(Perizinan, Perizinan.id_pengajuan == Pengajuan.id_pengajuan)
            .outerjoin(Pengguna, Pengajuan.disetujui_oleh == Pengguna.username)
            .order_by(Pengajuan.id_pengajuan.desc())
            .all())


@app.route('/api/admin/perizinan/all')
@token_required(PERAN_ADMIN_PERIZINAN, PERAN_NDALEM)
def all_perizinan():
    results = []
    for p, s, i, nama_penyetuju in perizinan_rows():
        results.append({
            'ID_Pengajuan': p.id_pengajuan,
            'nama_pengajuan': p.nama_pengajuan,
            'keterangan': p.keterangan,
            'pengaju': p.pengaju,
            'keputusan': p.keputusan,
            'disetujui_oleh': p.disetujui_oleh,
            'nama_penyetuju': nama_penyetuju,
            'nama_santri': s.nama_santri,
            'foto': s.foto,
            'alamat': s.alamat,
            'ID_Perizinan': i.id_perizinan if i else None,
            'Tanggal_Kembali': serialize_value(i.tanggal_kembali) if i else None,
            'Status_Kembali': i.status_kembali if i else None,
            'Keterlambatan_Jam': i.keterlambatan_jam if i else None,
        })
    return jsonify({"data": {"results": results}, "message": "OK"}), 200


@app.route('/api/admin/perizinan/aktif')
@token_required(PERAN_ADMIN_PERIZINAN)
def perizinan_aktif():
    rows = (db.session.query(Perizinan, Santri, Pengajuan)
            .join(Santri, Perizinan.id_santri == Santri.id)
            .join(Pengajuan, Perizinan.id_pengajuan == Pengajuan.id_pengajuan)
            .filter(Perizinan.status_kembali == STATUS_BELUM_KEMBALI)
            .order_by(Perizinan.tanggal_kembali.asc())
            .all())
    results = [{
        'ID_Perizinan': i.id_perizinan,
        'Tanggal_Kembali': serialize_value(i.tanggal_kembali),
        'nama_santri': s.nama_santri,
        'nama_pengajuan': p.nama_pengajuan,
    } for i, s, p in rows]
    return jsonify({"data": {"results": results}, "message": "OK"}), 200


def get_perizinan_or_404(perizinan_id):
    if not is_valid_id(perizinan_id):
        abort(400, description="ID Invalid")
    return Perizinan.query.get_or_404(int(perizinan_id), description="Data tidak ditemukan")


@app.route('/api/admin/perizinan/tandai-kembali', methods=['POST'])
@token_required(PERAN_ADMIN_PERIZINAN)
def tandai_kembali():
    izin = get_perizinan_or_404(get_json_body().get('perizinanId'))

    waktu_aktual = datetime.utcnow()
    status, telat_jam = calculate_lateness(izin.tanggal_kembali, waktu_aktual)

    # Keterlambatan dihitung sekali, saat santri pertama kali ditandai kembali
    updated = (Perizinan.query
               .filter(Perizinan.id_perizinan == izin.id_perizinan,
                       Perizinan.status_kembali == STATUS_BELUM_KEMBALI)
               .update({
                   Perizinan.status_kembali: status,
                   Perizinan.tanggal_aktual_kembali: waktu_aktual,
                   Perizinan.keterlambatan_jam: telat_jam,
                   Perizinan.status_sanksi: SANKSI_BELUM_SELESAI if status == STATUS_TERLAMBAT else None,
               }, synchronize_session=False))
    if not updated:
        db.session.rollback()
        abort(409, description="Santri sudah ditandai kembali")

    log_action('tandai_kembali', 'perizinan', izin.id_perizinan,
               f'status={status} keterlambatan={telat_jam}')
    db.session.commit()

    return jsonify({
        "message": "OK",
        "data": {"status": status, "keterlambatan": telat_jam, "waktu": serialize_value(waktu_aktual)}
    }), 200


@app.route('/api/admin/perizinan/terlambat')
@token_required(PERAN_ADMIN_PERIZINAN)
def perizinan_terlambat():
    # Sanksi aktif dengan ambang tertinggi yang sudah terlampaui
    sanksi_deskripsi = (sa.select(Sanksi.keterangan_sanksi)
                        .where(Sanksi.is_active == sa.true(),
                               Sanksi.min_keterlambatan_jam <= Perizinan.keterlambatan_jam)
                        .order_by(Sanksi.min_keterlambatan_jam.desc())
                        .limit(1)
                        .correlate(Perizinan)
                        .scalar_subquery())

    rows = (db.session.query(Perizinan, Santri, sanksi_deskripsi.label('Sanksi_Deskripsi'))
            .join(Santri, Perizinan.id_santri == Santri.id)
            .filter(Perizinan.status_kembali == STATUS_TERLAMBAT)
            .order_by(Perizinan.tanggal_aktual_kembali.desc())
            .all())
    results = [{
        'ID_Perizinan': i.id_perizinan,
        'Tanggal_Aktual_Kembali': serialize_value(i.tanggal_aktual_kembali),
        'Keterlambatan_Jam': i.keterlambatan_jam,
        'Status_Sanksi': i.status_sanksi,
        'ID_Santri': s.id,
        'nama_santri': s.nama_santri,
        'foto': s.foto,
        'status_santri': s.status_santri,
        'Sanksi_Deskripsi': deskripsi,
    } for i, s, deskripsi in rows]

    return jsonify({"data": {"results": results}, "message": "Data sanksi berhasil diambil"}), 200


@app.route('/api/admin/perizinan/sanksi-selesai', methods=['POST'])
@token_required(PERAN_ADMIN_PERIZINAN)
def sanksi_selesai():
    izin = get_perizinan_or_404(get_json_body().get('perizinanId'))

    if izin.status_kembali != STATUS_TERLAMBAT:
        abort(409, description="Santri ini tidak memiliki sanksi")
    if izin.status_sanksi == SANKSI_SELESAI:
        abort(409, description="Sanksi sudah diselesaikan")

    izin.status_sanksi = SANKSI_SELESAI
    log_action('sanksi_selesai', 'perizinan', izin.id_perizinan)
    db.session.commit()

    return jsonify({"message": "Sanksi berhasil diselesaikan"}), 200


def build_surat_data(izin):
    pengajuan = izin.pengajuan
    penyetuju = None
    if pengajuan.disetujui_oleh:
        penyetuju = Pengguna.query.filter_by(username=pengajuan.disetujui_oleh).first()

    tanggal_cetak = datetime.now()
    return {
        'ID_Perizinan': izin.id_perizinan,
        'nama_santri': izin.santri.nama_santri,
        'alamat': izin.santri.alamat,
        'foto': izin.santri.foto,
        'Tanggal_Kembali': serialize_value(izin.tanggal_kembali),
        'disetujui_oleh': (penyetuju.nama_lengkap if penyetuju and penyetuju.nama_lengkap
                           else pengajuan.disetujui_oleh),
        'nomor_surat': format_letter_number(izin.id_perizinan, tanggal_cetak),
        'tanggal_kembali_formatted': (format_indonesian_date(izin.tanggal_kembali, with_weekday=True)
                                      or "Tidak Ditentukan"),
        'tanggal_cetak': format_indonesian_date(tanggal_cetak),
    }


@app.route('/api/admin/perizinan/<perizinan_id>/surat')
@token_required(PERAN_ADMIN_PERIZINAN, PERAN_NDALEM)
def surat_izin(perizinan_id):
    izin = get_perizinan_or_404(perizinan_id)
    surat = build_surat_data(izin)

    if request.args.get('format') != 'pdf':
        return jsonify({"data": surat, "message": "OK"}), 200

    foto_path = None
    if surat['foto']:
        candidate = os.path.join(app.config['UPLOAD_FOLDER'], surat['foto'])
        if os.path.isfile(candidate):
            foto_path = candidate

    rendered = render_template(
        'surat_izin_a5.html',
        surat=surat,
        foto_path=foto_path,
        nama_pondok=NAMA_PONDOK,
        alamat_pondok=ALAMAT_PONDOK,
        kota_surat=KOTA_SURAT,
    )
    config = get_pdfkit_config()
    if not config:
        abort(503, description="Cetak PDF gagal: wkhtmltopdf tidak ditemukan. "
                               "Install wkhtmltopdf dan/atau set environment WKHTMLTOPDF_PATH.")
    options = {'page-size': 'A5', 'encoding': 'UTF-8', 'enable-local-file-access': ''}
    pdf = pdfkit.from_string(rendered, False, configuration=config, options=options)

    response = make_response(pdf)
    response.headers['Content-Disposition'] = (
        f"attachment; filename=surat_izin_{izin.id_perizinan:03d}.pdf"
    )
    response.headers['Content-Type'] = 'application/pdf'
    return response


EXPORT_COLUMNS = [
    'ID Pengajuan', 'Nama Santri', 'Jenis Izin', 'Keterangan', 'Pengaju',
    'Keputusan', 'Disetujui Oleh', 'Tanggal Kembali', 'Status Kembali',
    'Tanggal Aktual Kembali', 'Keterlambatan (Jam)', 'Status Sanksi',
]


@app.route('/api/admin/perizinan/export/<string:file_format>')
@token_required(PERAN_ADMIN_PERIZINAN, PERAN_NDALEM)
def export_perizinan(file_format):
    if file_format not in ('excel', 'csv'):
        abort(400, description="Format tidak didukung.")

    data = [{
        'ID Pengajuan': p.id_pengajuan,
        'Nama Santri': s.nama_santri,
        'Jenis Izin': p.nama_pengajuan,
        'Keterangan': p.keterangan,
        'Pengaju': p.pengaju,
        'Keputusan': p.keputusan,
        'Disetujui Oleh': nama_penyetuju or p.disetujui_oleh,
        'Tanggal Kembali': i.tanggal_kembali if i else None,
        'Status Kembali': i.status_kembali if i else None,
        'Tanggal Aktual Kembali': i.tanggal_aktual_kembali if i else None,
        'Keterlambatan (Jam)': i.keterlambatan_jam if i else None,
        'Status Sanksi': i.status_sanksi if i else None,
    } for p, s, i, nama_penyetuju in perizinan_rows()]
    df = pd.DataFrame(data, columns=EXPORT_COLUMNS)

    if file_format == 'excel':
        output = io.BytesIO()
        with pd.ExcelWriter(output, engine='xlsxwriter') as writer:
            df.to_excel(writer, index=False, sheet_name='Perizinan')
        output.seek(0)
        response = make_response(output.read())
        response.headers['Content-Disposition'] = 'attachment; filename=rekap_perizinan.xlsx'
        response.headers['Content-Type'] = ('application/vnd.openxmlformats-'
                                            'officedocument.spreadsheetml.sheet')
        return response

    response = make_response(df.to_csv(index=False))
    response.headers['Content-Disposition'] = 'attachment; filename=rekap_perizinan.csv'
    response.headers['Content-Type'] = 'text/csv; charset=utf-8'
    return response


# --- ROUTES: ATURAN SANKSI ---
def read_sanksi_body():
    body = get_json_body()
    min_jam = body.get('minJam')
    keterangan = sanitize_input(body.get('keterangan'))
    if not is_valid_id(min_jam) or not keterangan:
        abort(400, description="Minimal jam keterlambatan dan keterangan sanksi wajib diisi")
    return int(str(min_jam).strip()), keterangan


def get_sanksi_or_404(sanksi_id):
    if not is_valid_id(sanksi_id):
        abort(400, description="ID Invalid")
    sanksi = Sanksi.query.filter_by(id_sanksi=int(sanksi_id), is_active=True).first()
    if not sanksi:
        abort(404, description="Sanksi tidak ditemukan")
    return sanksi


@app.route('/api/admin/sanksi/list')
@token_required(PERAN_ADMIN_PERIZINAN, PERAN_NDALEM)
def list_sanksi():
    sanksi = (Sanksi.query.filter_by(is_active=True)
              .order_by(Sanksi.min_keterlambatan_jam.asc())
              .all())
    return jsonify({"data": {"results": [s.to_dict() for s in sanksi]}, "message": "OK"}), 200


@app.route('/api/admin/sanksi/create', methods=['POST'])
@token_required(PERAN_ADMIN_PERIZINAN, PERAN_NDALEM)
def create_sanksi():
    min_jam, keterangan = read_sanksi_body()
    sanksi = Sanksi(min_keterlambatan_jam=min_jam, keterangan_sanksi=keterangan)
    db.session.add(sanksi)
    db.session.flush()
    log_action('create_sanksi', 'sanksi', sanksi.id_sanksi, f'min_jam={min_jam}')
    db.session.commit()
    return jsonify({"data": sanksi.to_dict(), "message": "OK"}), 201


@app.route('/api/admin/sanksi/update/<sanksi_id>', methods=['PUT'])
@token_required(PERAN_ADMIN_PERIZINAN, PERAN_NDALEM)
def update_sanksi(sanksi_id):
    sanksi = get_sanksi_or_404(sanksi_id)
    min_jam, keterangan = read_sanksi_body()

    sanksi.min_keterlambatan_jam = min_jam
    sanksi.keterangan_sanksi = keterangan
    log_action('update_sanksi', 'sanksi', sanksi.id_sanksi, f'min_jam={min_jam}')
    db.session.commit()
    return jsonify({"data": sanksi.to_dict(), "message": "OK"}), 200


@app.route('/api/admin/sanksi/delete/<sanksi_id>', methods=['DELETE'])
@token_required(PERAN_ADMIN_PERIZINAN, PERAN_NDALEM)
def delete_sanksi(sanksi_id):
    sanksi = get_sanksi_or_404(sanksi_id)
    sanksi.is_active = False  # soft delete
    log_action('delete_sanksi', 'sanksi', sanksi.id_sanksi)
    db.session.commit()
    return jsonify({"message": "OK"}), 200


# --- ROUTES: AUDIT ---
@app.route('/api/admin/audit-logs')
@token_required(PERAN_NDALEM)
def audit_logs():
    page = get_page_arg()
    per_page = request.args.get('per_page', 50, type=int)
    if per_page not in (50, 100, 200):
        per_page = 50

    pagination = AuditLog.query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )
    results = [{
        'id': log.id,
        'user_id': log.user_id,
        'action': log.action,
        'entity_type': log.entity_type,
        'entity_id': log.entity_id,
        'details': log.details,
        'created_at': serialize_value(log.created_at),
    } for log in pagination.items]
    return jsonify({
        "data": {
            "results": results,
            "pagination": {
                "currentPage": page,
                "totalPages": pagination.pages,
                "totalCount": pagination.total,
                "limit": per_page,
            },
        },
        "message": "OK"
    }), 200


if __name__ == "__main__":
    # Pastikan semua tabel dibuat (hanya berjalan saat app dijalankan langsung)
    with app.app_context():
        db.create_all()

    app.run(
        debug=True,
        host="127.0.0.1",  # hanya bisa diakses dari laptop sendiri
        port=5001          # pakai port aman, kecil kemungkinan konflik
    )
