# seed_pengguna.py
import os

from app import (app, db, Pengguna, PERAN_ADMIN_PERIZINAN, PERAN_ADMIN_DATASANTRI, PERAN_NDALEM,
                 is_valid_password, sanitize_input)
from werkzeug.security import generate_password_hash

DEFAULT_PENGGUNA = [
    ("admin_perizinan", "Admin Perizinan", PERAN_ADMIN_PERIZINAN),
    ("admin_datasantri", "Admin Data Santri", PERAN_ADMIN_DATASANTRI),
    ("ndalem", "Ndalem", PERAN_NDALEM),
]


def is_hashed(pw):
    if not isinstance(pw, str):
        return False
    # Werkzeug: pbkdf2:sha256:<iterations>$<salt>$<hash> atau scrypt:...
    return pw.startswith("pbkdf2:") or pw.startswith("scrypt:")


def is_valid_seed_password(password):
    """Password harus lolos aturan yang sama dengan form login."""
    return bool(password) and sanitize_input(password) == password and is_valid_password(password)


def seed_pengguna(password):
    if not is_valid_seed_password(password):
        raise ValueError("SEED_PASSWORD harus 8-32 karakter tanpa < > & ' \" `")

    created = 0
    for username, nama_lengkap, peran in DEFAULT_PENGGUNA:
        if Pengguna.query.filter_by(username=username).first():
            print(f"Pengguna {username} sudah ada.")
            continue
        db.session.add(Pengguna(
            username=username,
            password=generate_password_hash(password, method='pbkdf2:sha256'),
            peran=peran,
            nama_lengkap=nama_lengkap,
        ))
        created += 1
    db.session.commit()
    print(f"{created} pengguna telah dibuat.")
    return created


def hash_plaintext_passwords():
    """Ubah password lama yang masih plaintext menjadi hash Werkzeug."""
    updated = 0
    for user in Pengguna.query.all():
        if not is_hashed(user.password):
            user.password = generate_password_hash(str(user.password), method='pbkdf2:sha256')
            updated += 1
    db.session.commit()
    print(f"Updated {updated} password(s) to hashed form.")
    return updated


if __name__ == '__main__':
    seed_password = os.getenv("SEED_PASSWORD")
    if not is_valid_seed_password(seed_password):
        raise SystemExit("Set SEED_PASSWORD (8-32 karakter, tanpa < > & ' \" `) sebelum menjalankan seed.")

    with app.app_context():
        db.create_all()
        seed_pengguna(seed_password)
        hash_plaintext_passwords()
