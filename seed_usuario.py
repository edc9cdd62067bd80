import argparse
import sqlite3

import database
from auth import ROLES, hash_password_pbkdf2


def criar_usuario(email: str, nome: str, senha: str, role: str = "admin"):
    email = email.strip().lower()
    database.ensure_tables()

    conn = sqlite3.connect(database.DB_PATH)
    cursor = conn.cursor()

    # Verifica se já existe
    cursor.execute("SELECT id FROM users WHERE LOWER(email)=? LIMIT 1", (email,))
    existe = cursor.fetchone()

    if existe:
        print(f"Usuário {email} já existe (id={existe[0]})")
        conn.close()
        return existe[0]

    cursor.execute(
        "INSERT INTO users (email, password, role, name, can_access_refueling) VALUES (?, ?, ?, ?, 1)",
        (email, hash_password_pbkdf2(senha), role, nome),
    )
    user_id = cursor.lastrowid
    conn.commit()
    conn.close()
    print(f"Usuário {email} criado ({role})")
    return user_id


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Cria um usuário inicial no banco frota_obras.")
    parser.add_argument("--email", default="admin@frota.local")
    parser.add_argument("--nome", default="Administrador")
    parser.add_argument("--senha", default="1234")
    parser.add_argument("--role", default="admin", choices=ROLES)
    args = parser.parse_args()
    criar_usuario(args.email, args.nome, args.senha, args.role)
