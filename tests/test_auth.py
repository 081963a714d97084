from datetime import datetime, timedelta, timezone

import jwt

import app as app_module
from database import db, User


def register(client, **overrides):
    body = {"nombre": "Lucía", "apellidos": "Quispe", "email": "lucia@test.local", "password": "secreta1"}
    body.update(overrides)
    return client.post("/api/auth/registro", json=body)


def test_register_creates_client_and_returns_token(app, client):
    r = register(client)
    assert r.status_code == 201
    body = r.get_json()
    assert body["usuario"]["rol"] == "cliente"
    assert body["usuario"]["ciudad"] == "Lima"
    assert "password" not in body["usuario"]

    perfil = client.get("/api/auth/perfil", headers={"Authorization": f"Bearer {body['token']}"})
    assert perfil.status_code == 200
    assert perfil.get_json()["usuario"]["email"] == "lucia@test.local"


def test_register_rejects_duplicates_and_bad_input(client):
    assert register(client).status_code == 201
    dup = register(client, email="LUCIA@test.local")
    assert dup.status_code == 400
    assert dup.get_json()["error"] == "El email ya está registrado"

    bad = register(client, email="no-es-email", password="123")
    assert bad.status_code == 400
    fields = {e["field"] for e in bad.get_json()["errors"]}
    assert fields == {"email", "password"}


def test_login_stamps_last_login(app, client):
    register(client)
    r = client.post("/api/auth/login", json={"email": "lucia@test.local", "password": "secreta1"})
    assert r.status_code == 200
    token = r.get_json()["token"]
    claims = jwt.decode(token, app_module.JWT_SECRET, algorithms=["HS256"])
    assert claims["rol"] == "cliente"

    with app.app_context():
        assert User.query.filter_by(email="lucia@test.local").one().ultimo_login is not None


def test_login_failures(app, client):
    register(client)
    wrong = client.post("/api/auth/login", json={"email": "lucia@test.local", "password": "otra-cosa"})
    assert wrong.status_code == 401
    assert wrong.get_json()["error"] == "Credenciales inválidas"

    with app.app_context():
        User.query.filter_by(email="lucia@test.local").one().activo = False
        db.session.commit()
    inactive = client.post("/api/auth/login", json={"email": "lucia@test.local", "password": "secreta1"})
    assert inactive.status_code == 401


def test_missing_invalid_and_expired_tokens(app, client, cliente):
    r = client.get("/api/auth/perfil")
    assert r.status_code == 401
    assert r.get_json()["error"] == "No autorizado, token no proporcionado"

    r = client.get("/api/auth/perfil", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401
    assert r.get_json()["error"] == "Token inválido"

    expired = jwt.encode(
        {"id": cliente["id"], "rol": "cliente", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
        app_module.JWT_SECRET, algorithm="HS256"
    )
    r = client.get("/api/auth/perfil", headers={"Authorization": f"Bearer {expired}"})
    assert r.status_code == 401
    assert r.get_json()["error"] == "Token expirado"


def test_token_of_deactivated_user_is_rejected(app, client, cliente):
    with app.app_context():
        db.session.get(User, cliente["id"]).activo = False
        db.session.commit()
    r = client.get("/api/auth/perfil", headers=cliente["headers"])
    assert r.status_code == 401
    assert r.get_json()["error"] == "Usuario no encontrado o inactivo"


def test_change_password(client, cliente):
    wrong = client.patch("/api/auth/actualizar-password",
                         json={"password_actual": "nope", "password_nuevo": "nuevo123"},
                         headers=cliente["headers"])
    assert wrong.status_code == 400

    ok = client.patch("/api/auth/actualizar-password",
                      json={"password_actual": "secret123", "password_nuevo": "nuevo123"},
                      headers=cliente["headers"])
    assert ok.status_code == 200

    login = client.post("/api/auth/login", json={"email": cliente["email"], "password": "nuevo123"})
    assert login.status_code == 200


def capture_reset_tokens(monkeypatch):
    sent = {}
    monkeypatch.setattr(app_module, "send_password_reset", lambda user, token: sent.__setitem__(user.email, token))
    return sent


def test_password_reset_flow(client, cliente, monkeypatch):
    sent = capture_reset_tokens(monkeypatch)

    unknown = client.post("/api/auth/olvide-password", json={"email": "nadie@test.local"})
    known = client.post("/api/auth/olvide-password", json={"email": cliente["email"]})
    assert unknown.status_code == known.status_code == 200
    assert unknown.get_json() == known.get_json()
    assert "reset_token" not in known.get_json()
    assert list(sent) == [cliente["email"]]
    token = sent[cliente["email"]]

    bad = client.post("/api/auth/reset-password", json={"token": token + "x", "password_nuevo": "cambiada1"})
    assert bad.status_code == 400

    ok = client.post("/api/auth/reset-password", json={"token": token, "password_nuevo": "cambiada1"})
    assert ok.status_code == 200
    assert client.post("/api/auth/login", json={"email": cliente["email"], "password": "cambiada1"}).status_code == 200


def test_reset_request_never_exposes_token_for_seeded_admin(client, monkeypatch):
    sent = capture_reset_tokens(monkeypatch)
    client.post("/api/system/init")

    r = client.post("/api/auth/olvide-password", json={"email": "admin@veneburger.local"})
    assert r.status_code == 200
    body = r.get_data(as_text=True)
    token = sent["admin@veneburger.local"]
    assert token not in body
    assert "reset_token" not in r.get_json()

    login = client.post("/api/auth/login", json={"email": "admin@veneburger.local", "password": "admin12345"})
    assert login.status_code == 200


def test_non_json_body_rejected(client):
    r = client.post("/api/auth/login", data="email=x", content_type="application/x-www-form-urlencoded")
    assert r.status_code == 400
    assert r.get_json()["error"] == "Se esperaba un cuerpo JSON"
