import os
import sys
import tempfile
from decimal import Decimal

import pytest

_TMP = tempfile.mkdtemp(prefix="veneburger-tests-")

os.environ["APP_ENV"] = "testing"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ["REPORT_SAMPLE_DATA"] = "true"
os.environ["UPLOAD_PATH"] = os.path.join(_TMP, "uploads")
os.environ["LOG_DIR"] = os.path.join(_TMP, "logs")

# ensure project root is on sys.path when running from tests/ folder
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app import app as flask_app, issue_token  # noqa: E402
from database import (  # noqa: E402
    db, User, Category, Product, Crema, DiningTable, PaymentMethod
)


@pytest.fixture
def app():
    flask_app.config["TESTING"] = True
    with flask_app.app_context():
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(app, rol="cliente", email=None, password="secret123", activo=True, **extra):
    with app.app_context():
        u = User(
            nombre=extra.pop("nombre", rol.capitalize()),
            email=email or f"{rol}@test.local",
            rol=rol,
            activo=activo,
            **extra
        )
        u.set_password(password)
        db.session.add(u)
        db.session.commit()
        return {"id": u.id, "email": u.email, "headers": {"Authorization": f"Bearer {issue_token(u)}"}}


@pytest.fixture
def admin(app):
    return make_user(app, "admin")


@pytest.fixture
def cliente(app):
    return make_user(app, "cliente", telefono="999111222")


@pytest.fixture
def courier(app):
    return make_user(app, "repartidor")


@pytest.fixture
def catalog(app):
    with app.app_context():
        cat = Category(codigo="HAMB", nombre="Hamburguesas", orden=1)
        db.session.add(cat)
        db.session.flush()
        burger = Product(categoria_id=cat.id, codigo="H001", nombre="Clásica", precio=Decimal("10.00"))
        off_menu = Product(categoria_id=cat.id, codigo="H002", nombre="Agotada", precio=Decimal("12.50"), disponible=False)
        mayo = Crema(nombre="Mayonesa", precio=Decimal("0.50"))
        aji = Crema(nombre="Ají", precio=Decimal("0.50"), disponible=False)
        cash = PaymentMethod(nombre="efectivo", requiere_confirmacion=False)
        yape = PaymentMethod(nombre="yape", requiere_confirmacion=True)
        retired = PaymentMethod(nombre="cheque", activo=False)
        mesa = DiningTable(numero=1, capacidad=4)
        db.session.add_all([burger, off_menu, mayo, aji, cash, yape, retired, mesa])
        db.session.commit()
        return {
            "categoria": cat.id,
            "producto": burger.id,
            "producto_no_disponible": off_menu.id,
            "crema": mayo.id,
            "crema_no_disponible": aji.id,
            "efectivo": cash.id,
            "yape": yape.id,
            "metodo_inactivo": retired.id,
            "mesa": mesa.id,
        }
