import pytest

from database import db, Order, DiningTable


def place(client, headers, catalog, tipo="delivery"):
    body = {
        "tipo": tipo,
        "productos": [{"producto_id": catalog["producto"], "cantidad": 1}],
        "metodo_pago_id": catalog["efectivo"],
    }
    if tipo == "delivery":
        body.update({"direccion_entrega": "Jr. Puno 456", "telefono_contacto": "912345678"})
    if tipo == "local":
        body["mesa_id"] = catalog["mesa"]
    r = client.post("/api/pedidos", json=body, headers=headers)
    assert r.status_code == 201
    return r.get_json()["pedido"]["id"]


def move(client, headers, pedido_id, estado, **extra):
    return client.patch(f"/api/pedidos/{pedido_id}/estado", json={"estado": estado, **extra}, headers=headers)


def load(app, pedido_id):
    with app.app_context():
        o = db.session.get(Order, pedido_id)
        db.session.expunge(o)
        return o


def test_happy_path_stamps_each_step(app, client, cliente, admin, catalog):
    pid = place(client, cliente["headers"], catalog, tipo="para_llevar")

    for estado in ("preparando", "listo", "entregado"):
        r = move(client, admin["headers"], pid, estado)
        assert r.status_code == 200
        assert r.get_json()["pedido"]["estado"] == estado

    o = load(app, pid)
    assert o.estado == "entregado"
    assert o.fecha_preparacion is not None
    assert o.fecha_listo is not None
    assert o.fecha_entrega is not None
    assert o.fecha_en_camino is None


@pytest.mark.parametrize("path,target", [
    ((), "listo"),
    ((), "entregado"),
    ((), "en_camino"),
    (("preparando",), "pendiente"),
    (("preparando",), "entregado"),
    (("preparando", "listo"), "preparando"),
])
def test_illegal_transitions_change_nothing(app, client, cliente, admin, catalog, path, target):
    pid = place(client, cliente["headers"], catalog)
    for estado in path:
        assert move(client, admin["headers"], pid, estado).status_code == 200
    before = load(app, pid)

    r = move(client, admin["headers"], pid, target, repartidor_id=None)
    assert r.status_code == 400
    assert r.get_json()["error"] == f"No se puede cambiar de estado {before.estado} a {target}"

    after = load(app, pid)
    assert after.estado == before.estado
    assert after.fecha_actualizacion == before.fecha_actualizacion


@pytest.mark.parametrize("terminal", ["entregado", "cancelado"])
def test_terminal_states_reject_everything(client, cliente, admin, catalog, terminal):
    pid = place(client, cliente["headers"], catalog, tipo="para_llevar")
    if terminal == "entregado":
        move(client, admin["headers"], pid, "preparando")
        move(client, admin["headers"], pid, "listo")
        assert move(client, admin["headers"], pid, "entregado").status_code == 200
    else:
        assert move(client, admin["headers"], pid, "cancelado", motivo_cancelacion="duplicado").status_code == 200

    r = move(client, admin["headers"], pid, "preparando")
    assert r.status_code == 400
    assert r.get_json()["error"] == f"No se puede actualizar un pedido en estado {terminal}"


def test_cancel_requires_reason(app, client, cliente, admin, catalog):
    pid = place(client, cliente["headers"], catalog)

    r = move(client, admin["headers"], pid, "cancelado", motivo_cancelacion="   ")
    assert r.status_code == 400
    assert r.get_json()["error"] == "Se requiere motivo de cancelación"
    assert load(app, pid).estado == "pendiente"

    r = move(client, admin["headers"], pid, "cancelado", motivo_cancelacion="Sin stock de pan")
    assert r.status_code == 200
    o = load(app, pid)
    assert o.motivo_cancelacion == "Sin stock de pan"
    assert o.fecha_cancelacion is not None


def test_dispatch_requires_active_courier(app, client, cliente, admin, courier, catalog):
    pid = place(client, cliente["headers"], catalog)
    move(client, admin["headers"], pid, "preparando")
    move(client, admin["headers"], pid, "listo")

    r = move(client, admin["headers"], pid, "en_camino")
    assert r.status_code == 400
    assert r.get_json()["error"] == "Se requiere asignar un repartidor"

    r = move(client, admin["headers"], pid, "en_camino", repartidor_id=cliente["id"])
    assert r.status_code == 400
    assert r.get_json()["error"] == "El repartidor seleccionado no existe o no está activo"
    assert load(app, pid).estado == "listo"

    r = move(client, admin["headers"], pid, "en_camino", repartidor_id=courier["id"])
    assert r.status_code == 200
    o = load(app, pid)
    assert o.estado == "en_camino"
    assert o.repartidor_id == courier["id"]
    assert o.fecha_en_camino is not None


def test_inactive_courier_cannot_be_assigned(app, client, cliente, admin, catalog):
    from conftest import make_user
    retired = make_user(app, "repartidor", email="ex@test.local", activo=False)
    pid = place(client, cliente["headers"], catalog)
    move(client, admin["headers"], pid, "preparando")
    move(client, admin["headers"], pid, "listo")

    r = move(client, admin["headers"], pid, "en_camino", repartidor_id=retired["id"])
    assert r.status_code == 400


def test_courier_flow(app, client, cliente, admin, courier, catalog):
    pid = place(client, cliente["headers"], catalog)
    assert move(client, courier["headers"], pid, "preparando").status_code == 403
    assert client.get(f"/api/pedidos/{pid}", headers=courier["headers"]).status_code == 403

    move(client, admin["headers"], pid, "preparando")
    move(client, admin["headers"], pid, "listo")
    move(client, admin["headers"], pid, "en_camino", repartidor_id=courier["id"])

    listed = client.get("/api/pedidos", headers=courier["headers"]).get_json()
    assert [p["id"] for p in listed["pedidos"]] == [pid]
    assert client.get(f"/api/pedidos/{pid}", headers=courier["headers"]).status_code == 200

    r = move(client, courier["headers"], pid, "entregado")
    assert r.status_code == 200
    assert load(app, pid).fecha_entrega is not None


def test_clients_cannot_change_status(client, cliente, catalog):
    pid = place(client, cliente["headers"], catalog)
    r = move(client, cliente["headers"], pid, "preparando")
    assert r.status_code == 403


@pytest.mark.parametrize("final", ["cancelado", "entregado"])
def test_closing_dine_in_order_releases_table(app, client, cliente, admin, catalog, final):
    pid = place(client, cliente["headers"], catalog, tipo="local")
    with app.app_context():
        assert db.session.get(DiningTable, catalog["mesa"]).estado == "ocupada"

    if final == "cancelado":
        r = move(client, admin["headers"], pid, "cancelado", motivo_cancelacion="mesa equivocada")
    else:
        move(client, admin["headers"], pid, "preparando")
        move(client, admin["headers"], pid, "listo")
        r = move(client, admin["headers"], pid, "entregado")
    assert r.status_code == 200

    with app.app_context():
        assert db.session.get(DiningTable, catalog["mesa"]).estado == "disponible"


def test_unknown_order(client, admin):
    r = move(client, admin["headers"], 999, "preparando")
    assert r.status_code == 404
    assert r.get_json()["success"] is False


def test_rating_only_after_delivery(app, client, cliente, admin, catalog):
    pid = place(client, cliente["headers"], catalog, tipo="para_llevar")

    r = client.patch(f"/api/pedidos/{pid}/calificar", json={"calificacion": 5}, headers=cliente["headers"])
    assert r.status_code == 400
    assert r.get_json()["error"] == "Sólo se pueden calificar pedidos entregados"

    for estado in ("preparando", "listo", "entregado"):
        move(client, admin["headers"], pid, estado)

    bad = client.patch(f"/api/pedidos/{pid}/calificar", json={"calificacion": 7}, headers=cliente["headers"])
    assert bad.status_code == 400

    r = client.patch(f"/api/pedidos/{pid}/calificar",
                     json={"calificacion": 4, "comentario_calificacion": "Muy rica"},
                     headers=cliente["headers"])
    assert r.status_code == 200
    o = load(app, pid)
    assert o.calificacion == 4
    assert o.comentario_calificacion == "Muy rica"

    other = client.patch(f"/api/pedidos/{pid}/calificar", json={"calificacion": 1}, headers=admin["headers"])
    assert other.status_code == 403
