from datetime import date, timedelta

import pytest

from conftest import make_user


def reservation_payload(mesa_id, days_ahead=2, **overrides):
    body = {
        "mesa_id": mesa_id,
        "fecha_reserva": (date.today() + timedelta(days=days_ahead)).isoformat(),
        "hora_inicio": "19:00",
        "hora_fin": "21:00",
        "num_personas": 2,
    }
    body.update(overrides)
    return body


def test_create_reservation(client, cliente, catalog):
    r = client.post("/api/reservas", json=reservation_payload(catalog["mesa"], comentarios="Cumpleaños"),
                    headers=cliente["headers"])
    assert r.status_code == 201
    reserva = r.get_json()["reserva"]
    assert reserva["codigo"].startswith("RS-")
    assert reserva["estado"] == "pendiente"
    assert reserva["mesa"]["numero"] == 1
    assert reserva["usuario_id"] == cliente["id"]


@pytest.mark.parametrize("hours", [("20:00", "22:00"), ("18:00", "19:30"), ("19:30", "20:30")])
def test_overlapping_reservation_rejected(client, cliente, catalog, hours):
    client.post("/api/reservas", json=reservation_payload(catalog["mesa"]), headers=cliente["headers"])
    r = client.post("/api/reservas", json=reservation_payload(
        catalog["mesa"], hora_inicio=hours[0], hora_fin=hours[1]
    ), headers=cliente["headers"])
    assert r.status_code == 400
    assert r.get_json()["error"] == "La mesa ya está reservada en ese horario"


def test_back_to_back_reservations_allowed(client, cliente, catalog):
    client.post("/api/reservas", json=reservation_payload(catalog["mesa"]), headers=cliente["headers"])
    r = client.post("/api/reservas", json=reservation_payload(
        catalog["mesa"], hora_inicio="21:00", hora_fin="22:30"
    ), headers=cliente["headers"])
    assert r.status_code == 201


def test_cancelled_reservation_frees_the_slot(client, cliente, catalog):
    first = client.post("/api/reservas", json=reservation_payload(catalog["mesa"]), headers=cliente["headers"])
    rid = first.get_json()["reserva"]["id"]
    client.patch(f"/api/reservas/{rid}/estado", json={"estado": "cancelada"}, headers=cliente["headers"])
    again = client.post("/api/reservas", json=reservation_payload(catalog["mesa"]), headers=cliente["headers"])
    assert again.status_code == 201


def test_reservation_rules(client, admin, cliente, catalog):
    over = client.post("/api/reservas", json=reservation_payload(catalog["mesa"], num_personas=9),
                       headers=cliente["headers"])
    assert over.status_code == 400
    assert over.get_json()["error"] == "La mesa tiene capacidad para 4 personas"

    past = client.post("/api/reservas", json=reservation_payload(catalog["mesa"], days_ahead=-1),
                       headers=cliente["headers"])
    assert past.status_code == 400

    reversed_hours = client.post("/api/reservas", json=reservation_payload(
        catalog["mesa"], hora_inicio="21:00", hora_fin="19:00"
    ), headers=cliente["headers"])
    assert reversed_hours.status_code == 400

    missing = client.post("/api/reservas", json=reservation_payload(9999), headers=cliente["headers"])
    assert missing.status_code == 404

    client.patch(f"/api/mesas/{catalog['mesa']}/estado", json={"estado": "mantenimiento"}, headers=admin["headers"])
    maintenance = client.post("/api/reservas", json=reservation_payload(catalog["mesa"]), headers=cliente["headers"])
    assert maintenance.status_code == 400
    assert maintenance.get_json()["error"] == "La mesa seleccionada no está disponible"


def test_closed_special_day_blocks_reservations(client, admin, cliente, catalog):
    fecha = (date.today() + timedelta(days=5)).isoformat()
    client.post("/api/dias-especiales", json={"fecha": fecha, "tipo": "cerrado"}, headers=admin["headers"])
    r = client.post("/api/reservas", json=reservation_payload(catalog["mesa"], days_ahead=5),
                    headers=cliente["headers"])
    assert r.status_code == 400
    assert r.get_json()["error"] == "El restaurante está cerrado en la fecha seleccionada"


def test_reservation_visibility(app, client, admin, cliente, catalog):
    other = make_user(app, "cliente", email="otro@test.local")
    mine = client.post("/api/reservas", json=reservation_payload(catalog["mesa"]), headers=cliente["headers"])
    rid = mine.get_json()["reserva"]["id"]
    client.post("/api/reservas", json=reservation_payload(catalog["mesa"], days_ahead=3), headers=other["headers"])

    own = client.get("/api/reservas", headers=cliente["headers"]).get_json()
    assert own["total"] == 1
    assert client.get("/api/reservas", headers=admin["headers"]).get_json()["total"] == 2

    assert client.get(f"/api/reservas/{rid}", headers=other["headers"]).status_code == 403
    assert client.get(f"/api/reservas/{rid}", headers=admin["headers"]).status_code == 200


def test_reservation_status_permissions(app, client, admin, cliente, catalog):
    rid = client.post("/api/reservas", json=reservation_payload(catalog["mesa"]),
                      headers=cliente["headers"]).get_json()["reserva"]["id"]

    confirm = client.patch(f"/api/reservas/{rid}/estado", json={"estado": "confirmada"}, headers=cliente["headers"])
    assert confirm.status_code == 403
    assert confirm.get_json()["error"] == "Solo puedes cancelar tus reservas"

    other = make_user(app, "cliente", email="otro@test.local")
    foreign = client.patch(f"/api/reservas/{rid}/estado", json={"estado": "cancelada"}, headers=other["headers"])
    assert foreign.status_code == 403

    ok = client.patch(f"/api/reservas/{rid}/estado", json={"estado": "confirmada"}, headers=admin["headers"])
    assert ok.get_json()["reserva"]["estado"] == "confirmada"

    done = client.patch(f"/api/reservas/{rid}/estado", json={"estado": "completada"}, headers=admin["headers"])
    assert done.status_code == 200
    closed = client.patch(f"/api/reservas/{rid}/estado", json={"estado": "cancelada"}, headers=admin["headers"])
    assert closed.status_code == 400
    assert closed.get_json()["error"] == "No se puede actualizar una reserva en estado completada"
