# database.py
import enum
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash


db = SQLAlchemy()


def now_utc():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def money(x) -> Decimal:
    try:
        return Decimal(str(x)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except Exception:
        return Decimal("0.00")


def iso(value):
    return value.isoformat() if value is not None else None


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    CLIENTE = "cliente"
    REPARTIDOR = "repartidor"


class TableStatus(str, enum.Enum):
    DISPONIBLE = "disponible"
    OCUPADA = "ocupada"
    RESERVADA = "reservada"
    MANTENIMIENTO = "mantenimiento"


class OrderType(str, enum.Enum):
    LOCAL = "local"
    DELIVERY = "delivery"
    PARA_LLEVAR = "para_llevar"


class OrderStatus(str, enum.Enum):
    PENDIENTE = "pendiente"
    PREPARANDO = "preparando"
    LISTO = "listo"
    EN_CAMINO = "en_camino"
    ENTREGADO = "entregado"
    CANCELADO = "cancelado"


class PaymentStatus(str, enum.Enum):
    PENDIENTE = "pendiente"
    COMPLETADO = "completado"
    CANCELADO = "cancelado"


class ReservationStatus(str, enum.Enum):
    PENDIENTE = "pendiente"
    CONFIRMADA = "confirmada"
    CANCELADA = "cancelada"
    COMPLETADA = "completada"
    NO_SHOW = "no_show"


class SpecialDayType(str, enum.Enum):
    CERRADO = "cerrado"
    HORARIO_ESPECIAL = "horario_especial"


EMAIL_MAX_LENGTH = 100

WEEKDAYS = ["lunes", "martes", "miercoles", "jueves", "viernes", "sabado", "domingo"]

# legal next states; entregado and cancelado are terminal
ORDER_TRANSITIONS = {
    OrderStatus.PENDIENTE.value: [OrderStatus.PREPARANDO.value, OrderStatus.CANCELADO.value],
    OrderStatus.PREPARANDO.value: [OrderStatus.LISTO.value, OrderStatus.CANCELADO.value],
    OrderStatus.LISTO.value: [OrderStatus.EN_CAMINO.value, OrderStatus.ENTREGADO.value, OrderStatus.CANCELADO.value],
    OrderStatus.EN_CAMINO.value: [OrderStatus.ENTREGADO.value, OrderStatus.CANCELADO.value],
}

ACTIVE_ORDER_STATUSES = [
    OrderStatus.PENDIENTE.value,
    OrderStatus.PREPARANDO.value,
    OrderStatus.LISTO.value,
    OrderStatus.EN_CAMINO.value,
]


# ---------------------------
# Models
# ---------------------------

class User(db.Model, UserMixin):
    __tablename__ = "usuarios"

    id = db.Column(db.Integer, primary_key=True)
    nombre = db.Column(db.String(50), nullable=False)
    apellidos = db.Column(db.String(50))
    email = db.Column(db.String(EMAIL_MAX_LENGTH), unique=True, index=True, nullable=False)
    telefono = db.Column(db.String(20))
    password_hash = db.Column(db.String(255), nullable=False)
    direccion = db.Column(db.Text)
    referencia_direccion = db.Column(db.Text)
    ciudad = db.Column(db.String(50), default="Lima")
    distrito = db.Column(db.String(50))
    rol = db.Column(db.String(20), nullable=False, default=UserRole.CLIENTE.value)
    fecha_registro = db.Column(db.DateTime, default=now_utc)
    ultimo_login = db.Column(db.DateTime)
    activo = db.Column(db.Boolean, default=True)

    @property
    def is_active(self):
        return bool(self.activo)

    def set_password(self, pw):
        self.password_hash = generate_password_hash(pw)

    def check_password(self, pw):
        return check_password_hash(self.password_hash, pw or "")

    def to_dict(self):
        return {
            "id": self.id,
            "nombre": self.nombre,
            "apellidos": self.apellidos,
            "email": self.email,
            "telefono": self.telefono,
            "direccion": self.direccion,
            "referencia_direccion": self.referencia_direccion,
            "ciudad": self.ciudad,
            "distrito": self.distrito,
            "rol": self.rol,
            "activo": bool(self.activo),
            "fecha_registro": iso(self.fecha_registro),
            "ultimo_login": iso(self.ultimo_login),
        }


class Category(db.Model):
    __tablename__ = "categorias"

    id = db.Column(db.Integer, primary_key=True)
    codigo = db.Column(db.String(20), unique=True, nullable=False)
    nombre = db.Column(db.String(60), nullable=False)
    descripcion = db.Column(db.Text)
    imagen = db.Column(db.String(255))
    orden = db.Column(db.Integer, default=0)
    activo = db.Column(db.Boolean, default=True)
    fecha_creacion = db.Column(db.DateTime, default=now_utc)
    fecha_actualizacion = db.Column(db.DateTime, default=now_utc)

    productos = db.relationship("Product", back_populates="categoria", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "codigo": self.codigo,
            "nombre": self.nombre,
            "descripcion": self.descripcion,
            "imagen": self.imagen,
            "orden": self.orden,
            "activo": bool(self.activo),
            "fecha_creacion": iso(self.fecha_creacion),
            "fecha_actualizacion": iso(self.fecha_actualizacion),
        }


class Product(db.Model):
    __tablename__ = "productos"

    id = db.Column(db.Integer, primary_key=True)
    categoria_id = db.Column(db.Integer, db.ForeignKey("categorias.id"), nullable=False)
    codigo = db.Column(db.String(20), unique=True)
    nombre = db.Column(db.String(100), nullable=False)
    descripcion = db.Column(db.Text)
    precio = db.Column(db.Numeric(10, 2), nullable=False)
    tiempo_preparacion = db.Column(db.Integer, default=15)
    imagen = db.Column(db.String(255), default="default.png")
    disponible = db.Column(db.Boolean, default=True)
    destacado = db.Column(db.Boolean, default=False)
    fecha_creacion = db.Column(db.DateTime, default=now_utc)
    fecha_actualizacion = db.Column(db.DateTime, default=now_utc)

    categoria = db.relationship("Category", back_populates="productos")

    def to_dict(self, with_category=True):
        out = {
            "id": self.id,
            "categoria_id": self.categoria_id,
            "codigo": self.codigo,
            "nombre": self.nombre,
            "descripcion": self.descripcion,
            "precio": str(money(self.precio)),
            "tiempo_preparacion": self.tiempo_preparacion,
            "imagen": self.imagen,
            "disponible": bool(self.disponible),
            "destacado": bool(self.destacado),
            "fecha_creacion": iso(self.fecha_creacion),
            "fecha_actualizacion": iso(self.fecha_actualizacion),
        }
        if with_category and self.categoria is not None:
            out["categoria"] = {"id": self.categoria.id, "nombre": self.categoria.nombre, "codigo": self.categoria.codigo}
        return out


class Crema(db.Model):
    __tablename__ = "cremas"

    id = db.Column(db.Integer, primary_key=True)
    nombre = db.Column(db.String(100), unique=True, nullable=False)
    precio = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    disponible = db.Column(db.Boolean, default=True)
    fecha_creacion = db.Column(db.DateTime, default=now_utc)
    fecha_actualizacion = db.Column(db.DateTime, default=now_utc)

    def to_dict(self):
        return {
            "id": self.id,
            "nombre": self.nombre,
            "precio": str(money(self.precio)),
            "disponible": bool(self.disponible),
            "fecha_creacion": iso(self.fecha_creacion),
            "fecha_actualizacion": iso(self.fecha_actualizacion),
        }


class DiningTable(db.Model):
    __tablename__ = "mesas"

    id = db.Column(db.Integer, primary_key=True)
    numero = db.Column(db.Integer, unique=True, nullable=False)
    capacidad = db.Column(db.Integer, nullable=False, default=4)
    estado = db.Column(db.String(20), default=TableStatus.DISPONIBLE.value)
    ubicacion = db.Column(db.String(50), default="interior")
    activo = db.Column(db.Boolean, default=True)
    fecha_actualizacion = db.Column(db.DateTime, default=now_utc)

    def to_dict(self):
        return {
            "id": self.id,
            "numero": self.numero,
            "capacidad": self.capacidad,
            "estado": self.estado,
            "ubicacion": self.ubicacion,
            "activo": bool(self.activo),
            "fecha_actualizacion": iso(self.fecha_actualizacion),
        }


class Reservation(db.Model):
    __tablename__ = "reservas"

    id = db.Column(db.Integer, primary_key=True)
    codigo = db.Column(db.String(10), unique=True, nullable=False)
    usuario_id = db.Column(db.Integer, db.ForeignKey("usuarios.id"), nullable=False)
    mesa_id = db.Column(db.Integer, db.ForeignKey("mesas.id"), nullable=False)
    fecha_reserva = db.Column(db.Date, nullable=False)
    hora_inicio = db.Column(db.Time, nullable=False)
    hora_fin = db.Column(db.Time, nullable=False)
    num_personas = db.Column(db.Integer, nullable=False, default=1)
    estado = db.Column(db.String(20), default=ReservationStatus.PENDIENTE.value)
    comentarios = db.Column(db.Text)
    fecha_creacion = db.Column(db.DateTime, default=now_utc)
    fecha_actualizacion = db.Column(db.DateTime, default=now_utc)

    usuario = db.relationship("User")
    mesa = db.relationship("DiningTable")

    def to_dict(self):
        return {
            "id": self.id,
            "codigo": self.codigo,
            "usuario_id": self.usuario_id,
            "mesa_id": self.mesa_id,
            "mesa": {"id": self.mesa.id, "numero": self.mesa.numero, "capacidad": self.mesa.capacidad} if self.mesa else None,
            "fecha_reserva": iso(self.fecha_reserva),
            "hora_inicio": self.hora_inicio.strftime("%H:%M") if self.hora_inicio else None,
            "hora_fin": self.hora_fin.strftime("%H:%M") if self.hora_fin else None,
            "num_personas": self.num_personas,
            "estado": self.estado,
            "comentarios": self.comentarios,
            "fecha_creacion": iso(self.fecha_creacion),
        }


class PaymentMethod(db.Model):
    __tablename__ = "metodos_pago"

    id = db.Column(db.Integer, primary_key=True)
    nombre = db.Column(db.String(50), unique=True, nullable=False)
    descripcion = db.Column(db.Text)
    requiere_confirmacion = db.Column(db.Boolean, default=False)
    imagen = db.Column(db.String(255))
    activo = db.Column(db.Boolean, default=True)

    def to_dict(self):
        return {
            "id": self.id,
            "nombre": self.nombre,
            "descripcion": self.descripcion,
            "requiere_confirmacion": bool(self.requiere_confirmacion),
            "imagen": self.imagen,
            "activo": bool(self.activo),
        }


class Order(db.Model):
    __tablename__ = "pedidos"

    id = db.Column(db.Integer, primary_key=True)
    codigo = db.Column(db.String(20), unique=True, index=True, nullable=False)
    usuario_id = db.Column(db.Integer, db.ForeignKey("usuarios.id"))
    mesa_id = db.Column(db.Integer, db.ForeignKey("mesas.id"))
    repartidor_id = db.Column(db.Integer, db.ForeignKey("usuarios.id"))
    nombre_cliente = db.Column(db.String(100))
    tipo = db.Column(db.String(20), nullable=False)
    estado = db.Column(db.String(20), default=OrderStatus.PENDIENTE.value, index=True)

    subtotal = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    descuento = db.Column(db.Numeric(10, 2), default=0)
    costo_envio = db.Column(db.Numeric(10, 2), default=0)
    total = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    direccion_entrega = db.Column(db.Text)
    referencia_direccion = db.Column(db.Text)
    distrito = db.Column(db.String(50))
    ciudad = db.Column(db.String(50), default="Lima")
    telefono_contacto = db.Column(db.String(20))
    email_contacto = db.Column(db.String(100))
    tiempo_estimado_entrega = db.Column(db.Integer)

    fecha_pedido = db.Column(db.DateTime, default=now_utc, index=True)
    fecha_preparacion = db.Column(db.DateTime)
    fecha_listo = db.Column(db.DateTime)
    fecha_en_camino = db.Column(db.DateTime)
    fecha_entrega = db.Column(db.DateTime)
    fecha_cancelacion = db.Column(db.DateTime)
    fecha_actualizacion = db.Column(db.DateTime, default=now_utc)
    motivo_cancelacion = db.Column(db.Text)

    notas = db.Column(db.Text)
    calificacion = db.Column(db.Integer)
    comentario_calificacion = db.Column(db.Text)
    origen = db.Column(db.String(20), default="web")

    usuario = db.relationship("User", foreign_keys=[usuario_id])
    repartidor = db.relationship("User", foreign_keys=[repartidor_id])
    mesa = db.relationship("DiningTable")
    detalles = db.relationship("OrderLine", back_populates="pedido", order_by="OrderLine.id")
    pagos = db.relationship("Payment", back_populates="pedido", order_by="Payment.id")

    def to_summary(self):
        return {
            "id": self.id,
            "codigo": self.codigo,
            "tipo": self.tipo,
            "estado": self.estado,
            "usuario_id": self.usuario_id,
            "repartidor_id": self.repartidor_id,
            "mesa_id": self.mesa_id,
            "nombre_cliente": self.nombre_cliente,
            "subtotal": str(money(self.subtotal)),
            "descuento": str(money(self.descuento)),
            "costo_envio": str(money(self.costo_envio)),
            "total": str(money(self.total)),
            "fecha_pedido": iso(self.fecha_pedido),
            "usuario": _person(self.usuario),
            "repartidor": _person(self.repartidor),
            "mesa": {"id": self.mesa.id, "numero": self.mesa.numero, "capacidad": self.mesa.capacidad} if self.mesa else None,
        }

    def to_dict(self):
        out = self.to_summary()
        out.update({
            "direccion_entrega": self.direccion_entrega,
            "referencia_direccion": self.referencia_direccion,
            "distrito": self.distrito,
            "ciudad": self.ciudad,
            "telefono_contacto": self.telefono_contacto,
            "email_contacto": self.email_contacto,
            "tiempo_estimado_entrega": self.tiempo_estimado_entrega,
            "fecha_preparacion": iso(self.fecha_preparacion),
            "fecha_listo": iso(self.fecha_listo),
            "fecha_en_camino": iso(self.fecha_en_camino),
            "fecha_entrega": iso(self.fecha_entrega),
            "fecha_cancelacion": iso(self.fecha_cancelacion),
            "motivo_cancelacion": self.motivo_cancelacion,
            "notas": self.notas,
            "calificacion": self.calificacion,
            "comentario_calificacion": self.comentario_calificacion,
            "origen": self.origen,
            "detalles": [d.to_dict() for d in self.detalles],
            "pagos": [p.to_dict() for p in self.pagos],
        })
        return out


def _person(u):
    if u is None:
        return None
    return {"id": u.id, "nombre": u.nombre, "apellidos": u.apellidos, "email": u.email, "telefono": u.telefono}


class OrderLine(db.Model):
    __tablename__ = "detalles_pedidos"

    id = db.Column(db.Integer, primary_key=True)
    pedido_id = db.Column(db.Integer, db.ForeignKey("pedidos.id"), nullable=False, index=True)
    producto_id = db.Column(db.Integer, db.ForeignKey("productos.id"), nullable=False)
    cantidad = db.Column(db.Integer, nullable=False, default=1)
    precio_unitario = db.Column(db.Numeric(10, 2), nullable=False)
    descuento_unitario = db.Column(db.Numeric(10, 2), default=0)
    subtotal = db.Column(db.Numeric(10, 2), nullable=False)
    notas = db.Column(db.Text)

    pedido = db.relationship("Order", back_populates="detalles")
    producto = db.relationship("Product")
    cremas = db.relationship("OrderLineCrema", back_populates="detalle", order_by="OrderLineCrema.id")

    def to_dict(self):
        return {
            "id": self.id,
            "producto_id": self.producto_id,
            "producto": self.producto.to_dict() if self.producto else None,
            "cantidad": self.cantidad,
            "precio_unitario": str(money(self.precio_unitario)),
            "descuento_unitario": str(money(self.descuento_unitario)),
            "subtotal": str(money(self.subtotal)),
            "notas": self.notas,
            "cremas": [c.to_dict() for c in self.cremas],
        }


class OrderLineCrema(db.Model):
    __tablename__ = "detalles_pedidos_cremas"

    id = db.Column(db.Integer, primary_key=True)
    detalle_pedido_id = db.Column(db.Integer, db.ForeignKey("detalles_pedidos.id"), nullable=False)
    crema_id = db.Column(db.Integer, db.ForeignKey("cremas.id"), nullable=False)
    cantidad = db.Column(db.Integer, nullable=False, default=1)

    detalle = db.relationship("OrderLine", back_populates="cremas")
    crema = db.relationship("Crema")

    def to_dict(self):
        return {
            "id": self.id,
            "crema_id": self.crema_id,
            "nombre": self.crema.nombre if self.crema else None,
            "cantidad": self.cantidad,
        }


class Payment(db.Model):
    __tablename__ = "pagos"

    id = db.Column(db.Integer, primary_key=True)
    pedido_id = db.Column(db.Integer, db.ForeignKey("pedidos.id"), nullable=False, index=True)
    metodo_pago_id = db.Column(db.Integer, db.ForeignKey("metodos_pago.id"), nullable=False)
    monto = db.Column(db.Numeric(10, 2), nullable=False)
    referencia = db.Column(db.String(100))
    comprobante = db.Column(db.String(255))
    estado = db.Column(db.String(20), default=PaymentStatus.PENDIENTE.value)
    fecha_pago = db.Column(db.DateTime, default=now_utc)
    fecha_confirmacion = db.Column(db.DateTime)

    pedido = db.relationship("Order", back_populates="pagos")
    metodo_pago = db.relationship("PaymentMethod")

    def to_dict(self):
        return {
            "id": self.id,
            "metodo_pago_id": self.metodo_pago_id,
            "metodo_pago": self.metodo_pago.nombre if self.metodo_pago else None,
            "monto": str(money(self.monto)),
            "referencia": self.referencia,
            "comprobante": self.comprobante,
            "estado": self.estado,
            "fecha_pago": iso(self.fecha_pago),
            "fecha_confirmacion": iso(self.fecha_confirmacion),
        }


class SpecialDay(db.Model):
    __tablename__ = "dias_especiales"

    id = db.Column(db.Integer, primary_key=True)
    fecha = db.Column(db.Date, unique=True, nullable=False)
    tipo = db.Column(db.String(20), nullable=False, default=SpecialDayType.CERRADO.value)
    hora_apertura = db.Column(db.Time)
    hora_cierre = db.Column(db.Time)
    descripcion = db.Column(db.String(200))
    activo = db.Column(db.Boolean, default=True)
    fecha_creacion = db.Column(db.DateTime, default=now_utc)
    fecha_actualizacion = db.Column(db.DateTime, default=now_utc)

    def to_dict(self):
        return {
            "id": self.id,
            "fecha": iso(self.fecha),
            "tipo": self.tipo,
            "hora_apertura": self.hora_apertura.strftime("%H:%M") if self.hora_apertura else None,
            "hora_cierre": self.hora_cierre.strftime("%H:%M") if self.hora_cierre else None,
            "descripcion": self.descripcion,
            "activo": bool(self.activo),
        }


class AttentionSchedule(db.Model):
    __tablename__ = "horarios_atencion"

    id = db.Column(db.Integer, primary_key=True)
    dia_semana = db.Column(db.String(10), unique=True, nullable=False)
    hora_apertura = db.Column(db.Time, nullable=False)
    hora_cierre = db.Column(db.Time, nullable=False)
    activo = db.Column(db.Boolean, default=True)

    def to_dict(self):
        return {
            "id": self.id,
            "dia_semana": self.dia_semana,
            "hora_apertura": self.hora_apertura.strftime("%H:%M"),
            "hora_cierre": self.hora_cierre.strftime("%H:%M"),
            "activo": bool(self.activo),
        }
