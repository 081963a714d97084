# schemas.py
import re
from datetime import date, time
from decimal import Decimal
from typing import Annotated, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, Field, field_validator, model_validator


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ROLES = Literal["admin", "cliente", "repartidor"]
ORDER_TYPES = Literal["local", "delivery", "para_llevar"]
ORDER_STATES = Literal["pendiente", "preparando", "listo", "en_camino", "entregado", "cancelado"]
TABLE_STATES = Literal["disponible", "ocupada", "reservada", "mantenimiento"]
RESERVATION_STATES = Literal["pendiente", "confirmada", "cancelada", "completada", "no_show"]
SPECIAL_DAY_TYPES = Literal["cerrado", "horario_especial"]


def _email(v):
    if v is None:
        return v
    v = v.strip().lower()
    if not EMAIL_RE.match(v):
        raise ValueError("Email inválido")
    if len(v) > 100:
        raise ValueError("El email no puede superar los 100 caracteres")
    return v


Email = Annotated[str, AfterValidator(_email)]


# --- Auth / users ---

class RegisterIn(BaseModel):
    nombre: str = Field(min_length=2, max_length=50)
    apellidos: Optional[str] = Field(default=None, max_length=50)
    email: Email
    password: str = Field(min_length=6)
    telefono: Optional[str] = Field(default=None, max_length=20)
    direccion: Optional[str] = None
    referencia_direccion: Optional[str] = None
    ciudad: Optional[str] = None
    distrito: Optional[str] = None


class LoginIn(BaseModel):
    email: Email
    password: str = Field(min_length=1)


class PasswordChangeIn(BaseModel):
    password_actual: Optional[str] = None
    password_nuevo: str = Field(min_length=6)


class ForgotPasswordIn(BaseModel):
    email: Email


class ResetPasswordIn(BaseModel):
    token: str = Field(min_length=1)
    password_nuevo: str = Field(min_length=6)


class UserCreateIn(RegisterIn):
    rol: ROLES = "cliente"
    activo: bool = True


class UserUpdateIn(BaseModel):
    nombre: Optional[str] = Field(default=None, min_length=2, max_length=50)
    apellidos: Optional[str] = Field(default=None, max_length=50)
    email: Optional[Email] = None
    telefono: Optional[str] = Field(default=None, max_length=20)
    direccion: Optional[str] = None
    referencia_direccion: Optional[str] = None
    ciudad: Optional[str] = None
    distrito: Optional[str] = None
    rol: Optional[ROLES] = None
    activo: Optional[bool] = None


# --- Catalog ---

class CategoryIn(BaseModel):
    codigo: str = Field(min_length=1, max_length=20)
    nombre: str = Field(min_length=1, max_length=60)
    descripcion: Optional[str] = None
    orden: int = 0
    activo: bool = True


class CategoryUpdateIn(BaseModel):
    codigo: Optional[str] = Field(default=None, min_length=1, max_length=20)
    nombre: Optional[str] = Field(default=None, min_length=1, max_length=60)
    descripcion: Optional[str] = None
    orden: Optional[int] = None
    activo: Optional[bool] = None


class ProductIn(BaseModel):
    categoria_id: int
    codigo: Optional[str] = Field(default=None, max_length=20)
    nombre: str = Field(min_length=1, max_length=100)
    descripcion: Optional[str] = None
    precio: Decimal = Field(ge=0)
    tiempo_preparacion: int = Field(default=15, ge=0)
    disponible: bool = True
    destacado: bool = False

    @field_validator("codigo")
    @classmethod
    def _blank_code(cls, v):
        return (v or "").strip() or None


class ProductUpdateIn(BaseModel):
    categoria_id: Optional[int] = None
    codigo: Optional[str] = Field(default=None, max_length=20)
    nombre: Optional[str] = Field(default=None, min_length=1, max_length=100)
    descripcion: Optional[str] = None
    precio: Optional[Decimal] = Field(default=None, ge=0)
    tiempo_preparacion: Optional[int] = Field(default=None, ge=0)
    disponible: Optional[bool] = None
    destacado: Optional[bool] = None


class CremaIn(BaseModel):
    nombre: str = Field(min_length=1, max_length=100)
    precio: Decimal = Field(default=Decimal("0.00"), ge=0)
    disponible: bool = True


class CremaUpdateIn(BaseModel):
    nombre: Optional[str] = Field(default=None, min_length=1, max_length=100)
    precio: Optional[Decimal] = Field(default=None, ge=0)
    disponible: Optional[bool] = None


class TableIn(BaseModel):
    numero: int = Field(ge=1)
    capacidad: int = Field(default=4, ge=1)
    estado: TABLE_STATES = "disponible"
    ubicacion: str = "interior"
    activo: bool = True


class TableUpdateIn(BaseModel):
    numero: Optional[int] = Field(default=None, ge=1)
    capacidad: Optional[int] = Field(default=None, ge=1)
    estado: Optional[TABLE_STATES] = None
    ubicacion: Optional[str] = None
    activo: Optional[bool] = None


class TableStatusIn(BaseModel):
    estado: TABLE_STATES


class SpecialDayIn(BaseModel):
    fecha: date
    tipo: SPECIAL_DAY_TYPES = "cerrado"
    hora_apertura: Optional[time] = None
    hora_cierre: Optional[time] = None
    descripcion: Optional[str] = Field(default=None, max_length=200)
    activo: bool = True

    @model_validator(mode="after")
    def _hours(self):
        if self.tipo == "horario_especial":
            if not self.hora_apertura or not self.hora_cierre:
                raise ValueError("Un horario especial requiere hora de apertura y de cierre")
            if self.hora_cierre <= self.hora_apertura:
                raise ValueError("La hora de cierre debe ser posterior a la de apertura")
        else:
            self.hora_apertura = None
            self.hora_cierre = None
        return self


class SpecialDayUpdateIn(BaseModel):
    tipo: Optional[SPECIAL_DAY_TYPES] = None
    hora_apertura: Optional[time] = None
    hora_cierre: Optional[time] = None
    descripcion: Optional[str] = Field(default=None, max_length=200)
    activo: Optional[bool] = None


class ScheduleIn(BaseModel):
    hora_apertura: time
    hora_cierre: time
    activo: bool = True

    @model_validator(mode="after")
    def _order(self):
        if self.hora_cierre <= self.hora_apertura:
            raise ValueError("La hora de cierre debe ser posterior a la de apertura")
        return self


# --- Orders ---

class OrderItemIn(BaseModel):
    producto_id: int
    cantidad: int = Field(default=1, ge=1)
    cremas: List[int] = []
    notas: Optional[str] = None


class OrderCreateIn(BaseModel):
    tipo: ORDER_TYPES
    productos: List[OrderItemIn] = []
    metodo_pago_id: int
    mesa_id: Optional[int] = None
    nombre_cliente: Optional[str] = Field(default=None, max_length=100)
    telefono_contacto: Optional[str] = Field(default=None, max_length=20)
    email_contacto: Optional[Email] = None
    direccion_entrega: Optional[str] = None
    referencia_direccion: Optional[str] = None
    distrito: Optional[str] = None
    ciudad: Optional[str] = None
    notas: Optional[str] = None


class OrderStatusIn(BaseModel):
    estado: ORDER_STATES
    motivo_cancelacion: Optional[str] = None
    repartidor_id: Optional[int] = None


class RatingIn(BaseModel):
    calificacion: int = Field(ge=1, le=5)
    comentario_calificacion: Optional[str] = None


# --- Reservations ---

class ReservationIn(BaseModel):
    mesa_id: int
    fecha_reserva: date
    hora_inicio: time
    hora_fin: time
    num_personas: int = Field(default=1, ge=1)
    comentarios: Optional[str] = None

    @model_validator(mode="after")
    def _range(self):
        if self.hora_fin <= self.hora_inicio:
            raise ValueError("La hora de fin debe ser posterior a la de inicio")
        return self


class ReservationStatusIn(BaseModel):
    estado: RESERVATION_STATES


class AvailabilityIn(BaseModel):
    disponible: Optional[bool] = None
