# app.py
import os
import io
import json
import time
import uuid
import random
import secrets
import logging
from logging.handlers import RotatingFileHandler
from datetime import datetime, timedelta, date, timezone
from functools import wraps
from decimal import Decimal
from pathlib import Path

import jwt
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from flask import (
    Flask, request, jsonify, send_file, send_from_directory, g, abort
)
from flask_login import LoginManager, login_required, current_user
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from pydantic import ValidationError
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas
from sqlalchemy import or_ as sa_or, func
from sqlalchemy.exc import IntegrityError

from database import (
    db,
    now_utc, money,
    UserRole, TableStatus, OrderType, OrderStatus, PaymentStatus,
    ReservationStatus, SpecialDayType,
    WEEKDAYS, ORDER_TRANSITIONS, ACTIVE_ORDER_STATUSES, EMAIL_MAX_LENGTH,
    User, Category, Product, Crema, DiningTable, Reservation,
    PaymentMethod, Order, OrderLine, OrderLineCrema, Payment,
    SpecialDay, AttentionSchedule
)
from schemas import (
    RegisterIn, LoginIn, PasswordChangeIn, ForgotPasswordIn, ResetPasswordIn,
    UserCreateIn, UserUpdateIn,
    CategoryIn, CategoryUpdateIn, ProductIn, ProductUpdateIn,
    CremaIn, CremaUpdateIn,
    TableIn, TableUpdateIn, TableStatusIn,
    SpecialDayIn, SpecialDayUpdateIn, ScheduleIn,
    OrderCreateIn, OrderStatusIn, RatingIn,
    ReservationIn, ReservationStatusIn, AvailabilityIn
)


BASE_DIR = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(BASE_DIR, ".env"))


def env_flag(name, default="true"):
    return (os.environ.get(name, default) or "").strip().lower() in ("1", "true", "yes", "on")


APP_ENV = os.environ.get("APP_ENV", "development").strip().lower()
IS_PRODUCTION = APP_ENV == "production"

SECRET_KEY = os.environ.get("SECRET_KEY") or secrets.token_hex(32)
JWT_SECRET = os.environ.get("JWT_SECRET") or SECRET_KEY
JWT_ALGORITHM = "HS256"
JWT_EXPIRES_HOURS = int(os.environ.get("JWT_EXPIRES_HOURS", "24"))

DATABASE_URL = os.environ.get("DATABASE_URL") or f"sqlite:///{os.path.join(BASE_DIR, 'veneburger.db')}"
UPLOAD_PATH = os.environ.get("UPLOAD_PATH") or os.path.join(BASE_DIR, "uploads")
LOG_DIR = os.environ.get("LOG_DIR") or os.path.join(BASE_DIR, "logs")

RATELIMIT_ENABLED = env_flag("RATELIMIT_ENABLED")
RATELIMIT_DEFAULT = os.environ.get(
    "RATELIMIT_DEFAULT",
    "60 per 15 minutes" if IS_PRODUCTION else "100 per 15 minutes"
)
REPORT_SAMPLE_DATA = env_flag("REPORT_SAMPLE_DATA")
SHIPPING_COST = money(os.environ.get("SHIPPING_COST", "5.00"))
CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGIN", "*").split(",") if o.strip()]

RESTAURANT_NAME = "VeneBurger"
DEFAULT_IMAGE = "default.png"
ALLOWED_IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
UPLOAD_TYPES = {"productos", "categorias", "comprobantes"}
IMAGE_LIMITS = {
    "productos": 5 * 1024 * 1024,
    "categorias": 2 * 1024 * 1024,
}


app = Flask(__name__)

app.config["SECRET_KEY"] = SECRET_KEY
app.config["SQLALCHEMY_DATABASE_URI"] = DATABASE_URL
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["MAX_CONTENT_LENGTH"] = 6 * 1024 * 1024
app.config["RATELIMIT_ENABLED"] = RATELIMIT_ENABLED
app.json.sort_keys = False

db.init_app(app)

login_manager = LoginManager(app)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    default_limits=[RATELIMIT_DEFAULT],
    storage_uri="memory://",
)

serializer = URLSafeTimedSerializer(app.config["SECRET_KEY"])

audit_logger = logging.getLogger("veneburger.audit")
mail_logger = logging.getLogger("veneburger.mail")


# ---------------------------
# Logging
# ---------------------------

def configure_logging(flask_app):
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s]: %(message)s")

    combined = RotatingFileHandler(
        os.path.join(LOG_DIR, "combined.log"), maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    combined.setFormatter(formatter)

    errors = RotatingFileHandler(
        os.path.join(LOG_DIR, "error.log"), maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    errors.setLevel(logging.ERROR)
    errors.setFormatter(formatter)

    handlers = [combined, errors]
    if not IS_PRODUCTION:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        handlers.append(console)

    level = logging.INFO if IS_PRODUCTION else logging.DEBUG
    for logger in (flask_app.logger, audit_logger, mail_logger):
        logger.handlers.clear()
        for h in handlers:
            logger.addHandler(h)
        logger.setLevel(level)
        logger.propagate = False


configure_logging(app)


# ---------------------------
# Helpers
# ---------------------------

class ApiError(Exception):
    def __init__(self, message, code=400):
        super().__init__(message)
        self.message = message
        self.code = code


def json_error(message, code=400, errors=None):
    body = {"success": False, "error": message}
    if errors:
        body["errors"] = errors
    return jsonify(body), code


def require_json():
    if not request.is_json or not isinstance(request.get_json(silent=True), dict):
        return json_error("Se esperaba un cuerpo JSON", 400)
    return None


def form_or_json():
    if request.is_json:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ApiError("Se esperaba un cuerpo JSON", 400)
        return data
    return {k: v for k, v in request.form.items() if v != ""}


def arg_bool(name):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return raw.strip().lower() in ("1", "true", "yes", "si")


def arg_int(name, default=None, minimum=None, maximum=None):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ApiError(f"El parámetro {name} debe ser un número entero", 400)
    if minimum is not None and value < minimum:
        raise ApiError(f"El parámetro {name} debe ser mayor o igual a {minimum}", 400)
    if maximum is not None and value > maximum:
        raise ApiError(f"El parámetro {name} debe ser menor o igual a {maximum}", 400)
    return value


def parse_date(raw, field="fecha"):
    try:
        return datetime.strptime(str(raw), "%Y-%m-%d").date()
    except (TypeError, ValueError):
        raise ApiError(f"Formato de fecha inválido en {field} (use AAAA-MM-DD)", 400)


def page_args(default_limit=10):
    pagina = arg_int("pagina", 1, minimum=1)
    limite = arg_int("limite", default_limit, minimum=1, maximum=100)
    return pagina, limite


def paginated(query, pagina, limite):
    total = query.order_by(None).count()
    rows = query.offset((pagina - 1) * limite).limit(limite).all()
    return rows, {
        "total": total,
        "pagina": pagina,
        "limite": limite,
        "total_paginas": (total + limite - 1) // limite,
    }


def require_roles(*roles):
    allowed = set(roles)

    def deco(fn):
        @wraps(fn)
        @login_required
        def wrapper(*args, **kwargs):
            if current_user.rol != UserRole.ADMIN.value and current_user.rol not in allowed:
                return json_error("No tienes permiso para realizar esta acción", 403)
            return fn(*args, **kwargs)
        return wrapper
    return deco


def audit(action, entity, entity_id=None, details=None):
    try:
        uid = int(current_user.id) if current_user and getattr(current_user, "is_authenticated", False) else None
    except Exception:
        uid = None

    audit_logger.info(
        "%s %s id=%s user=%s ip=%s %s",
        action, entity, entity_id, uid,
        request.headers.get("X-Forwarded-For", request.remote_addr),
        json.dumps(details or {}, default=str, ensure_ascii=False)
    )


def unique_code(prefix, model):
    while True:
        code = f"{prefix}-{uuid.uuid4().hex[:5].upper()}"
        if not model.query.filter_by(codigo=code).first():
            return code


# ---------------------------
# Auth (JWT bearer through Flask-Login)
# ---------------------------

def issue_token(user: User) -> str:
    payload = {
        "id": user.id,
        "rol": user.rol,
        "exp": datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRES_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


@login_manager.request_loader
def load_user_from_request(req):
    header = req.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        g.auth_error = "No autorizado, token no proporcionado"
        return None

    # expired or tampered tokens raise PyJWTError, mapped to 401 below
    payload = jwt.decode(header[7:].strip(), JWT_SECRET, algorithms=[JWT_ALGORITHM])
    user = db.session.get(User, int(payload.get("id") or 0))
    if not user or not user.activo:
        g.auth_error = "Usuario no encontrado o inactivo"
        return None
    return user


@login_manager.unauthorized_handler
def _unauthorized():
    return json_error(g.get("auth_error", "No autorizado"), 401)


# ---------------------------
# Error handlers
# ---------------------------

HTTP_MESSAGES = {
    400: "Solicitud inválida",
    403: "Acceso denegado",
    404: "Recurso no encontrado",
    405: "Método no permitido",
    413: "El archivo excede el tamaño máximo permitido",
    429: "Demasiadas solicitudes, intente más tarde",
}


@app.errorhandler(ApiError)
def _err_api(e):
    db.session.rollback()
    return json_error(e.message, e.code)


@app.errorhandler(ValidationError)
def _err_validation(e):
    errors = []
    for err in e.errors():
        field = ".".join(str(p) for p in err.get("loc", ())) or "body"
        msg = err.get("msg", "")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        errors.append({"field": field, "message": msg})
    return json_error("Error de validación", 400, errors)


@app.errorhandler(IntegrityError)
def _err_integrity(e):
    db.session.rollback()
    app.logger.warning("Integrity error: %s", e.orig)
    if "foreign key" in str(e.orig).lower():
        return json_error("La referencia a otro registro no existe", 400)
    return json_error("Error de validación", 400, [{"field": "unique", "message": "Ya existe un registro con ese valor"}])


@app.errorhandler(jwt.ExpiredSignatureError)
def _err_jwt_expired(_e):
    return json_error("Token expirado", 401)


@app.errorhandler(jwt.PyJWTError)
def _err_jwt(_e):
    return json_error("Token inválido", 401)


@app.errorhandler(HTTPException)
def _err_http(e):
    if e.code == 404 and request.url_rule is None:
        return json_error(f"Ruta no encontrada: {request.path}", 404)
    return json_error(HTTP_MESSAGES.get(e.code, e.description), e.code)


@app.errorhandler(Exception)
def _err_unhandled(e):
    db.session.rollback()
    app.logger.exception("Unhandled error on %s %s", request.method, request.path)
    if IS_PRODUCTION:
        return json_error("Error interno del servidor", 500)
    body = {"success": False, "error": str(e) or "Error interno del servidor", "tipo": type(e).__name__}
    return jsonify(body), 500


@app.before_request
def _start_timer():
    g.request_started = time.perf_counter()


@app.after_request
def _after(resp):
    origin = request.headers.get("Origin")
    if "*" in CORS_ORIGINS:
        resp.headers["Access-Control-Allow-Origin"] = "*"
    elif origin and origin in CORS_ORIGINS:
        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Vary"] = "Origin"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
    resp.headers["X-Content-Type-Options"] = "nosniff"
    resp.headers["X-Frame-Options"] = "DENY"
    resp.headers["Referrer-Policy"] = "no-referrer"

    started = g.get("request_started")
    elapsed = (time.perf_counter() - started) * 1000 if started else 0.0
    level = logging.WARNING if resp.status_code >= 400 else logging.INFO
    app.logger.log(level, "%s %s %s %.1fms", request.method, request.path, resp.status_code, elapsed)
    return resp


# ---------------------------
# Uploads
# ---------------------------

def save_image(tipo, prefix):
    """Store the multipart ``imagen`` field under uploads/<tipo>/ and return the file name.

    Returns None when the request carries no image.
    """
    f = request.files.get("imagen")
    if not f or not f.filename:
        return None

    original = secure_filename(f.filename)
    ext = Path(original).suffix.lower()
    if ext not in ALLOWED_IMAGE_EXTS:
        raise ApiError("Solo se permiten imágenes (jpg, jpeg, png, gif, webp)", 400)

    f.stream.seek(0, os.SEEK_END)
    size = f.stream.tell()
    f.stream.seek(0)
    limit = IMAGE_LIMITS.get(tipo, 5 * 1024 * 1024)
    if size > limit:
        raise ApiError(f"La imagen excede el tamaño máximo de {limit // (1024 * 1024)} MB", 400)

    folder = os.path.join(UPLOAD_PATH, tipo)
    os.makedirs(folder, exist_ok=True)
    fname = f"{prefix}_{uuid.uuid4()}{ext}"
    f.save(os.path.join(folder, fname))
    return fname


def remove_image(tipo, fname):
    if not fname or fname == DEFAULT_IMAGE:
        return False
    path = os.path.join(UPLOAD_PATH, tipo, secure_filename(fname))
    if os.path.isfile(path):
        os.remove(path)
        return True
    return False


@app.route("/uploads/<tipo>/<path:filename>", methods=["GET"])
def uploads_static(tipo, filename):
    if tipo not in UPLOAD_TYPES:
        abort(404)
    return send_from_directory(os.path.join(UPLOAD_PATH, tipo), filename)


@app.route("/api/uploads/<tipo>/<filename>", methods=["DELETE"])
@require_roles()
def api_upload_delete(tipo, filename):
    if tipo not in UPLOAD_TYPES:
        return json_error("Tipo de archivo no válido", 400)
    if filename == DEFAULT_IMAGE:
        return json_error("No se puede eliminar la imagen por defecto", 400)
    if not remove_image(tipo, filename):
        return json_error("Archivo no encontrado", 404)
    audit("delete", "upload", None, {"tipo": tipo, "archivo": filename})
    return jsonify({"success": True, "message": "Archivo eliminado correctamente"})


# ---------------------------
# System
# ---------------------------

DEFAULT_PAYMENT_METHODS = [
    ("efectivo", "Pago en efectivo al recibir el pedido", False),
    ("tarjeta", "Tarjeta de crédito o débito", False),
    ("yape", "Pago con Yape", True),
    ("transferencia", "Transferencia bancaria", True),
]


def seed_defaults():
    messages = []

    if not User.query.filter_by(rol=UserRole.ADMIN.value).first():
        admin = User(nombre="Administrador", apellidos="VeneBurger", email="admin@veneburger.local",
                     rol=UserRole.ADMIN.value, activo=True)
        admin.set_password(os.environ.get("ADMIN_PASSWORD", "admin12345"))
        db.session.add(admin)
        messages.append("Administrador por defecto creado: admin@veneburger.local")

    if PaymentMethod.query.count() == 0:
        for nombre, descripcion, confirm in DEFAULT_PAYMENT_METHODS:
            db.session.add(PaymentMethod(nombre=nombre, descripcion=descripcion,
                                         requiere_confirmacion=confirm, activo=True))
        messages.append("Métodos de pago creados")

    if AttentionSchedule.query.count() == 0:
        for dia in WEEKDAYS:
            closing = "23:30" if dia in ("viernes", "sabado") else "22:00"
            db.session.add(AttentionSchedule(
                dia_semana=dia,
                hora_apertura=datetime.strptime("12:00", "%H:%M").time(),
                hora_cierre=datetime.strptime(closing, "%H:%M").time(),
                activo=True
            ))
        messages.append("Horario de atención creado")

    db.session.commit()
    return messages


@app.route("/api/system/init", methods=["POST"])
@limiter.limit("5 per minute")
def api_system_init():
    db.create_all()
    messages = seed_defaults()
    if messages:
        audit("seed", "system", None, {"pasos": messages})
        return jsonify({"success": True, "message": "Sistema inicializado", "detalles": messages})
    return jsonify({"success": True, "message": "El sistema ya estaba inicializado", "detalles": []})


@app.route("/health", methods=["GET"])
@limiter.exempt
def health():
    return jsonify({"success": True, "status": "ok", "time": now_utc().isoformat()})


@app.route("/api", methods=["GET"])
def api_info():
    return jsonify({
        "success": True,
        "nombre": "VeneBurger API",
        "version": "1.0.0",
        "entorno": APP_ENV,
    })


# ---------------------------
# Auth
# ---------------------------

@app.route("/api/auth/registro", methods=["POST"])
def api_register():
    bad = require_json()
    if bad:
        return bad
    data = RegisterIn.model_validate(request.get_json())

    if User.query.filter_by(email=data.email).first():
        return json_error("El email ya está registrado", 400)

    u = User(rol=UserRole.CLIENTE.value, activo=True, **data.model_dump(exclude={"password"}))
    if not u.ciudad:
        u.ciudad = "Lima"
    u.set_password(data.password)
    db.session.add(u)
    db.session.commit()
    audit("register", "usuario", u.id)

    return jsonify({"success": True, "token": issue_token(u), "usuario": u.to_dict()}), 201


@app.route("/api/auth/login", methods=["POST"])
@limiter.limit("10 per minute", methods=["POST"])
def api_login():
    bad = require_json()
    if bad:
        return bad
    data = LoginIn.model_validate(request.get_json())

    user = User.query.filter_by(email=data.email).first()
    if not user or not user.check_password(data.password):
        return json_error("Credenciales inválidas", 401)
    if not user.activo:
        return json_error("Usuario inactivo, contacte al administrador", 401)

    user.ultimo_login = now_utc()
    db.session.commit()
    audit("login", "usuario", user.id)

    return jsonify({"success": True, "token": issue_token(user), "usuario": user.to_dict()})


@app.route("/api/auth/perfil", methods=["GET"])
@login_required
def api_profile():
    return jsonify({"success": True, "usuario": current_user.to_dict()})


@app.route("/api/auth/actualizar-password", methods=["PATCH"])
@login_required
def api_change_password():
    bad = require_json()
    if bad:
        return bad
    data = PasswordChangeIn.model_validate(request.get_json())
    if not data.password_actual or not current_user.check_password(data.password_actual):
        return json_error("La contraseña actual es incorrecta", 400)

    current_user.set_password(data.password_nuevo)
    db.session.commit()
    audit("change_password", "usuario", current_user.id)
    return jsonify({"success": True, "message": "Contraseña actualizada correctamente"})


def send_password_reset(user, token):
    """Deliver a password reset token to the account owner.

    No mail relay is configured, so the message is written to the
    ``veneburger.mail`` log where an operator can forward it.
    """
    mail_logger.info("Recuperación de contraseña para %s: token=%s", user.email, token)


@app.route("/api/auth/olvide-password", methods=["POST"])
@limiter.limit("5 per minute")
def api_forgot_password():
    bad = require_json()
    if bad:
        return bad
    data = ForgotPasswordIn.model_validate(request.get_json())
    user = User.query.filter_by(email=data.email, activo=True).first()
    if user:
        token = serializer.dumps({"uid": user.id, "email": user.email}, salt="reset-password")
        send_password_reset(user, token)
        audit("forgot_password", "usuario", user.id)
    return jsonify({
        "success": True,
        "message": "Si la cuenta existe, se enviaron las instrucciones de recuperación"
    })


@app.route("/api/auth/reset-password", methods=["POST"])
def api_reset_password():
    bad = require_json()
    if bad:
        return bad
    data = ResetPasswordIn.model_validate(request.get_json())
    try:
        payload = serializer.loads(data.token, salt="reset-password", max_age=3600)
    except SignatureExpired:
        return json_error("El token de recuperación ha expirado", 400)
    except BadSignature:
        return json_error("Token de recuperación inválido", 400)

    user = db.session.get(User, int(payload.get("uid") or 0))
    if not user or user.email != payload.get("email") or not user.activo:
        return json_error("Token de recuperación inválido", 400)

    user.set_password(data.password_nuevo)
    db.session.commit()
    audit("reset_password", "usuario", user.id)
    return jsonify({"success": True, "message": "Contraseña restablecida correctamente"})


# ---------------------------
# Users
# ---------------------------

def can_manage_user(user_id):
    return current_user.rol == UserRole.ADMIN.value or current_user.id == user_id


@app.route("/api/usuarios", methods=["GET"])
@require_roles()
def api_users_list():
    q = User.query
    rol = request.args.get("rol")
    if rol:
        q = q.filter(User.rol == rol)
    activo = arg_bool("activo")
    if activo is not None:
        q = q.filter(User.activo.is_(activo))
    buscar = (request.args.get("buscar") or "").strip()
    if buscar:
        like = f"%{buscar}%"
        q = q.filter(sa_or(User.nombre.ilike(like), User.apellidos.ilike(like), User.email.ilike(like)))

    pagina, limite = page_args()
    rows, meta = paginated(q.order_by(User.fecha_registro.desc(), User.id.desc()), pagina, limite)
    return jsonify({"success": True, "usuarios": [u.to_dict() for u in rows], **meta})


@app.route("/api/usuarios", methods=["POST"])
@require_roles()
def api_users_create():
    bad = require_json()
    if bad:
        return bad
    data = UserCreateIn.model_validate(request.get_json())
    if User.query.filter_by(email=data.email).first():
        return json_error("El email ya está registrado", 400)

    u = User(**data.model_dump(exclude={"password"}))
    if not u.ciudad:
        u.ciudad = "Lima"
    u.set_password(data.password)
    db.session.add(u)
    db.session.commit()
    audit("create", "usuario", u.id, {"rol": u.rol})
    return jsonify({"success": True, "usuario": u.to_dict()}), 201


@app.route("/api/usuarios/<int:user_id>", methods=["GET"])
@login_required
def api_users_get(user_id):
    if not can_manage_user(user_id):
        return json_error("No tienes permiso para ver este usuario", 403)
    u = User.query.get_or_404(user_id)
    return jsonify({"success": True, "usuario": u.to_dict()})


@app.route("/api/usuarios/<int:user_id>", methods=["PUT"])
@login_required
def api_users_update(user_id):
    bad = require_json()
    if bad:
        return bad
    if not can_manage_user(user_id):
        return json_error("No tienes permiso para modificar este usuario", 403)
    u = User.query.get_or_404(user_id)
    changes = UserUpdateIn.model_validate(request.get_json()).model_dump(exclude_unset=True)

    if ("rol" in changes or "activo" in changes) and current_user.rol != UserRole.ADMIN.value:
        return json_error("Solo un administrador puede cambiar el rol o el estado", 403)
    if "email" in changes and changes["email"] != u.email:
        if User.query.filter(User.email == changes["email"], User.id != u.id).first():
            return json_error("El email ya está registrado", 400)

    for field, value in changes.items():
        if field in ("nombre", "email", "rol", "activo") and value is None:
            continue
        setattr(u, field, value)

    db.session.commit()
    audit("update", "usuario", u.id, {"campos": sorted(changes)})
    return jsonify({"success": True, "usuario": u.to_dict()})


@app.route("/api/usuarios/<int:user_id>/password", methods=["PATCH"])
@login_required
def api_users_password(user_id):
    bad = require_json()
    if bad:
        return bad
    if not can_manage_user(user_id):
        return json_error("No tienes permiso para modificar este usuario", 403)
    u = User.query.get_or_404(user_id)
    data = PasswordChangeIn.model_validate(request.get_json())

    if current_user.rol != UserRole.ADMIN.value:
        if not data.password_actual or not u.check_password(data.password_actual):
            return json_error("La contraseña actual es incorrecta", 400)

    u.set_password(data.password_nuevo)
    db.session.commit()
    audit("change_password", "usuario", u.id)
    return jsonify({"success": True, "message": "Contraseña actualizada correctamente"})


@app.route("/api/usuarios/<int:user_id>", methods=["DELETE"])
@require_roles()
def api_users_delete(user_id):
    u = User.query.get_or_404(user_id)
    if u.id == current_user.id:
        return json_error("No puedes eliminar tu propia cuenta", 400)

    active = Order.query.filter(Order.usuario_id == u.id, Order.estado.in_(ACTIVE_ORDER_STATUSES)).count()
    if active:
        return json_error("No se puede eliminar un usuario con pedidos activos", 400)

    marker = f".deleted.{int(time.time())}"
    u.email = u.email[:EMAIL_MAX_LENGTH - len(marker)] + marker
    u.activo = False
    db.session.commit()
    audit("delete", "usuario", u.id)
    return jsonify({"success": True, "message": "Usuario eliminado correctamente"})


# ---------------------------
# Categories
# ---------------------------

@app.route("/api/categorias", methods=["GET"])
def api_categories_list():
    q = Category.query
    activo = arg_bool("activo")
    if activo is not None:
        q = q.filter(Category.activo.is_(activo))
    cats = q.order_by(Category.orden.asc(), Category.nombre.asc()).all()
    return jsonify({"success": True, "categorias": [c.to_dict() for c in cats]})


@app.route("/api/categorias/<int:cat_id>", methods=["GET"])
def api_categories_get(cat_id):
    c = Category.query.get_or_404(cat_id)
    productos = (
        Product.query
        .filter_by(categoria_id=c.id, disponible=True)
        .order_by(Product.nombre.asc())
        .all()
    )
    out = c.to_dict()
    out["productos"] = [p.to_dict(with_category=False) for p in productos]
    return jsonify({"success": True, "categoria": out})


@app.route("/api/categorias", methods=["POST"])
@require_roles()
def api_categories_create():
    data = CategoryIn.model_validate(form_or_json())
    if Category.query.filter_by(codigo=data.codigo).first():
        return json_error("Ya existe una categoría con ese código", 400)

    c = Category(**data.model_dump())
    c.imagen = save_image("categorias", "categoria")
    db.session.add(c)
    db.session.commit()
    audit("create", "categoria", c.id)
    return jsonify({"success": True, "categoria": c.to_dict()}), 201


@app.route("/api/categorias/<int:cat_id>", methods=["PUT"])
@require_roles()
def api_categories_update(cat_id):
    c = Category.query.get_or_404(cat_id)
    changes = CategoryUpdateIn.model_validate(form_or_json()).model_dump(exclude_unset=True)

    if changes.get("codigo") and changes["codigo"] != c.codigo:
        if Category.query.filter(Category.codigo == changes["codigo"], Category.id != c.id).first():
            return json_error("Ya existe una categoría con ese código", 400)

    for field, value in changes.items():
        if value is None and field in ("codigo", "nombre", "orden", "activo"):
            continue
        setattr(c, field, value)

    new_image = save_image("categorias", "categoria")
    if new_image:
        remove_image("categorias", c.imagen)
        c.imagen = new_image

    c.fecha_actualizacion = now_utc()
    db.session.commit()
    audit("update", "categoria", c.id, {"campos": sorted(changes)})
    return jsonify({"success": True, "categoria": c.to_dict()})


@app.route("/api/categorias/<int:cat_id>", methods=["DELETE"])
@require_roles()
def api_categories_delete(cat_id):
    c = Category.query.get_or_404(cat_id)
    if Product.query.filter_by(categoria_id=c.id).count():
        return json_error("No se puede eliminar la categoría porque tiene productos asociados", 400)

    remove_image("categorias", c.imagen)
    db.session.delete(c)
    db.session.commit()
    audit("delete", "categoria", cat_id)
    return jsonify({"success": True, "message": "Categoría eliminada correctamente"})


# ---------------------------
# Products
# ---------------------------

@app.route("/api/productos", methods=["GET"])
def api_products_list():
    q = Product.query
    categoria_id = arg_int("categoria_id")
    if categoria_id:
        q = q.filter(Product.categoria_id == categoria_id)
    disponible = arg_bool("disponible")
    if disponible is not None:
        q = q.filter(Product.disponible.is_(disponible))
    destacado = arg_bool("destacado")
    if destacado is not None:
        q = q.filter(Product.destacado.is_(destacado))
    nombre = (request.args.get("nombre") or "").strip()
    if nombre:
        q = q.filter(Product.nombre.ilike(f"%{nombre}%"))

    pagina, limite = page_args()
    rows, meta = paginated(q.order_by(Product.nombre.asc(), Product.id.asc()), pagina, limite)
    return jsonify({"success": True, "productos": [p.to_dict() for p in rows], **meta})


@app.route("/api/productos/categoria/<int:cat_id>", methods=["GET"])
def api_products_by_category(cat_id):
    c = Category.query.get_or_404(cat_id)
    productos = (
        Product.query
        .filter_by(categoria_id=c.id, disponible=True)
        .order_by(Product.nombre.asc())
        .all()
    )
    return jsonify({
        "success": True,
        "categoria": {"id": c.id, "nombre": c.nombre, "codigo": c.codigo},
        "productos": [p.to_dict(with_category=False) for p in productos]
    })


@app.route("/api/productos/<int:product_id>", methods=["GET"])
def api_products_get(product_id):
    p = Product.query.get_or_404(product_id)
    return jsonify({"success": True, "producto": p.to_dict()})


@app.route("/api/productos", methods=["POST"])
@require_roles()
def api_products_create():
    data = ProductIn.model_validate(form_or_json())
    if not db.session.get(Category, data.categoria_id):
        return json_error("La categoría seleccionada no existe", 400)
    if data.codigo and Product.query.filter_by(codigo=data.codigo).first():
        return json_error("Ya existe un producto con ese código", 400)

    p = Product(**data.model_dump())
    p.precio = money(data.precio)
    p.imagen = save_image("productos", "producto") or DEFAULT_IMAGE
    db.session.add(p)
    db.session.commit()
    audit("create", "producto", p.id)
    return jsonify({"success": True, "producto": p.to_dict()}), 201


@app.route("/api/productos/<int:product_id>", methods=["PUT"])
@require_roles()
def api_products_update(product_id):
    p = Product.query.get_or_404(product_id)
    changes = ProductUpdateIn.model_validate(form_or_json()).model_dump(exclude_unset=True)

    if changes.get("categoria_id") and not db.session.get(Category, changes["categoria_id"]):
        return json_error("La categoría seleccionada no existe", 400)
    if changes.get("codigo") and changes["codigo"] != p.codigo:
        if Product.query.filter(Product.codigo == changes["codigo"], Product.id != p.id).first():
            return json_error("Ya existe un producto con ese código", 400)

    for field, value in changes.items():
        if value is None and field not in ("codigo", "descripcion"):
            continue
        if field == "precio":
            value = money(value)
        setattr(p, field, value)

    new_image = save_image("productos", "producto")
    if new_image:
        remove_image("productos", p.imagen)
        p.imagen = new_image

    p.fecha_actualizacion = now_utc()
    db.session.commit()
    audit("update", "producto", p.id, {"campos": sorted(changes)})
    return jsonify({"success": True, "producto": p.to_dict()})


@app.route("/api/productos/<int:product_id>", methods=["DELETE"])
@require_roles()
def api_products_delete(product_id):
    p = Product.query.get_or_404(product_id)
    if OrderLine.query.filter_by(producto_id=p.id).count():
        p.disponible = False
        p.fecha_actualizacion = now_utc()
        db.session.commit()
        audit("disable", "producto", p.id)
        return jsonify({
            "success": True,
            "message": "El producto tiene pedidos asociados, se marcó como no disponible",
            "producto": p.to_dict()
        })

    remove_image("productos", p.imagen)
    db.session.delete(p)
    db.session.commit()
    audit("delete", "producto", product_id)
    return jsonify({"success": True, "message": "Producto eliminado correctamente"})


@app.route("/api/productos/<int:product_id>/disponibilidad", methods=["PATCH"])
@require_roles()
def api_products_toggle(product_id):
    p = Product.query.get_or_404(product_id)
    data = AvailabilityIn.model_validate(request.get_json(silent=True) or {})
    p.disponible = not p.disponible if data.disponible is None else data.disponible
    p.fecha_actualizacion = now_utc()
    db.session.commit()
    audit("availability", "producto", p.id, {"disponible": p.disponible})
    return jsonify({"success": True, "producto": p.to_dict()})


# ---------------------------
# Cremas
# ---------------------------

@app.route("/api/cremas", methods=["GET"])
def api_cremas_list():
    q = Crema.query
    disponible = arg_bool("disponible")
    if disponible is not None:
        q = q.filter(Crema.disponible.is_(disponible))
    return jsonify({"success": True, "cremas": [c.to_dict() for c in q.order_by(Crema.nombre.asc()).all()]})


@app.route("/api/cremas/<int:crema_id>", methods=["GET"])
def api_cremas_get(crema_id):
    c = Crema.query.get_or_404(crema_id)
    return jsonify({"success": True, "crema": c.to_dict()})


@app.route("/api/cremas", methods=["POST"])
@require_roles()
def api_cremas_create():
    bad = require_json()
    if bad:
        return bad
    data = CremaIn.model_validate(request.get_json())
    if Crema.query.filter(func.lower(Crema.nombre) == data.nombre.lower()).first():
        return json_error("Ya existe una crema con ese nombre", 400)

    c = Crema(nombre=data.nombre.strip(), precio=money(data.precio), disponible=data.disponible)
    db.session.add(c)
    db.session.commit()
    audit("create", "crema", c.id)
    return jsonify({"success": True, "crema": c.to_dict()}), 201


@app.route("/api/cremas/<int:crema_id>", methods=["PUT"])
@require_roles()
def api_cremas_update(crema_id):
    bad = require_json()
    if bad:
        return bad
    c = Crema.query.get_or_404(crema_id)
    changes = CremaUpdateIn.model_validate(request.get_json()).model_dump(exclude_unset=True, exclude_none=True)

    if "nombre" in changes:
        other = Crema.query.filter(func.lower(Crema.nombre) == changes["nombre"].lower(), Crema.id != c.id).first()
        if other:
            return json_error("Ya existe una crema con ese nombre", 400)
        c.nombre = changes["nombre"].strip()
    if "precio" in changes:
        c.precio = money(changes["precio"])
    if "disponible" in changes:
        c.disponible = changes["disponible"]

    c.fecha_actualizacion = now_utc()
    db.session.commit()
    audit("update", "crema", c.id, {"campos": sorted(changes)})
    return jsonify({"success": True, "crema": c.to_dict()})


@app.route("/api/cremas/<int:crema_id>", methods=["DELETE"])
@require_roles()
def api_cremas_delete(crema_id):
    c = Crema.query.get_or_404(crema_id)
    if OrderLineCrema.query.filter_by(crema_id=c.id).count():
        c.disponible = False
        c.fecha_actualizacion = now_utc()
        db.session.commit()
        audit("disable", "crema", c.id)
        return jsonify({
            "success": True,
            "message": "La crema tiene pedidos asociados, se marcó como no disponible",
            "crema": c.to_dict()
        })

    db.session.delete(c)
    db.session.commit()
    audit("delete", "crema", crema_id)
    return jsonify({"success": True, "message": "Crema eliminada correctamente"})


@app.route("/api/cremas/<int:crema_id>/disponibilidad", methods=["PATCH"])
@require_roles()
def api_cremas_toggle(crema_id):
    c = Crema.query.get_or_404(crema_id)
    data = AvailabilityIn.model_validate(request.get_json(silent=True) or {})
    c.disponible = not c.disponible if data.disponible is None else data.disponible
    c.fecha_actualizacion = now_utc()
    db.session.commit()
    audit("availability", "crema", c.id, {"disponible": c.disponible})
    return jsonify({"success": True, "crema": c.to_dict()})


# ---------------------------
# Tables
# ---------------------------

def parse_hhmm(raw, field="hora"):
    try:
        return datetime.strptime(str(raw), "%H:%M").time()
    except (TypeError, ValueError):
        raise ApiError(f"Formato de hora inválido en {field} (use HH:MM)", 400)


@app.route("/api/mesas", methods=["GET"])
@login_required
def api_tables_list():
    q = DiningTable.query
    estado = request.args.get("estado")
    if estado:
        q = q.filter(DiningTable.estado == estado)
    ubicacion = request.args.get("ubicacion")
    if ubicacion:
        q = q.filter(DiningTable.ubicacion == ubicacion)
    activo = arg_bool("activo")
    if activo is not None:
        q = q.filter(DiningTable.activo.is_(activo))
    mesas = q.order_by(DiningTable.numero.asc()).all()
    return jsonify({"success": True, "mesas": [m.to_dict() for m in mesas]})


@app.route("/api/mesas/disponibilidad", methods=["GET"])
@login_required
def api_tables_availability():
    if not request.args.get("fecha") or not request.args.get("hora"):
        return json_error("Se requieren los parámetros fecha y hora", 400)
    fecha = parse_date(request.args.get("fecha"))
    hora = parse_hhmm(request.args.get("hora"))
    personas = arg_int("personas", 1, minimum=1, maximum=50)

    busy = (
        db.session.query(Reservation.mesa_id)
        .filter(
            Reservation.fecha_reserva == fecha,
            Reservation.estado.in_([ReservationStatus.PENDIENTE.value, ReservationStatus.CONFIRMADA.value]),
            Reservation.hora_inicio <= hora,
            Reservation.hora_fin > hora,
        )
    )
    mesas = (
        DiningTable.query
        .filter(
            DiningTable.activo.is_(True),
            DiningTable.estado == TableStatus.DISPONIBLE.value,
            DiningTable.capacidad >= personas,
            DiningTable.id.notin_(busy),
        )
        .order_by(DiningTable.capacidad.asc(), DiningTable.numero.asc())
        .all()
    )
    return jsonify({
        "success": True,
        "fecha": fecha.isoformat(),
        "hora": hora.strftime("%H:%M"),
        "personas": personas,
        "mesas": [m.to_dict() for m in mesas]
    })


@app.route("/api/mesas/<int:table_id>", methods=["GET"])
@login_required
def api_tables_get(table_id):
    m = DiningTable.query.get_or_404(table_id)
    return jsonify({"success": True, "mesa": m.to_dict()})


@app.route("/api/mesas", methods=["POST"])
@require_roles()
def api_tables_create():
    bad = require_json()
    if bad:
        return bad
    data = TableIn.model_validate(request.get_json())
    if DiningTable.query.filter_by(numero=data.numero).first():
        return json_error(f"Ya existe una mesa con el número {data.numero}", 400)

    m = DiningTable(**data.model_dump())
    db.session.add(m)
    db.session.commit()
    audit("create", "mesa", m.id)
    return jsonify({"success": True, "mesa": m.to_dict()}), 201


@app.route("/api/mesas/<int:table_id>", methods=["PUT"])
@require_roles()
def api_tables_update(table_id):
    bad = require_json()
    if bad:
        return bad
    m = DiningTable.query.get_or_404(table_id)
    changes = TableUpdateIn.model_validate(request.get_json()).model_dump(exclude_unset=True, exclude_none=True)

    if "numero" in changes and changes["numero"] != m.numero:
        if DiningTable.query.filter(DiningTable.numero == changes["numero"], DiningTable.id != m.id).first():
            return json_error(f"Ya existe una mesa con el número {changes['numero']}", 400)

    for field, value in changes.items():
        setattr(m, field, value)
    m.fecha_actualizacion = now_utc()
    db.session.commit()
    audit("update", "mesa", m.id, {"campos": sorted(changes)})
    return jsonify({"success": True, "mesa": m.to_dict()})


@app.route("/api/mesas/<int:table_id>", methods=["DELETE"])
@require_roles()
def api_tables_delete(table_id):
    m = DiningTable.query.get_or_404(table_id)
    if Order.query.filter_by(mesa_id=m.id).count():
        return json_error("No se puede eliminar la mesa porque tiene pedidos asociados", 400)
    upcoming = Reservation.query.filter(
        Reservation.mesa_id == m.id,
        Reservation.fecha_reserva >= date.today(),
        Reservation.estado.in_([ReservationStatus.PENDIENTE.value, ReservationStatus.CONFIRMADA.value]),
    ).count()
    if upcoming:
        return json_error("No se puede eliminar la mesa porque tiene reservas futuras", 400)

    if Reservation.query.filter_by(mesa_id=m.id).count():
        m.activo = False
        m.fecha_actualizacion = now_utc()
        db.session.commit()
        audit("disable", "mesa", m.id)
        return jsonify({
            "success": True,
            "message": "La mesa tiene reservas anteriores, se marcó como inactiva",
            "mesa": m.to_dict()
        })

    db.session.delete(m)
    db.session.commit()
    audit("delete", "mesa", table_id)
    return jsonify({"success": True, "message": "Mesa eliminada correctamente"})


@app.route("/api/mesas/<int:table_id>/estado", methods=["PATCH"])
@require_roles()
def api_tables_status(table_id):
    bad = require_json()
    if bad:
        return bad
    m = DiningTable.query.get_or_404(table_id)
    data = TableStatusIn.model_validate(request.get_json())
    previous = m.estado
    m.estado = data.estado
    m.fecha_actualizacion = now_utc()
    db.session.commit()
    audit("status", "mesa", m.id, {"de": previous, "a": m.estado})
    return jsonify({"success": True, "mesa": m.to_dict()})


# ---------------------------
# Special days / attention schedule
# ---------------------------

def schedule_for(d: date):
    return AttentionSchedule.query.filter_by(dia_semana=WEEKDAYS[d.weekday()]).first()


@app.route("/api/dias-especiales/verificar/<fecha>", methods=["GET"])
def api_special_days_check(fecha):
    d = parse_date(fecha)
    sd = SpecialDay.query.filter_by(fecha=d, activo=True).first()
    if sd:
        return jsonify({
            "success": True,
            "fecha": d.isoformat(),
            "es_especial": True,
            "abierto": sd.tipo != SpecialDayType.CERRADO.value,
            "dia_especial": sd.to_dict(),
        })

    horario = schedule_for(d)
    return jsonify({
        "success": True,
        "fecha": d.isoformat(),
        "es_especial": False,
        "abierto": bool(horario and horario.activo),
        "horario": horario.to_dict() if horario else None,
    })


@app.route("/api/dias-especiales", methods=["GET"])
@login_required
def api_special_days_list():
    q = SpecialDay.query
    if request.args.get("desde"):
        q = q.filter(SpecialDay.fecha >= parse_date(request.args.get("desde"), "desde"))
    if request.args.get("hasta"):
        q = q.filter(SpecialDay.fecha <= parse_date(request.args.get("hasta"), "hasta"))
    tipo = request.args.get("tipo")
    if tipo:
        q = q.filter(SpecialDay.tipo == tipo)
    rows = q.order_by(SpecialDay.fecha.asc()).all()
    return jsonify({"success": True, "dias_especiales": [d.to_dict() for d in rows]})


@app.route("/api/dias-especiales/<int:day_id>", methods=["GET"])
@login_required
def api_special_days_get(day_id):
    sd = SpecialDay.query.get_or_404(day_id)
    return jsonify({"success": True, "dia_especial": sd.to_dict()})


@app.route("/api/dias-especiales", methods=["POST"])
@require_roles()
def api_special_days_create():
    bad = require_json()
    if bad:
        return bad
    data = SpecialDayIn.model_validate(request.get_json())
    if SpecialDay.query.filter_by(fecha=data.fecha).first():
        return json_error("Ya existe un día especial para esa fecha", 400)

    sd = SpecialDay(**data.model_dump())
    db.session.add(sd)
    db.session.commit()
    audit("create", "dia_especial", sd.id, {"fecha": sd.fecha})
    return jsonify({"success": True, "dia_especial": sd.to_dict()}), 201


@app.route("/api/dias-especiales/<int:day_id>", methods=["PUT"])
@require_roles()
def api_special_days_update(day_id):
    bad = require_json()
    if bad:
        return bad
    sd = SpecialDay.query.get_or_404(day_id)
    changes = SpecialDayUpdateIn.model_validate(request.get_json()).model_dump(exclude_unset=True)

    merged = {
        "fecha": sd.fecha,
        "tipo": sd.tipo,
        "hora_apertura": sd.hora_apertura,
        "hora_cierre": sd.hora_cierre,
        "descripcion": sd.descripcion,
        "activo": sd.activo,
    }
    merged.update({k: v for k, v in changes.items() if v is not None or k in ("hora_apertura", "hora_cierre", "descripcion")})
    data = SpecialDayIn.model_validate(merged)

    for field, value in data.model_dump(exclude={"fecha"}).items():
        setattr(sd, field, value)
    sd.fecha_actualizacion = now_utc()
    db.session.commit()
    audit("update", "dia_especial", sd.id, {"campos": sorted(changes)})
    return jsonify({"success": True, "dia_especial": sd.to_dict()})


@app.route("/api/dias-especiales/<int:day_id>", methods=["DELETE"])
@require_roles()
def api_special_days_delete(day_id):
    sd = SpecialDay.query.get_or_404(day_id)
    if sd.fecha < date.today():
        return json_error("No se pueden eliminar días especiales pasados", 400)
    db.session.delete(sd)
    db.session.commit()
    audit("delete", "dia_especial", day_id)
    return jsonify({"success": True, "message": "Día especial eliminado correctamente"})


@app.route("/api/horarios", methods=["GET"])
def api_schedules_list():
    rows = {h.dia_semana: h for h in AttentionSchedule.query.all()}
    return jsonify({
        "success": True,
        "horarios": [rows[d].to_dict() for d in WEEKDAYS if d in rows]
    })


@app.route("/api/horarios/<dia_semana>", methods=["PUT"])
@require_roles()
def api_schedules_update(dia_semana):
    bad = require_json()
    if bad:
        return bad
    dia = dia_semana.strip().lower()
    if dia not in WEEKDAYS:
        return json_error(f"Día de la semana inválido: {dia_semana}", 400)
    data = ScheduleIn.model_validate(request.get_json())

    h = AttentionSchedule.query.filter_by(dia_semana=dia).first()
    if not h:
        h = AttentionSchedule(dia_semana=dia)
        db.session.add(h)
    h.hora_apertura = data.hora_apertura
    h.hora_cierre = data.hora_cierre
    h.activo = data.activo
    db.session.commit()
    audit("update", "horario", h.id, {"dia": dia})
    return jsonify({"success": True, "horario": h.to_dict()})


@app.route("/api/metodos-pago", methods=["GET"])
def api_payment_methods_list():
    rows = PaymentMethod.query.filter_by(activo=True).order_by(PaymentMethod.id.asc()).all()
    return jsonify({"success": True, "metodos_pago": [m.to_dict() for m in rows]})


# ---------------------------
# Orders
# ---------------------------

TERMINAL_ORDER_STATUSES = (OrderStatus.ENTREGADO.value, OrderStatus.CANCELADO.value)

STATUS_TIMESTAMPS = {
    OrderStatus.PREPARANDO.value: "fecha_preparacion",
    OrderStatus.LISTO.value: "fecha_listo",
    OrderStatus.EN_CAMINO.value: "fecha_en_camino",
    OrderStatus.ENTREGADO.value: "fecha_entrega",
    OrderStatus.CANCELADO.value: "fecha_cancelacion",
}


def order_accessible_to_current_user(order: Order) -> bool:
    if current_user.rol == UserRole.ADMIN.value:
        return True
    if current_user.rol == UserRole.REPARTIDOR.value:
        return order.tipo == OrderType.DELIVERY.value and order.repartidor_id == current_user.id
    return order.usuario_id == current_user.id


def orders_query_for_current_user(q):
    if current_user.rol == UserRole.REPARTIDOR.value:
        return q.filter(Order.repartidor_id == current_user.id)
    if current_user.rol != UserRole.ADMIN.value:
        return q.filter(Order.usuario_id == current_user.id)
    return q


def place_order(data: OrderCreateIn, user: User) -> Order:
    """Validate a cart and stage the order, its lines, add-ons and payment in the session.

    Checks run in a fixed order: type specific fields, payment method, table,
    products, then cremas. The first failure raises ApiError; the caller's
    rollback discards everything staged so far, including the table flip.
    """
    if data.tipo == OrderType.DELIVERY.value and (not data.direccion_entrega or not data.telefono_contacto):
        raise ApiError("Para pedidos a domicilio se requiere dirección y teléfono", 400)
    if data.tipo == OrderType.LOCAL.value and not data.mesa_id:
        raise ApiError("Para pedidos en local se requiere indicar la mesa", 400)
    if not data.productos:
        raise ApiError("El pedido debe incluir al menos un producto", 400)

    metodo = db.session.get(PaymentMethod, data.metodo_pago_id)
    if not metodo or not metodo.activo:
        raise ApiError("El método de pago seleccionado no está disponible", 400)

    mesa = None
    if data.tipo == OrderType.LOCAL.value:
        mesa = db.session.get(DiningTable, data.mesa_id)
        if not mesa:
            raise ApiError("La mesa seleccionada no existe", 404)
        if not mesa.activo or mesa.estado != TableStatus.DISPONIBLE.value:
            raise ApiError("La mesa seleccionada no está disponible", 400)
        mesa.estado = TableStatus.OCUPADA.value
        mesa.fecha_actualizacion = now_utc()

    lines = []
    subtotal = Decimal("0.00")
    for item in data.productos:
        producto = db.session.get(Product, item.producto_id)
        if not producto:
            raise ApiError(f"El producto con ID {item.producto_id} no existe", 404)
        if not producto.disponible:
            raise ApiError(f"El producto {producto.nombre} no está disponible", 400)

        precio = money(producto.precio)
        line_total = money(precio * item.cantidad)

        cremas = []
        for crema_id in item.cremas:
            crema = db.session.get(Crema, crema_id)
            if not crema:
                raise ApiError(f"La crema con ID {crema_id} no existe", 404)
            if not crema.disponible:
                raise ApiError(f"La crema {crema.nombre} no está disponible", 400)
            cremas.append(crema)

        line = OrderLine(
            producto=producto,
            cantidad=item.cantidad,
            precio_unitario=precio,
            descuento_unitario=Decimal("0.00"),
            subtotal=line_total,
            notas=item.notas,
        )
        for crema in cremas:
            line.cremas.append(OrderLineCrema(crema=crema, cantidad=1))
        lines.append(line)
        subtotal += line_total

    descuento = Decimal("0.00")
    costo_envio = SHIPPING_COST if data.tipo == OrderType.DELIVERY.value else Decimal("0.00")
    total = money(subtotal - descuento + costo_envio)
    now = now_utc()

    order = Order(
        codigo=unique_code("VB", Order),
        usuario_id=user.id,
        mesa_id=mesa.id if mesa else None,
        nombre_cliente=data.nombre_cliente or " ".join(p for p in (user.nombre, user.apellidos) if p),
        tipo=data.tipo,
        estado=OrderStatus.PENDIENTE.value,
        subtotal=money(subtotal),
        descuento=descuento,
        costo_envio=costo_envio,
        total=total,
        direccion_entrega=data.direccion_entrega,
        referencia_direccion=data.referencia_direccion,
        distrito=data.distrito,
        ciudad=data.ciudad or "Lima",
        telefono_contacto=data.telefono_contacto or user.telefono,
        email_contacto=data.email_contacto or user.email,
        tiempo_estimado_entrega=45 if data.tipo == OrderType.DELIVERY.value else 30,
        fecha_pedido=now,
        fecha_actualizacion=now,
        notas=data.notas,
        origen="web",
    )
    order.detalles.extend(lines)

    needs_confirmation = bool(metodo.requiere_confirmacion)
    order.pagos.append(Payment(
        metodo_pago=metodo,
        monto=total,
        estado=PaymentStatus.PENDIENTE.value if needs_confirmation else PaymentStatus.COMPLETADO.value,
        fecha_pago=now,
        fecha_confirmacion=None if needs_confirmation else now,
    ))

    db.session.add(order)
    return order


def apply_transition(order: Order, data: OrderStatusIn):
    """Move an order to ``data.estado`` and apply that state's side effects."""
    if order.estado in TERMINAL_ORDER_STATUSES:
        raise ApiError(f"No se puede actualizar un pedido en estado {order.estado}", 400)
    if data.estado not in ORDER_TRANSITIONS.get(order.estado, []):
        raise ApiError(f"No se puede cambiar de estado {order.estado} a {data.estado}", 400)

    if data.estado == OrderStatus.CANCELADO.value and not (data.motivo_cancelacion or "").strip():
        raise ApiError("Se requiere motivo de cancelación", 400)

    if data.estado == OrderStatus.EN_CAMINO.value:
        if not data.repartidor_id:
            raise ApiError("Se requiere asignar un repartidor", 400)
        repartidor = db.session.get(User, data.repartidor_id)
        if not repartidor or repartidor.rol != UserRole.REPARTIDOR.value or not repartidor.activo:
            raise ApiError("El repartidor seleccionado no existe o no está activo", 400)
        order.repartidor_id = repartidor.id

    now = now_utc()
    previous = order.estado
    order.estado = data.estado
    order.fecha_actualizacion = now
    setattr(order, STATUS_TIMESTAMPS[data.estado], now)
    if data.estado == OrderStatus.CANCELADO.value:
        order.motivo_cancelacion = data.motivo_cancelacion.strip()

    if data.estado in TERMINAL_ORDER_STATUSES and order.tipo == OrderType.LOCAL.value and order.mesa_id:
        mesa = db.session.get(DiningTable, order.mesa_id)
        if mesa:
            mesa.estado = TableStatus.DISPONIBLE.value
            mesa.fecha_actualizacion = now

    return previous


@app.route("/api/pedidos", methods=["GET"])
@login_required
def api_orders_list():
    q = orders_query_for_current_user(Order.query)

    for arg, col in (("estado", Order.estado), ("tipo", Order.tipo)):
        value = request.args.get(arg)
        if value:
            q = q.filter(col == value)
    for arg, col in (("usuario_id", Order.usuario_id), ("repartidor_id", Order.repartidor_id), ("mesa_id", Order.mesa_id)):
        value = arg_int(arg)
        if value:
            q = q.filter(col == value)
    if request.args.get("desde"):
        q = q.filter(Order.fecha_pedido >= parse_date(request.args.get("desde"), "desde"))
    if request.args.get("hasta"):
        hasta = parse_date(request.args.get("hasta"), "hasta") + timedelta(days=1)
        q = q.filter(Order.fecha_pedido < hasta)

    pagina, limite = page_args()
    rows, meta = paginated(q.order_by(Order.fecha_pedido.desc(), Order.id.desc()), pagina, limite)
    return jsonify({"success": True, "pedidos": [o.to_summary() for o in rows], **meta})


@app.route("/api/pedidos/estadisticas", methods=["GET"])
@require_roles()
def api_orders_stats():
    now = now_utc()
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    week_start = now - timedelta(days=7)

    by_status = db.session.query(Order.estado, func.count(Order.id)).group_by(Order.estado).all()
    by_type = db.session.query(Order.tipo, func.count(Order.id)).group_by(Order.tipo).all()

    def sales_since(start):
        value = (
            db.session.query(func.coalesce(func.sum(Order.total), 0))
            .filter(Order.fecha_pedido >= start, Order.estado != OrderStatus.CANCELADO.value)
            .scalar()
        )
        return str(money(value))

    return jsonify({
        "success": True,
        "total_pedidos": Order.query.count(),
        "pedidos_por_estado": {str(st): int(n) for st, n in by_status},
        "pedidos_por_tipo": {str(t): int(n) for t, n in by_type},
        "ventas_hoy": sales_since(today_start),
        "ventas_semana": sales_since(week_start),
    })


@app.route("/api/pedidos/<int:order_id>", methods=["GET"])
@login_required
def api_orders_get(order_id):
    o = Order.query.get_or_404(order_id)
    if not order_accessible_to_current_user(o):
        return json_error("No tienes permiso para ver este pedido", 403)
    return jsonify({"success": True, "pedido": o.to_dict()})


@app.route("/api/pedidos", methods=["POST"])
@login_required
@limiter.limit("60 per minute")
def api_orders_create():
    bad = require_json()
    if bad:
        return bad
    data = OrderCreateIn.model_validate(request.get_json())

    o = place_order(data, current_user)
    db.session.commit()
    audit("create", "pedido", o.id, {"codigo": o.codigo, "tipo": o.tipo, "total": o.total})

    return jsonify({
        "success": True,
        "message": "Pedido creado correctamente",
        "pedido": {
            "id": o.id,
            "codigo": o.codigo,
            "total": str(money(o.total)),
            "estado": o.estado,
            "fecha_pedido": o.fecha_pedido.isoformat(),
            "tiempo_estimado_entrega": o.tiempo_estimado_entrega,
        }
    }), 201


@app.route("/api/pedidos/<int:order_id>/estado", methods=["PATCH"])
@require_roles(UserRole.REPARTIDOR.value)
def api_orders_status(order_id):
    bad = require_json()
    if bad:
        return bad
    o = Order.query.get_or_404(order_id)
    if current_user.rol == UserRole.REPARTIDOR.value and o.repartidor_id != current_user.id:
        return json_error("No tienes permiso para actualizar este pedido", 403)
    data = OrderStatusIn.model_validate(request.get_json())

    previous = apply_transition(o, data)
    db.session.commit()
    audit("status", "pedido", o.id, {"de": previous, "a": o.estado})

    return jsonify({
        "success": True,
        "message": f"Pedido actualizado a estado: {o.estado}",
        "pedido": {"id": o.id, "codigo": o.codigo, "estado": o.estado}
    })


@app.route("/api/pedidos/<int:order_id>/calificar", methods=["PATCH"])
@login_required
def api_orders_rate(order_id):
    bad = require_json()
    if bad:
        return bad
    data = RatingIn.model_validate(request.get_json())
    o = Order.query.get_or_404(order_id)
    if o.usuario_id != current_user.id:
        return json_error("No tienes permiso para calificar este pedido", 403)
    if o.estado != OrderStatus.ENTREGADO.value:
        return json_error("Sólo se pueden calificar pedidos entregados", 400)

    o.calificacion = data.calificacion
    o.comentario_calificacion = data.comentario_calificacion
    o.fecha_actualizacion = now_utc()
    db.session.commit()
    audit("rate", "pedido", o.id, {"calificacion": o.calificacion})
    return jsonify({
        "success": True,
        "message": "Calificación registrada correctamente",
        "pedido": {"id": o.id, "calificacion": o.calificacion, "comentario_calificacion": o.comentario_calificacion}
    })


def build_receipt_pdf(order: Order) -> bytes:
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=letter)
    width, height = letter

    c.setFont("Helvetica-Bold", 14)
    c.drawString(40, height - 50, RESTAURANT_NAME)

    c.setFont("Helvetica", 10)
    c.drawString(40, height - 70, f"Pedido: {order.codigo}")
    c.drawString(40, height - 85, f"Tipo: {order.tipo}")
    c.drawString(40, height - 100, f"Estado: {order.estado}")
    c.drawString(40, height - 115, f"Fecha: {order.fecha_pedido:%Y-%m-%d %H:%M}")
    if order.nombre_cliente:
        c.drawString(300, height - 70, f"Cliente: {order.nombre_cliente[:40]}")
    if order.direccion_entrega:
        c.drawString(300, height - 85, f"Dirección: {order.direccion_entrega[:40]}")

    y = height - 145
    c.setFont("Helvetica-Bold", 10)
    c.drawString(40, y, "Producto")
    c.drawString(330, y, "Cant.")
    c.drawString(390, y, "P. Unit")
    c.drawString(480, y, "Subtotal")
    y -= 12
    c.line(40, y, 560, y)
    y -= 14

    def next_row(y):
        y -= 14
        if y < 100:
            c.showPage()
            c.setFont("Helvetica", 10)
            y = height - 60
        return y

    c.setFont("Helvetica", 10)
    for line in order.detalles:
        name = line.producto.nombre if line.producto else f"Producto {line.producto_id}"
        c.drawString(40, y, name[:45])
        c.drawRightString(360, y, str(int(line.cantidad)))
        c.drawRightString(430, y, f"{money(line.precio_unitario):.2f}")
        c.drawRightString(560, y, f"{money(line.subtotal):.2f}")
        y = next_row(y)
        for extra in line.cremas:
            c.drawString(52, y, f"+ {extra.crema.nombre if extra.crema else extra.crema_id}"[:45])
            y = next_row(y)

    y -= 6
    c.line(40, y, 560, y)
    y -= 16
    for label, value in (
        ("Subtotal", order.subtotal),
        ("Descuento", order.descuento),
        ("Envío", order.costo_envio),
    ):
        c.drawRightString(480, y, f"{label}:")
        c.drawRightString(560, y, f"{money(value):.2f}")
        y -= 14
    c.setFont("Helvetica-Bold", 10)
    c.drawRightString(480, y, "Total:")
    c.drawRightString(560, y, f"{money(order.total):.2f}")

    c.showPage()
    c.save()
    return buffer.getvalue()


@app.route("/api/pedidos/<int:order_id>/comprobante.pdf", methods=["GET"])
@login_required
def api_orders_receipt(order_id):
    o = Order.query.get_or_404(order_id)
    if not order_accessible_to_current_user(o):
        return json_error("No tienes permiso para ver este pedido", 403)

    pdf_bytes = build_receipt_pdf(o)
    audit("receipt_pdf", "pedido", o.id)
    return send_file(
        io.BytesIO(pdf_bytes),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"comprobante_{o.codigo}.pdf"
    )


# ---------------------------
# Reservations
# ---------------------------

OPEN_RESERVATION_STATUSES = [ReservationStatus.PENDIENTE.value, ReservationStatus.CONFIRMADA.value]


@app.route("/api/reservas", methods=["GET"])
@login_required
def api_reservations_list():
    q = Reservation.query
    if current_user.rol != UserRole.ADMIN.value:
        q = q.filter(Reservation.usuario_id == current_user.id)
    if request.args.get("fecha"):
        q = q.filter(Reservation.fecha_reserva == parse_date(request.args.get("fecha")))
    estado = request.args.get("estado")
    if estado:
        q = q.filter(Reservation.estado == estado)

    pagina, limite = page_args()
    rows, meta = paginated(
        q.order_by(Reservation.fecha_reserva.desc(), Reservation.hora_inicio.asc()), pagina, limite
    )
    return jsonify({"success": True, "reservas": [r.to_dict() for r in rows], **meta})


@app.route("/api/reservas/<int:reservation_id>", methods=["GET"])
@login_required
def api_reservations_get(reservation_id):
    r = Reservation.query.get_or_404(reservation_id)
    if current_user.rol != UserRole.ADMIN.value and r.usuario_id != current_user.id:
        return json_error("No tienes permiso para ver esta reserva", 403)
    return jsonify({"success": True, "reserva": r.to_dict()})


@app.route("/api/reservas", methods=["POST"])
@login_required
def api_reservations_create():
    bad = require_json()
    if bad:
        return bad
    data = ReservationIn.model_validate(request.get_json())

    if data.fecha_reserva < date.today():
        return json_error("No se pueden hacer reservas en fechas pasadas", 400)
    closed = SpecialDay.query.filter_by(
        fecha=data.fecha_reserva, activo=True, tipo=SpecialDayType.CERRADO.value
    ).first()
    if closed:
        return json_error("El restaurante está cerrado en la fecha seleccionada", 400)

    mesa = db.session.get(DiningTable, data.mesa_id)
    if not mesa:
        return json_error("La mesa seleccionada no existe", 404)
    if not mesa.activo or mesa.estado == TableStatus.MANTENIMIENTO.value:
        return json_error("La mesa seleccionada no está disponible", 400)
    if data.num_personas > mesa.capacidad:
        return json_error(f"La mesa tiene capacidad para {mesa.capacidad} personas", 400)

    overlap = Reservation.query.filter(
        Reservation.mesa_id == mesa.id,
        Reservation.fecha_reserva == data.fecha_reserva,
        Reservation.estado.in_(OPEN_RESERVATION_STATUSES),
        Reservation.hora_inicio < data.hora_fin,
        Reservation.hora_fin > data.hora_inicio,
    ).first()
    if overlap:
        return json_error("La mesa ya está reservada en ese horario", 400)

    r = Reservation(
        codigo=unique_code("RS", Reservation),
        usuario_id=current_user.id,
        estado=ReservationStatus.PENDIENTE.value,
        **data.model_dump()
    )
    db.session.add(r)
    db.session.commit()
    audit("create", "reserva", r.id, {"codigo": r.codigo, "mesa_id": r.mesa_id})
    return jsonify({"success": True, "message": "Reserva creada correctamente", "reserva": r.to_dict()}), 201


@app.route("/api/reservas/<int:reservation_id>/estado", methods=["PATCH"])
@login_required
def api_reservations_status(reservation_id):
    bad = require_json()
    if bad:
        return bad
    r = Reservation.query.get_or_404(reservation_id)
    data = ReservationStatusIn.model_validate(request.get_json())

    is_admin = current_user.rol == UserRole.ADMIN.value
    if not is_admin:
        if r.usuario_id != current_user.id:
            return json_error("No tienes permiso para modificar esta reserva", 403)
        if data.estado != ReservationStatus.CANCELADA.value:
            return json_error("Solo puedes cancelar tus reservas", 403)
    if r.estado not in OPEN_RESERVATION_STATUSES:
        return json_error(f"No se puede actualizar una reserva en estado {r.estado}", 400)

    previous = r.estado
    r.estado = data.estado
    r.fecha_actualizacion = now_utc()
    db.session.commit()
    audit("status", "reserva", r.id, {"de": previous, "a": r.estado})
    return jsonify({"success": True, "reserva": r.to_dict()})


# ---------------------------
# Reports
# ---------------------------

MONTH_NAMES = [
    "Enero", "Febrero", "Marzo", "Abril", "Mayo", "Junio",
    "Julio", "Agosto", "Septiembre", "Octubre", "Noviembre", "Diciembre",
]
SAMPLE_NOTE = "Mostrando datos de ejemplo porque no hay ventas registradas en este período"


def report_range(default_days):
    today = date.today()
    fin = parse_date(request.args.get("fin"), "fin") if request.args.get("fin") else today
    inicio = (
        parse_date(request.args.get("inicio"), "inicio") if request.args.get("inicio")
        else fin - timedelta(days=default_days)
    )
    if inicio > fin:
        raise ApiError("La fecha de inicio debe ser anterior a la fecha de fin", 400)
    return inicio, fin


def range_filters(inicio, fin):
    start = datetime.combine(inicio, datetime.min.time())
    end = datetime.combine(fin + timedelta(days=1), datetime.min.time())
    return (
        Order.fecha_pedido >= start,
        Order.fecha_pedido < end,
        Order.estado != OrderStatus.CANCELADO.value,
    )


def pct(part, whole):
    if not whole:
        return "0.00"
    return str(money(Decimal(str(part)) * 100 / Decimal(str(whole))))


@app.route("/api/reportes/ventas/diarias", methods=["GET"])
@require_roles()
def api_report_daily():
    inicio, fin = report_range(30)
    if (fin - inicio).days > 90:
        return json_error("El rango máximo para el reporte diario es de 90 días", 400)

    day = func.date(Order.fecha_pedido)
    rows = (
        db.session.query(day.label("fecha"), func.count(Order.id), func.coalesce(func.sum(Order.total), 0))
        .filter(*range_filters(inicio, fin))
        .group_by(day)
        .order_by(day.asc())
        .all()
    )
    ventas = [
        {"fecha": str(f), "cantidad_pedidos": int(n), "total_ventas": str(money(t))}
        for f, n, t in rows
    ]

    body = {"success": True, "periodo": {"inicio": inicio.isoformat(), "fin": fin.isoformat()}}
    if not ventas and REPORT_SAMPLE_DATA:
        current = inicio
        while current <= fin:
            if random.random() > 0.3:
                ventas.append({
                    "fecha": current.isoformat(),
                    "cantidad_pedidos": random.randint(1, 10),
                    "total_ventas": str(money(random.uniform(100, 600))),
                })
            current += timedelta(days=1)
        body["_nota"] = SAMPLE_NOTE

    body["ventas"] = ventas
    body["total_pedidos"] = sum(v["cantidad_pedidos"] for v in ventas)
    body["total_ventas"] = str(money(sum(Decimal(v["total_ventas"]) for v in ventas)))
    return jsonify(body)


@app.route("/api/reportes/ventas/mensuales", methods=["GET"])
@require_roles()
def api_report_monthly():
    today = date.today()
    anio = arg_int("anio", today.year, minimum=2000, maximum=2100)

    month = func.extract("month", Order.fecha_pedido)
    rows = (
        db.session.query(month.label("mes"), func.count(Order.id), func.coalesce(func.sum(Order.total), 0))
        .filter(*range_filters(date(anio, 1, 1), date(anio, 12, 31)))
        .group_by(month)
        .all()
    )
    by_month = {int(m): (int(n), money(t)) for m, n, t in rows}

    body = {"success": True, "anio": anio}
    sample = not by_month and REPORT_SAMPLE_DATA
    meses = []
    for idx, nombre in enumerate(MONTH_NAMES, start=1):
        n, t = by_month.get(idx, (0, Decimal("0.00")))
        if sample and (anio < today.year or (anio == today.year and idx <= today.month)):
            n, t = random.randint(10, 60), money(random.uniform(500, 2500))
        meses.append({"mes": idx, "nombre": nombre, "cantidad_pedidos": n, "total_ventas": str(t)})
    if sample:
        body["_nota"] = SAMPLE_NOTE

    body["meses"] = meses
    body["total_pedidos"] = sum(m["cantidad_pedidos"] for m in meses)
    body["total_ventas"] = str(money(sum(Decimal(m["total_ventas"]) for m in meses)))
    return jsonify(body)


@app.route("/api/reportes/ventas/por-tipo", methods=["GET"])
@require_roles()
def api_report_by_type():
    inicio, fin = report_range(30)
    rows = (
        db.session.query(Order.tipo, func.count(Order.id), func.coalesce(func.sum(Order.total), 0))
        .filter(*range_filters(inicio, fin))
        .group_by(Order.tipo)
        .order_by(func.sum(Order.total).desc())
        .all()
    )
    items = [(str(t), int(n), money(v)) for t, n, v in rows]

    body = {"success": True, "periodo": {"inicio": inicio.isoformat(), "fin": fin.isoformat()}}
    if not items and REPORT_SAMPLE_DATA:
        items = [
            (OrderType.DELIVERY.value, random.randint(20, 60), money(random.uniform(2000, 5000))),
            (OrderType.LOCAL.value, random.randint(15, 50), money(random.uniform(1000, 3000))),
            (OrderType.PARA_LLEVAR.value, random.randint(10, 40), money(random.uniform(500, 1500))),
        ]
        body["_nota"] = SAMPLE_NOTE

    total_pedidos = sum(n for _, n, _ in items)
    total_ventas = money(sum((v for _, _, v in items), Decimal("0.00")))
    body["tipos"] = [
        {
            "tipo": t,
            "cantidad_pedidos": n,
            "porcentaje_pedidos": pct(n, total_pedidos),
            "total_ventas": str(v),
            "porcentaje_ventas": pct(v, total_ventas),
        }
        for t, n, v in items
    ]
    body["total_pedidos"] = total_pedidos
    body["total_ventas"] = str(total_ventas)
    return jsonify(body)


@app.route("/api/reportes/productos/mas-vendidos", methods=["GET"])
@require_roles()
def api_report_top_products():
    inicio, fin = report_range(30)
    limite = arg_int("limite", 10, minimum=1, maximum=100)

    units = func.sum(OrderLine.cantidad)
    rows = (
        db.session.query(Product.id, Product.nombre, Product.precio, Category.nombre,
                         units, func.sum(OrderLine.subtotal))
        .join(OrderLine, OrderLine.producto_id == Product.id)
        .join(Order, Order.id == OrderLine.pedido_id)
        .outerjoin(Category, Category.id == Product.categoria_id)
        .filter(*range_filters(inicio, fin))
        .group_by(Product.id, Product.nombre, Product.precio, Category.nombre)
        .order_by(units.desc())
        .limit(limite)
        .all()
    )
    productos = [
        {
            "producto_id": pid,
            "nombre": nombre,
            "precio": str(money(precio)),
            "categoria": cat,
            "unidades_vendidas": int(u or 0),
            "total_ventas": str(money(t or 0)),
        }
        for pid, nombre, precio, cat, u, t in rows
    ]

    body = {"success": True, "periodo": {"inicio": inicio.isoformat(), "fin": fin.isoformat()}}
    if not productos and REPORT_SAMPLE_DATA:
        catalog = Product.query.order_by(Product.id.asc()).limit(limite).all()
        if not catalog:
            body["_nota"] = "No hay productos ni ventas registradas en este período"
        else:
            for index, p in enumerate(catalog):
                u = random.randint(0, 49) + max(1, 50 - index * 5)
                productos.append({
                    "producto_id": p.id,
                    "nombre": p.nombre,
                    "precio": str(money(p.precio)),
                    "categoria": p.categoria.nombre if p.categoria else None,
                    "unidades_vendidas": u,
                    "total_ventas": str(money(money(p.precio) * u)),
                })
            productos.sort(key=lambda x: x["unidades_vendidas"], reverse=True)
            body["_nota"] = SAMPLE_NOTE

    body["productos"] = productos
    return jsonify(body)


@app.route("/api/reportes/clientes/frecuentes", methods=["GET"])
@require_roles()
def api_report_frequent_customers():
    inicio, fin = report_range(90)
    limite = arg_int("limite", 10, minimum=1, maximum=100)

    count = func.count(Order.id)
    rows = (
        db.session.query(User.id, User.nombre, User.apellidos, User.email, User.telefono,
                         count, func.sum(Order.total))
        .join(Order, Order.usuario_id == User.id)
        .filter(*range_filters(inicio, fin))
        .group_by(User.id, User.nombre, User.apellidos, User.email, User.telefono)
        .order_by(count.desc())
        .limit(limite)
        .all()
    )
    clientes = [
        {
            "usuario_id": uid,
            "nombre": nombre,
            "apellidos": apellidos,
            "email": email,
            "telefono": telefono,
            "total_pedidos": int(n),
            "total_gastado": str(money(t or 0)),
        }
        for uid, nombre, apellidos, email, telefono, n, t in rows
    ]

    body = {"success": True, "periodo": {"inicio": inicio.isoformat(), "fin": fin.isoformat()}}
    if not clientes and REPORT_SAMPLE_DATA:
        users = (
            User.query.filter_by(rol=UserRole.CLIENTE.value, activo=True)
            .order_by(User.id.asc()).limit(limite).all()
        )
        if not users:
            body["_nota"] = "No hay clientes ni pedidos registrados en este período"
        else:
            for index, u in enumerate(users):
                n = random.randint(0, 9) + max(1, 15 - index)
                clientes.append({
                    "usuario_id": u.id,
                    "nombre": u.nombre,
                    "apellidos": u.apellidos,
                    "email": u.email,
                    "telefono": u.telefono,
                    "total_pedidos": n,
                    "total_gastado": str(money(n * random.uniform(20, 50))),
                })
            clientes.sort(key=lambda x: x["total_pedidos"], reverse=True)
            body["_nota"] = "Mostrando datos de ejemplo porque no hay pedidos registrados en este período"

    body["clientes"] = clientes
    return jsonify(body)


if __name__ == "__main__":
    with app.app_context():
        db.create_all()
    app.run(
        host=os.environ.get("HOST", "127.0.0.1"),
        port=int(os.environ.get("PORT", "5000")),
        debug=not IS_PRODUCTION
    )
