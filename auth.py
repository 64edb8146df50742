import logging

from flask import Blueprint, jsonify, request
from flask_jwt_extended import create_access_token, get_jwt_identity, jwt_required
from werkzeug.security import check_password_hash, generate_password_hash

from database import session_scope
from errors import ApiError
from models import User
from ratelimit import client_ip, rate_limit

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__)


def current_user_id() -> int:
    return int(get_jwt_identity())


def _credentials():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        raise ApiError("Email and password are required", 400)
    return email, password, data


@auth_bp.route("/register", methods=["POST"])
def register():
    rate_limit("auth", client_ip())
    email, password, data = _credentials()
    if len(password) < 8:
        raise ApiError("Password must be at least 8 characters", 400)

    with session_scope() as session:
        if session.query(User).filter_by(email=email).first():
            raise ApiError("Email already registered", 409)

        user = User(
            email=email,
            password_hash=generate_password_hash(password),
            full_name=(data.get("full_name") or "").strip() or email.split("@")[0],
        )
        session.add(user)
        session.flush()
        logger.info("Registered user %s", user.id)

        token = create_access_token(identity=str(user.id))
        return jsonify({"user": user.to_dict(), "access_token": token}), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    rate_limit("auth", client_ip())
    email, password, _ = _credentials()

    with session_scope() as session:
        user = session.query(User).filter_by(email=email).first()
        if user is None or not check_password_hash(user.password_hash, password):
            raise ApiError("Invalid email or password", 401)

        token = create_access_token(identity=str(user.id))
        return jsonify({"user": user.to_dict(), "access_token": token})


@auth_bp.route("/me", methods=["GET"])
@jwt_required()
def me():
    with session_scope() as session:
        user = session.get(User, current_user_id())
        if user is None:
            raise ApiError("Unauthorized", 401)
        return jsonify({"user": user.to_dict()})
