from datetime import datetime, timedelta
import logging
from flask import Blueprint, current_app, jsonify, request, session
from flask_login import login_required, login_user, logout_user
from sqlalchemy.exc import IntegrityError
from extensions import db
from models import User, UserStatus
from rewards.positions import PositionService
from rewards.referral_service import ReferralService
from utils import authenticate, generate_referral_code, get_client_ip, validate_email, validate_phone


logger = logging.getLogger(__name__)
#==================================================================================================================

bp = Blueprint("auth", __name__, url_prefix="")


#===========================================================================
#      SIGN UP ROUTE.
#==============================================================================
@bp.route("/api/signup", methods=["POST"])
def signup():
    """
    Create a new user, give them the free entry position and attach them
    to their referrer's upline.
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Invalid or missing JSON body"}), 400

    full_name = (data.get("fullName") or data.get("username") or "").strip()
    email = (data.get("email") or "").strip().lower()
    phone = (data.get("phone") or "").strip() or None
    password = data.get("password") or ""
    referral_code = (data.get("referralCode") or "").strip().upper()

    # -----------------------------------------
    #  BASIC VALIDATION
    # -----------------------------------------
    if not full_name or not email or not password:
        return jsonify({"error": "Name, email and password are required"}), 400
    if not validate_email(email):
        return jsonify({"error": "Invalid email address"}), 400
    if phone and not validate_phone(phone):
        return jsonify({"error": "Invalid phone number"}), 400
    if len(password) < 6:
        return jsonify({"error": "Password must be at least 6 characters"}), 400

    exists = User.query.filter(User.email == email).first()
    if not exists and phone:
        exists = User.query.filter(User.phone == phone).first()
    if exists:
        return jsonify({"error": "Email or phone already registered"}), 400

    # -----------------------------------------
    #  HANDLE REFERRAL CODE
    # -----------------------------------------
    referrer = None
    if referral_code:
        referrer = User.query.filter_by(referral_code=referral_code).first()
        if not referrer:
            return jsonify({"error": "Invalid referral code"}), 400

    new_user = User(
        username=full_name,
        email=email,
        phone=phone,
        referral_code=generate_referral_code(
            lambda code: User.query.filter_by(referral_code=code).first() is not None
        ),
        referred_by=referrer.id if referrer else None,
    )
    new_user.set_password(password)

    try:
        db.session.add(new_user)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"error": "Email or phone already registered"}), 400

    current_app.logger.info(f"New user {new_user.id} registered (referrer={referrer.id if referrer else None})")

    PositionService.assign_default_position(new_user.id)

    # -------------------------------------
    #  REFERRAL TREE LOGIC
    # -------------------------------------
    referral = None
    if referrer:
        try:
            referral = ReferralService.process_referral_registration(
                referral_code, new_user.id, get_client_ip()
            )
        except Exception as e:
            db.session.rollback()
            current_app.logger.error(f"Referral registration failed for user {new_user.id}: {e}")
            referral = {"success": False, "error": "Referral processing failed"}

    login_user(new_user)
    session["user_id"] = new_user.id

    return jsonify({
        "message": "Registration successful",
        "user": new_user.to_dict(),
        "referral": referral,
    }), 201


#===========================================================================
#      LOGIN / LOGOUT
#==============================================================================
@bp.route("/api/login", methods=["POST"])
def login():
    data = request.get_json(silent=True) or {}
    identifier = (data.get("email") or data.get("phone") or "").strip()
    password = data.get("password") or ""

    if not identifier or not password:
        return jsonify({"error": "Email or phone and password are required"}), 400

    user = User.query.filter(
        (User.email == identifier.lower()) | (User.phone == identifier)
    ).first()
    if not user:
        return jsonify({"error": "Invalid credentials"}), 401

    now = datetime.now()
    if user.is_locked(now):
        return jsonify({"error": "Account temporarily locked. Try again later."}), 423

    if not user.check_password(password):
        user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
        if user.failed_login_attempts >= current_app.config.get("MAX_FAILED_LOGINS", 5):
            user.locked_until = now + timedelta(minutes=current_app.config.get("LOCKOUT_MINUTES", 15))
            user.failed_login_attempts = 0
            logger.warning(f"User {user.id} locked out after repeated failed logins")
        db.session.commit()
        return jsonify({"error": "Invalid credentials"}), 401

    if user.status != UserStatus.ACTIVE:
        return jsonify({"error": "Account is not active"}), 403

    user.failed_login_attempts = 0
    user.locked_until = None
    db.session.commit()

    login_user(user, remember=bool(data.get("remember")))
    session["user_id"] = user.id
    return jsonify({"message": "Login successful", "user": user.to_dict()}), 200


@bp.route("/api/logout", methods=["POST"])
def logout():
    logout_user()
    session.clear()
    return jsonify({"message": "Logged out"}), 200


@bp.route("/api/me", methods=["GET"])
@login_required
def me():
    user = authenticate()
    eligibility = PositionService.can_complete_task(user.id)
    payload = user.to_dict()
    payload["tasksCompletedToday"] = eligibility.get("tasksCompleted", 0)
    payload["tasksRemaining"] = eligibility["tasksRemaining"]
    return jsonify(payload), 200
