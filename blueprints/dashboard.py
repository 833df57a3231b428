from flask import Blueprint, jsonify, request
from flask_login import login_required
from rewards.dashboard import DashboardService
from utils import authenticate

bp = Blueprint("dashboard", __name__, url_prefix="/api")


@bp.route("/dashboard", methods=["GET"])
@login_required
def dashboard():
    user = authenticate()
    fresh = request.args.get("fresh", "false").lower() in ("true", "1")
    payload = DashboardService.get_dashboard(user.id, use_cache=not fresh)
    if payload is None:
        return jsonify({"error": "User not found"}), 404
    return jsonify(payload), 200
