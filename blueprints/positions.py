import logging
from flask import Blueprint, jsonify, request
from flask_login import login_required
from rewards.positions import PositionService
from utils import authenticate

logger = logging.getLogger(__name__)

bp = Blueprint("positions", __name__, url_prefix="/api/positions")


@bp.route("", methods=["GET"])
def list_positions():
    positions = PositionService.list_positions()
    return jsonify({"positions": [p.to_dict() for p in positions]}), 200


@bp.route("/current", methods=["GET"])
@login_required
def current_position():
    user = authenticate()
    assignment = PositionService.get_active_assignment(user.id)
    eligibility = PositionService.can_complete_task(user.id)
    eligibility.pop("position", None)
    return jsonify({
        "assignment": assignment.to_dict() if assignment else None,
        "eligibility": eligibility,
    }), 200


@bp.route("/subscribe", methods=["POST"])
@login_required
def subscribe():
    user = authenticate()
    data = request.get_json(silent=True) or {}
    position_id = data.get("positionId")
    if not position_id:
        return jsonify({"error": "Position ID is required"}), 400
    try:
        position_id = int(position_id)
    except (TypeError, ValueError):
        return jsonify({"error": "Position ID must be a number"}), 400

    result = PositionService.assign_position(user.id, position_id)
    if not result["success"]:
        return jsonify({"error": result["error"]}), result.get("status", 400)

    return jsonify({
        "message": "Subscription successful",
        "subscription": result["subscription"],
        "referralTriggers": result["referralTriggers"],
    }), 200
