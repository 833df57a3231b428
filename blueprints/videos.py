import logging
from flask import Blueprint, jsonify, request
from flask_login import login_required
from sqlalchemy.exc import SQLAlchemyError
from extensions import db
from rewards.video_tasks import VideoTaskService
from utils import authenticate, current_user_id, get_client_ip

logger = logging.getLogger(__name__)

bp = Blueprint("videos", __name__, url_prefix="/api/videos")


@bp.route("", methods=["GET"])
@login_required
def list_videos():
    user = authenticate()
    return jsonify(VideoTaskService.get_available_videos(user.id)), 200


@bp.route("/<int:video_id>", methods=["GET"])
@login_required
def get_video(video_id):
    user = authenticate()
    details = VideoTaskService.get_video_details(user.id, video_id)
    if details is None:
        return jsonify({"error": "Video not found"}), 404
    return jsonify({"video": details}), 200


#===========================================================================
#      SUBMIT A WATCH
#==============================================================================
@bp.route("/<int:video_id>/watch", methods=["POST"])
def watch_video(video_id):
    data = request.get_json(silent=True) or {}
    verification = data.get("verificationData")
    device_id = verification.get("deviceId") if isinstance(verification, dict) else data.get("deviceId")

    try:
        result = VideoTaskService.submit_video_watch(
            current_user_id(),
            video_id,
            data.get("watchDuration"),
            interactions=data.get("userInteractions") or [],
            ip_address=get_client_ip(),
            device_id=device_id,
            user_agent=request.headers.get("User-Agent"),
        )
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Watch submission for video {video_id} failed: {e}")
        return jsonify({"error": "Internal server error"}), 500

    status = result.pop("status", 200)
    if not result.pop("success"):
        return jsonify(result), status

    result["message"] = "Video watched successfully"
    return jsonify(result), status
