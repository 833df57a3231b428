import logging
from flask import Blueprint, jsonify, request
from flask_login import login_required
from rewards.management_bonus import ManagementBonusDistributor
from rewards.referral_service import ReferralService
from rewards.referral_tree import ReferralHierarchyIndex
from utils import authenticate, get_client_ip

logger = logging.getLogger(__name__)

bp = Blueprint("referrals", __name__, url_prefix="")


#===========================================================================
#      LINK TRACKING (public)
#==============================================================================
@bp.route("/api/referral/track", methods=["POST"])
def track_referral():
    data = request.get_json(silent=True) or {}
    referral_code = (data.get("referralCode") or "").strip()
    if not referral_code:
        return jsonify({"success": False, "error": "Referral code is required"}), 400

    result = ReferralService.track_referral_visit({
        "referralCode": referral_code,
        "ipAddress": get_client_ip(),
        "userAgent": request.headers.get("User-Agent", "unknown"),
        "source": data.get("source") or "link",
        "metadata": {"referer": request.headers.get("Referer")},
    })
    if not result["success"]:
        return jsonify({"success": False, "error": "Invalid referral code"}), 404

    return jsonify({
        "success": True,
        "message": "Referral tracked successfully",
        "activityId": result["activityId"],
    }), 200


#===========================================================================
#      STATS
#==============================================================================
@bp.route("/api/referral/stats", methods=["GET"])
@login_required
def referral_stats():
    user = authenticate()
    stats = ReferralService.get_referral_stats(user.id)

    direct = sorted(user.direct_referrals, key=lambda u: u.total_earnings or 0, reverse=True)
    referrals = [
        {
            "id": r.id,
            "name": r.username,
            "email": r.email,
            "earnings": float(r.total_earnings or 0),
            "joinedAt": r.created_at.isoformat() if r.created_at else None,
            "isActive": (r.total_earnings or 0) > 0,
        }
        for r in direct
    ]

    return jsonify({
        "success": True,
        "referralCode": user.referral_code,
        "referralLink": ReferralService.generate_referral_link(user.referral_code),
        "socialLinks": ReferralService.generate_social_links(user.referral_code),
        "stats": stats,
        "referrals": referrals,
        "topReferrals": referrals[:5],
    }), 200


@bp.route("/api/referrals/hierarchy", methods=["GET"])
@login_required
def referral_hierarchy():
    user = authenticate()
    subordinates = ReferralHierarchyIndex.get_subordinates(user.id)
    members = {
        level.value: [
            {
                "id": member.id,
                "name": member.username,
                "position": member.current_position.name if member.current_position else None,
                "joinedAt": member.created_at.isoformat() if member.created_at else None,
            }
            for member in users
        ]
        for level, users in subordinates.items()
    }
    return jsonify({
        "stats": ReferralHierarchyIndex.get_referral_hierarchy_stats(user.id),
        "managementBonus": ManagementBonusDistributor.get_management_bonus_stats(user.id),
        "members": members,
    }), 200


@bp.route("/api/referrals/rewards", methods=["GET"])
@login_required
def referral_rewards():
    user = authenticate()
    limit = min(max(request.args.get("limit", 20, type=int), 1), 100)
    offset = max(request.args.get("offset", 0, type=int), 0)
    return jsonify(ReferralService.get_referral_rewards(user.id, limit, offset)), 200
