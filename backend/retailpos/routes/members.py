# Overview: Flask API routes for loyalty members.

from flask import Blueprint, current_app, jsonify, request

from ..errors import MemberNotFoundError, PosError
from ..services import member_service
from ..validation import parse_member

members_bp = Blueprint("members", __name__, url_prefix="/api/members")


@members_bp.post("")
def register_member_route():
    try:
        data = parse_member(request.get_json(silent=True))
        member = member_service.register_member(data["phone"], data["name"])
        return jsonify({"member": member.to_dict()}), 201

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to register member")
        return jsonify({"error": "Internal server error"}), 500


@members_bp.get("/<phone>")
def lookup_member_route(phone: str):
    """Lookup by phone number, as typed at the till."""
    try:
        member = member_service.find_by_phone(phone)
        if member is None:
            raise MemberNotFoundError("Member not found", details={"phone": phone})
        return jsonify({"member": member.to_dict()}), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to look up member")
        return jsonify({"error": "Internal server error"}), 500


@members_bp.get("/<int:member_id>/points")
def points_history_route(member_id: int):
    try:
        limit = request.args.get("limit", default=100, type=int)
        limit = max(1, min(limit, 500))
        member = member_service.get_member(member_id)
        entries = member_service.points_history(member_id, limit=limit)
        return jsonify({
            "member": member.to_dict(),
            "entries": [e.to_dict() for e in entries],
        }), 200

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load points history")
        return jsonify({"error": "Internal server error"}), 500
