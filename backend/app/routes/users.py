# backend/app/routes/users.py
from flask import Blueprint, g, jsonify, request

from backend.app.extensions import db
from backend.app.middleware.auth_middleware import require_auth
from backend.app.routes.rides import page_limit
from backend.app.schemas.participation_schema import ListUserRidesQuerySchema
from backend.app.services import participation_service

users_bp = Blueprint("users", __name__)


@users_bp.route("/me/rides", methods=["GET"])
@require_auth
def list_my_rides():
    # Newest participation first; ?status=&role=&limit=&cursor=
    query = ListUserRidesQuerySchema().load(request.args.to_dict())
    query["limit"] = page_limit(query.get("limit"))

    result = participation_service.list_user_rides(
        auth_context=g.auth_context,
        query=query,
        session=db.session,
    )

    return jsonify({
        "data": result["items"],
        "next_cursor": result["next_cursor"],
        "warnings": []
    }), 200
