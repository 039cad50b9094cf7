from __future__ import annotations

from flask import Blueprint, jsonify, request

from orderflow.contexts.erp.application.sync_client import get_erp_sync_client
from orderflow.db import get_db
from orderflow.policies import ActorRole, current_actor, require_roles
from orderflow.ui_strings import success_message


erp_bp = Blueprint("erp", __name__)


@erp_bp.route("/api/erp/authorize", methods=["POST"])
def erp_authorize():
    actor = current_actor()
    require_roles(actor, ActorRole.BUYER, ActorRole.SYSTEM)
    payload = request.get_json(silent=True) or {}
    status = get_erp_sync_client().authorize(
        get_db(),
        actor.tenant_id,
        str(payload.get("code") or ""),
        str(payload.get("redirect_uri") or "").strip() or None,
    )
    status["message"] = success_message("erp_connected")
    return jsonify(status), 200


@erp_bp.route("/api/erp/status", methods=["GET"])
def erp_connection_status():
    actor = current_actor()
    require_roles(actor, ActorRole.BUYER, ActorRole.SYSTEM)
    return jsonify(get_erp_sync_client().connection_status(get_db(), actor.tenant_id)), 200
