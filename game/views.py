import json
from typing import Any, Dict

from django.contrib.auth.decorators import user_passes_test
from django.http import HttpResponse, JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.csrf import csrf_exempt

from .errors import GameError
from .lifecycle import GameSessionManager
from .models import Hunt
from .printing import render_qr_sheet
from .state import SessionState, TreasureInfo, current_clue, progress_percentage
from .stats import hunt_stats
from .stores import OrmSessionStore, OrmTreasureCatalog


def _manager() -> GameSessionManager:
    return GameSessionManager(OrmTreasureCatalog(), OrmSessionStore())


def _json_body(request) -> Dict[str, Any]:
    if not request.body:
        return {}
    try:
        data = json.loads(request.body)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_response(exc: GameError) -> JsonResponse:
    return JsonResponse(exc.payload, status=exc.status_code)


def _method_not_allowed() -> JsonResponse:
    return JsonResponse({"error": "method_not_allowed"}, status=405)


def _treasure_payload(treasure: TreasureInfo) -> Dict[str, Any]:
    return {
        "id": treasure.id,
        "ordinal": treasure.ordinal,
        "name": treasure.name,
        "clue": {"text": treasure.clue_text},
    }


def _session_payload(session: SessionState) -> Dict[str, Any]:
    return {
        "id": session.id,
        "huntId": session.hunt_id,
        "playerName": session.player_name,
        "status": session.status,
        "currentTreasureOrdinal": session.current_ordinal,
        "totalTreasures": session.total_treasures,
        "startedAt": session.started_at.isoformat(),
        "completedAt": session.completed_at.isoformat() if session.completed_at else None,
        "totalTimeSeconds": session.total_time_seconds,
        "progressPercentage": progress_percentage(session),
        "currentClue": current_clue(session),
        "discoveries": [
            {
                "id": d.id,
                "treasureId": d.treasure_id,
                "treasureOrdinal": d.treasure_ordinal,
                "discoveredAt": d.discovered_at.isoformat(),
                "timeTakenSeconds": d.time_taken_seconds,
                "treasure": _treasure_payload(d.treasure) if d.treasure else None,
            }
            for d in session.discoveries
        ],
    }


@csrf_exempt
def start_game(request, hunt_id):
    if request.method != "POST":
        return _method_not_allowed()
    data = _json_body(request)
    try:
        session = _manager().start(hunt_id, data.get("playerName"))
    except GameError as exc:
        return _error_response(exc)
    return JsonResponse(_session_payload(session), status=201)


@csrf_exempt
def session_detail(request, session_id):
    manager = _manager()
    try:
        if request.method == "GET":
            return JsonResponse(_session_payload(manager.get_session(session_id)))
        if request.method == "DELETE":
            manager.delete(session_id)
            return HttpResponse(status=204)
    except GameError as exc:
        return _error_response(exc)
    return _method_not_allowed()


@csrf_exempt
def scan_code(request, session_id):
    if request.method != "POST":
        return _method_not_allowed()
    data = _json_body(request)
    try:
        result = _manager().scan(session_id, data.get("qrCodeData"))
    except GameError as exc:
        return _error_response(exc)
    return JsonResponse(result.as_dict())


@csrf_exempt
def abandon_game(request, session_id):
    if request.method != "POST":
        return _method_not_allowed()
    try:
        _manager().abandon(session_id)
    except GameError as exc:
        return _error_response(exc)
    return HttpResponse(status=204)


def game_stats(request, hunt_id):
    if request.method != "GET":
        return _method_not_allowed()
    return JsonResponse(hunt_stats(OrmSessionStore(), hunt_id).as_dict())


@user_passes_test(lambda u: u.is_staff)
def hunt_qr_pdf(request, hunt_id):
    """Printable sheet with every QR code of the hunt."""
    hunt = get_object_or_404(Hunt, pk=hunt_id)
    response = HttpResponse(content_type='application/pdf')
    response['Content-Disposition'] = f'attachment; filename="qr_codes_hunt_{hunt.id}.pdf"'
    render_qr_sheet(hunt, response)
    return response
