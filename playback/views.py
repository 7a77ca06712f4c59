from __future__ import annotations

import json
import logging

from django.http import JsonResponse
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from django.views.generic import View

from .exceptions import InvalidSpeedError, UnknownTripError
from .services import get_session

logger = logging.getLogger(__name__)


def _json_body(request):
    if not request.body:
        return {}
    data = json.loads(request.body)
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


class PlaybackSnapshotAPIView(View):
    def get(self, request, *args, **kwargs):
        return JsonResponse(get_session().snapshot())


class TripStateAPIView(View):
    def get(self, request, *args, **kwargs):
        try:
            state = get_session().state_for(self.kwargs["trip_id"])
        except UnknownTripError:
            return JsonResponse({"error": "Trip not found"}, status=404)
        return JsonResponse(state.as_dict())


@method_decorator(csrf_exempt, name="dispatch")
class TogglePlayView(View):
    def post(self, request, *args, **kwargs):
        session = get_session()
        if session.data_error:
            return JsonResponse({"error": "No valid trip data loaded"}, status=409)
        is_playing = session.toggle_play()
        return JsonResponse({"is_playing": is_playing, "sim_time": session.snapshot()["sim_time"]})


@method_decorator(csrf_exempt, name="dispatch")
class SetSpeedView(View):
    def post(self, request, *args, **kwargs):
        try:
            data = _json_body(request)
            speed = get_session().set_speed(data.get("speed"))
        except InvalidSpeedError as e:
            logger.info("Rejected speed change: %s", e)
            return JsonResponse({"error": str(e)}, status=400)
        except ValueError:
            return JsonResponse({"error": "Invalid JSON"}, status=400)
        return JsonResponse({"speed": speed})


@method_decorator(csrf_exempt, name="dispatch")
class SelectTripView(View):
    def post(self, request, *args, **kwargs):
        try:
            data = _json_body(request)
            if "trip_id" not in data:
                return JsonResponse({"error": "Missing data"}, status=400)
            trip_id = data["trip_id"]
            if trip_id is not None and (isinstance(trip_id, bool) or not isinstance(trip_id, int)):
                return JsonResponse({"error": "trip_id must be an integer or null"}, status=400)
            selected = get_session().select_trip(trip_id)
        except ValueError:
            return JsonResponse({"error": "Invalid JSON"}, status=400)
        except UnknownTripError:
            return JsonResponse({"error": "Trip not found"}, status=404)
        return JsonResponse({"selected_trip_id": selected})
